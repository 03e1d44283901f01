import logging
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from . import escrow, reconciliation
from .db import get_ledger, get_ledger_session
from .errors import TrustBankError
from .exchange import get_exchange
from .models import (
    AdminConfirmRequest,
    CompleteTradeResponse,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    DisputeRequest,
    DisputeResponse,
    GenerateReferenceRequest,
    GenerateReferenceResponse,
    MarkPaidRequest,
    OpenDisputeRequest,
    OpenTradeRequest,
    PaymentStatusResponse,
    TradeStatusResponse,
    UpdateOrderRequest,
)
from .settings import LOG_LEVEL, WEBHOOK_PROVIDERS

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="trustBank P2P escrow", version="0.1.0")


@app.exception_handler(TrustBankError)
async def trustbank_error_handler(request: Request, exc: TrustBankError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def current_user(x_user_id: str = Header(None, alias="X-User-Id")) -> str:
    # Set by the auth gateway in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


@app.get("/health")
def health():
    return {"ok": True}


# --- P2P trading ------------------------------------------------------------

@app.post("/trades/p2p/orders")
def create_order(req: CreateOrderRequest, user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    return escrow.create_order(ledger, user_id, req.side, req.currency, req.amount, req.price)


@app.get("/trades/p2p/orders/{order_id}")
def get_order(order_id: UUID, user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    return escrow.get_order(ledger, str(order_id))


@app.patch("/trades/p2p/orders/{order_id}")
def update_order(order_id: UUID, req: UpdateOrderRequest,
                 user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    return escrow.cancel_order(ledger, str(order_id), user_id)


@app.post("/trades/p2p/trades")
def open_trade(req: OpenTradeRequest, user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    trade, held = escrow.open_trade(ledger, str(req.order_id), user_id, req.amount)
    return {"trade": trade, "escrow": held}


@app.get("/trades/p2p/trades/{trade_id}")
def get_trade(trade_id: UUID, user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    return escrow.get_trade(ledger, str(trade_id), user_id)


@app.post("/trades/p2p/trades/{trade_id}/confirm", response_model=TradeStatusResponse)
def confirm_payment(trade_id: UUID, req: ConfirmPaymentRequest,
                    user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    trade = escrow.confirm_payment(ledger, str(trade_id), user_id, req.payment_proof)
    return {"trade_id": str(trade["id"]), "status": trade["status"]}


@app.post("/trades/p2p/trades/{trade_id}/complete", response_model=CompleteTradeResponse)
async def complete_trade(trade_id: UUID, user_id: str = Depends(current_user),
                         ledger=Depends(get_ledger), exchange=Depends(get_exchange)):
    trade = await run_in_threadpool(_complete_and_commit, ledger, str(trade_id), user_id)
    released = await escrow.release_escrow_funds(ledger, exchange, trade)
    return {"trade_id": str(trade["id"]), "status": trade["status"], "funds_released": released}


def _complete_and_commit(ledger, trade_id: str, user_id: str) -> dict:
    trade = escrow.complete_trade(ledger, trade_id, user_id)
    # Completion is durable before any funds move
    ledger.commit()
    return trade


@app.post("/trades/p2p/trades/{trade_id}/dispute", response_model=DisputeResponse)
def open_dispute(trade_id: UUID, req: DisputeRequest,
                 user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    dispute = escrow.open_dispute(ledger, str(trade_id), user_id, req.reason, req.evidence)
    return {"dispute_id": str(dispute["id"]), "trade_id": str(trade_id), "status": "disputed"}


@app.post("/trades/p2p/disputes", response_model=DisputeResponse)
def create_dispute(req: OpenDisputeRequest, user_id: str = Depends(current_user), ledger=Depends(get_ledger)):
    return open_dispute(req.trade_id, req, user_id, ledger)


# --- Payments ---------------------------------------------------------------

@app.post("/webhooks/{provider}", response_class=PlainTextResponse)
async def provider_webhook(provider: str, request: Request, open_ledger=Depends(get_ledger_session)):
    """
    Always 200: providers retry on anything else, and a retry storm against a
    local bug is worse than a missed event (admins can confirm manually).
    """
    config = WEBHOOK_PROVIDERS.get(provider, {})
    raw_body = await request.body()
    signature = request.headers.get(config.get("signature_header", "x-signature"))
    try:
        outcome = await run_in_threadpool(
            _store_webhook, open_ledger, provider, raw_body, signature, config.get("secret")
        )
        logger.debug(f"{provider} webhook outcome: {outcome}")
    except Exception:
        logger.exception(f"{provider} webhook could not be stored")
    return "ok"


def _store_webhook(open_ledger, provider, raw_body, signature, secret) -> str:
    with open_ledger() as ledger:
        return reconciliation.handle_webhook(ledger, provider, raw_body, signature, secret)


@app.post("/payments/generate-reference", response_model=GenerateReferenceResponse)
def generate_reference(req: GenerateReferenceRequest, ledger=Depends(get_ledger)):
    txn = reconciliation.generate_reference(
        ledger, req.type, req.amount, req.currency, req.user_id, req.virtual_account_number
    )
    return {"reference": txn["reference"]}


@app.post("/payments/mark-paid", response_model=PaymentStatusResponse)
def mark_paid(req: MarkPaidRequest, ledger=Depends(get_ledger)):
    txn = reconciliation.mark_paid(ledger, req.account_number, req.amount)
    return {
        "reference": txn["reference"],
        "status": txn["status"],
        "message": "Marked as paid. Awaiting verification.",
    }


@app.post("/payments/admin-manual-confirm", response_model=PaymentStatusResponse)
def admin_manual_confirm(req: AdminConfirmRequest, ledger=Depends(get_ledger)):
    txn = reconciliation.admin_manual_confirm(ledger, req.reference, req.admin_id, req.note)
    return {
        "reference": txn["reference"],
        "status": txn["status"],
        "message": "Payment manually confirmed.",
    }
