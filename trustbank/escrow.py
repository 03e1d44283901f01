"""
P2P trade escrow lifecycle.

    pending_payment --buyer confirms, escrow not expired--> paid
    pending_payment --either party disputes--------------> disputed
    paid            --seller completes-------------------> completed (+ fund release)
    paid            --either party disputes--------------> disputed

A trade and its escrow are always written in the same database transaction,
and each write is conditioned on the status the caller read, so of two racing
requests only the first one moves the trade; the other gets InvalidState.

Fund release happens after completion is committed and is not rolled back if
the exchange refuses it: the trade stays completed and is flagged for manual
reconciliation (release_status = 'failed').

Orders are cancelled by their creator, and only while no trade on them has
escrow in play.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from .errors import EscrowExpired, InvalidState, NotFound, Unauthorized, UpstreamFailure
from .settings import ESCROW_TTL_MINUTES, QUIDAX_ESCROW_WALLET_ID
from .states import (
    ESCROW_FOR_TRADE,
    IN_FLIGHT_TRADE_STATUSES,
    OPEN_ORDER_STATUSES,
    RESERVING_TRADE_STATUSES,
    DisputeStatus,
    EscrowStatus,
    OrderStatus,
    TradeStatus,
    ensure_trade_transition,
    order_sources,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_order(ledger, creator_id: str, side: str, currency: str, amount: Decimal, price: Decimal) -> dict:
    order = ledger.create_order({
        "id": str(uuid.uuid4()),
        "creator_id": creator_id,
        "side": side,
        "currency": currency.upper(),
        "amount": amount,
        "price": price,
        "status": OrderStatus.OPEN,
    })
    logger.info(f"Order {order['id']} opened by {creator_id}: {side} {amount} {currency.upper()} @ {price}")
    return order


def get_order(ledger, order_id: str) -> dict:
    order = ledger.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def cancel_order(ledger, order_id: str, actor_id: str) -> dict:
    """
    Creator withdraws what is left of an order. Refused while any trade on it
    still has escrow in play; completed fills stay completed.
    """
    order = ledger.get_order(order_id, for_update=True)
    if not order:
        raise NotFound("Order not found")
    if order["creator_id"] != actor_id:
        raise Unauthorized("Only the order creator can cancel it")

    sources = order_sources(OrderStatus.CANCELLED)
    if order["status"] not in {s.value for s in sources}:
        raise InvalidState(f"Order is already {order['status']}")
    if ledger.sum_trade_amounts(order_id, IN_FLIGHT_TRADE_STATUSES) > 0:
        raise InvalidState("Order has trades in progress")

    cancelled = ledger.transition_order(order_id, sources, OrderStatus.CANCELLED)
    if cancelled is None:
        raise InvalidState("Order is no longer open")
    logger.info(f"Order {order_id} cancelled by {actor_id}")
    return cancelled


def open_trade(ledger, order_id: str, taker_id: str, amount: Decimal, now: Optional[datetime] = None):
    """Accept part of an order. Creates the trade and its held escrow together."""
    now = now or utcnow()
    order = ledger.get_order(order_id, for_update=True)
    if not order:
        raise NotFound("Order not found")
    if order["status"] not in {s.value for s in OPEN_ORDER_STATUSES}:
        raise InvalidState("Order is not open for trading")
    if order["creator_id"] == taker_id:
        raise InvalidState("Cannot trade with your own order")

    available = Decimal(order["amount"]) - ledger.sum_trade_amounts(order_id, RESERVING_TRADE_STATUSES)
    if amount > available:
        raise InvalidState(f"Only {available} {order['currency']} available on this order")

    if order["side"] == "sell":
        buyer_id, seller_id = taker_id, order["creator_id"]
    else:
        buyer_id, seller_id = order["creator_id"], taker_id

    trade_id = str(uuid.uuid4())
    escrow_id = str(uuid.uuid4())
    price = Decimal(order["price"])
    trade, escrow = ledger.create_trade(
        {
            "id": trade_id,
            "order_id": order_id,
            "escrow_id": escrow_id,
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "amount": amount,
            "price": price,
            "total": amount * price,
            "status": TradeStatus.PENDING_PAYMENT,
        },
        {
            "id": escrow_id,
            "trade_id": trade_id,
            "status": EscrowStatus.HELD,
            "expires_at": now + timedelta(minutes=ESCROW_TTL_MINUTES),
        },
    )

    if order["status"] == OrderStatus.OPEN.value:
        ledger.transition_order(order_id, [OrderStatus.OPEN], OrderStatus.ACTIVE)

    logger.info(f"Trade {trade_id} opened on order {order_id}: buyer={buyer_id} seller={seller_id} amount={amount}")
    return trade, escrow


def _load_trade(ledger, trade_id: str) -> dict:
    trade = ledger.get_trade(trade_id)
    if not trade:
        raise NotFound("Trade not found")
    return trade


def _move(ledger, trade: dict, current: TradeStatus, target: TradeStatus, escrow_fields=None, **trade_fields) -> dict:
    updated = ledger.transition_trade(trade["id"], [current], target, **trade_fields)
    if updated is None:
        raise InvalidState(f"Trade is no longer {current.value}")

    moved = ledger.transition_escrow(
        trade["escrow_id"], [ESCROW_FOR_TRADE[current]], ESCROW_FOR_TRADE[target], **(escrow_fields or {})
    )
    if moved is None:
        # raising rolls the trade update back with the rest of the transaction
        raise InvalidState("Escrow is out of step with its trade")
    return updated


def get_trade(ledger, trade_id: str, actor_id: str) -> dict:
    trade = _load_trade(ledger, trade_id)
    if actor_id not in (trade["buyer_id"], trade["seller_id"]):
        raise Unauthorized("Not a party to this trade")
    return {**trade, "escrow": ledger.get_escrow(trade["escrow_id"])}


def confirm_payment(ledger, trade_id: str, actor_id: str, proof: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    trade = _load_trade(ledger, trade_id)
    if trade["buyer_id"] != actor_id:
        raise Unauthorized("Only buyer can confirm payment")
    current = ensure_trade_transition(trade["status"], TradeStatus.PAID)

    escrow = ledger.get_escrow(trade["escrow_id"])
    if not escrow:
        raise InvalidState("Trade has no escrow")
    if now >= escrow["expires_at"]:
        raise EscrowExpired("Trade escrow has expired")

    updated = _move(
        ledger, trade, current, TradeStatus.PAID,
        escrow_fields={"payment_confirmed_at": now},
        payment_proof=proof,
        paid_at=now,
    )
    logger.info(f"Trade {trade_id} marked paid by buyer {actor_id}")
    return updated


def complete_trade(ledger, trade_id: str, actor_id: str, now: Optional[datetime] = None) -> dict:
    """
    Seller acknowledges receipt of payment. Only local state is touched here;
    the caller commits and then calls release_escrow_funds.
    """
    now = now or utcnow()
    trade = _load_trade(ledger, trade_id)
    if trade["seller_id"] != actor_id:
        raise Unauthorized("Only seller can complete trade")
    current = ensure_trade_transition(trade["status"], TradeStatus.COMPLETED)

    updated = _move(ledger, trade, current, TradeStatus.COMPLETED, completed_at=now)

    ledger.increment_completed_trades(trade["buyer_id"])
    ledger.increment_completed_trades(trade["seller_id"])

    # Serialise with other completions on the same order so the last one sees every fill
    order = ledger.get_order(trade["order_id"], for_update=True)
    if order and ledger.sum_trade_amounts(order["id"], [TradeStatus.COMPLETED]) >= Decimal(order["amount"]):
        if ledger.transition_order(order["id"], order_sources(OrderStatus.COMPLETED), OrderStatus.COMPLETED):
            logger.info(f"Order {order['id']} fully filled")

    logger.info(f"Trade {trade_id} completed by seller {actor_id}")
    return updated


async def release_escrow_funds(ledger, exchange, trade: dict) -> bool:
    """Transfer the escrowed amount to the seller's custodial account. Never raises on provider failure."""
    # Ledger calls block, so they run off the event loop
    order = await run_in_threadpool(ledger.get_order, trade["order_id"])
    seller_account = await run_in_threadpool(ledger.get_custody_account, trade["seller_id"])

    if not seller_account:
        detail = f"seller {trade['seller_id']} has no custodial account"
    else:
        try:
            await exchange.transfer(
                QUIDAX_ESCROW_WALLET_ID,
                seller_account,
                order["currency"],
                trade["amount"],
                note=f"P2P trade settlement for trade {trade['id']}",
            )
        except UpstreamFailure as e:
            detail = e.message
        else:
            await run_in_threadpool(ledger.record_fund_release, trade["id"], "released")
            logger.info(f"Escrow for trade {trade['id']} released to {seller_account}")
            return True

    logger.error(f"Escrow release failed for completed trade {trade['id']}: {detail}. Reconciliation required")
    await run_in_threadpool(ledger.record_fund_release, trade["id"], "failed", detail)
    return False


def open_dispute(ledger, trade_id: str, actor_id: str, reason: str, evidence=None) -> dict:
    trade = _load_trade(ledger, trade_id)
    if actor_id not in (trade["buyer_id"], trade["seller_id"]):
        raise Unauthorized("Not authorized to dispute this trade")
    current = ensure_trade_transition(trade["status"], TradeStatus.DISPUTED)

    _move(ledger, trade, current, TradeStatus.DISPUTED)
    respondent_id = trade["seller_id"] if actor_id == trade["buyer_id"] else trade["buyer_id"]
    dispute = ledger.create_dispute({
        "id": str(uuid.uuid4()),
        "trade_id": trade_id,
        "initiator_id": actor_id,
        "respondent_id": respondent_id,
        "reason": reason,
        "evidence": evidence,
        "status": DisputeStatus.OPEN,
    })
    logger.warning(f"Trade {trade_id} disputed by {actor_id} (was {current.value}): {reason}")
    return dispute
