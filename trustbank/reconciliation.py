"""
Payment reconciliation: provider webhooks, the payer's self-report and the
admin override.

Webhooks are acknowledged no matter what happens here; correctness under
retried or concurrent deliveries comes from the transaction reference being
the idempotency key and statuses only moving forward along
TRANSACTION_TRANSITIONS. Only the delivery that moves a transaction into
`success` credits a wallet.
"""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from .errors import NotFound, SignatureInvalid
from .escrow import utcnow
from .models import WEBHOOK_MODELS
from .settings import REFERENCE_PREFIX
from .states import (
    TRANSACTION_TRANSITIONS,
    WEBHOOK_TRANSACTION_STATUSES,
    TransactionStatus,
    TransactionType,
    is_terminal_transaction,
    transaction_sources,
)

logger = logging.getLogger(__name__)


def canonical_json(data) -> str:
    # Same bytes the provider signed: compact, key order as sent, non-ASCII unescaped
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def sign_payload(data, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(data).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(data, signature: Optional[str], secret: Optional[str]):
    if not secret:
        raise SignatureInvalid("No webhook secret configured")
    if not signature:
        raise SignatureInvalid("Missing signature")
    if data is None:
        raise SignatureInvalid("Missing data object")
    if not hmac.compare_digest(sign_payload(data, secret), signature):
        raise SignatureInvalid("Signature mismatch")


def handle_webhook(ledger, provider: str, raw_body: bytes, signature: Optional[str], secret: Optional[str],
                   now: Optional[datetime] = None) -> str:
    """
    Apply one webhook delivery. Returns a short outcome label for logging and
    tests; never raises.
    """
    model = WEBHOOK_MODELS.get(provider)
    if model is None:
        logger.warning(f"Webhook for unknown provider {provider!r} ignored")
        return "unknown_provider"

    try:
        event = json.loads(raw_body)
    except ValueError:
        logger.warning(f"Malformed {provider} webhook body ignored")
        return "malformed"
    if not isinstance(event, dict):
        logger.warning(f"Malformed {provider} webhook body ignored")
        return "malformed"

    # 1) Authenticity, over the data object only
    try:
        verify_signature(event.get("data"), signature, secret)
    except SignatureInvalid as e:
        logger.warning(f"Rejected {provider} webhook: {e.message}")
        return "invalid_signature"

    # 2) Schema
    try:
        payload = model.model_validate(event)
    except ValidationError as e:
        logger.warning(f"{provider} webhook failed validation: {e.error_count()} errors")
        return "malformed"

    reference, status = payload.data.reference, payload.data.status
    if not reference or not status:
        return "ignored"
    try:
        new_status = TransactionStatus(status)
    except ValueError:
        logger.warning(f"{provider} webhook for {reference} has unknown status {status!r}")
        return "ignored"
    if new_status not in WEBHOOK_TRANSACTION_STATUSES:
        logger.warning(f"{provider} webhook for {reference} may not set status {status!r}")
        return "ignored"

    try:
        return _apply_webhook(ledger, provider, event, payload.data, reference, new_status, now or utcnow())
    except Exception:
        ledger.rollback()
        logger.exception(f"Failed to process {provider} webhook for {reference}")
        return "error"


def _apply_webhook(ledger, provider, event, data, reference, new_status, now) -> str:
    # 3) Known reference
    txn = ledger.get_transaction(reference)
    if not txn:
        logger.info(f"{provider} webhook for unknown reference {reference} ignored")
        return "unknown_reference"

    # 4) Terminal statuses are final
    if is_terminal_transaction(txn["status"]):
        logger.info(f"Duplicate {provider} webhook for {reference} ({txn['status']}) ignored")
        return "duplicate"

    # 5) Never backwards: late or replayed intermediate statuses are dropped
    if new_status not in TRANSACTION_TRANSITIONS[TransactionStatus(txn["status"])]:
        logger.info(f"Out-of-order {provider} webhook for {reference} ({txn['status']} -> {new_status.value}) ignored")
        return "out_of_order"

    # 6) Conditional update; a concurrent writer that already moved the row wins
    entry = {"provider": provider, "received_at": now.isoformat(), "event": event}
    updated = ledger.apply_webhook_status(reference, new_status, transaction_sources(new_status), entry)
    if updated is None:
        logger.info(f"{provider} webhook for {reference} lost race to a concurrent update")
        return "duplicate"

    # 7) Credit deposits, in the same database transaction as the status change
    if txn["type"] == TransactionType.DEPOSIT.value and new_status is TransactionStatus.SUCCESS:
        _credit_deposit(ledger, txn, data.amount)

    ledger.commit()
    logger.info(f"Transaction {reference} {txn['status']} -> {new_status.value} via {provider}")
    return "applied"


def _credit_deposit(ledger, txn: dict, reported_amount: Optional[Decimal]):
    expected = Decimal(txn["amount"])
    amount = reported_amount if reported_amount is not None else expected
    if amount != expected:
        logger.warning(f"Deposit {txn['reference']} settled {amount}, expected {expected}")
    if not txn["user_id"]:
        logger.error(f"Deposit {txn['reference']} succeeded with no owner; wallet not credited. Reconciliation required")
        return
    wallet = f"{txn['currency'].lower()}_wallet"
    balance = ledger.credit_wallet(txn["user_id"], wallet, amount)
    logger.info(f"Credited {amount} to {txn['user_id']}/{wallet} for {txn['reference']}, balance {balance}")


def generate_reference(ledger, type: str, amount: Decimal, currency: str, user_id: Optional[str] = None,
                       virtual_account_number: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    reference = f"{REFERENCE_PREFIX}-{uuid.uuid4().hex[:10].upper()}-{int(now.timestamp() * 1000)}"
    txn = ledger.create_transaction({
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "type": TransactionType(type),
        "amount": amount,
        "currency": currency.upper(),
        "status": TransactionStatus.PENDING,
        "reference": reference,
        "virtual_account_number": virtual_account_number,
        "metadata": {},
    })
    logger.info(f"Payment reference {reference} issued for {type} of {amount} {currency.upper()}")
    return txn


def mark_paid(ledger, account_number: str, amount: Decimal, now: Optional[datetime] = None) -> dict:
    """Payer says they have paid. Advisory only: queues the transaction for admin review, moves no funds."""
    now = now or utcnow()
    txn = ledger.mark_transaction_paid(account_number, amount, {"user_marked_paid_at": now.isoformat()})
    if txn is None:
        raise NotFound("No pending transaction found")
    logger.info(f"Transaction {txn['reference']} marked paid by payer")
    return txn


def admin_manual_confirm(ledger, reference: str, admin_id: str, note: Optional[str] = None,
                         now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    patch = {
        "admin_manual_confirmed": True,
        "admin_id": admin_id,
        "admin_note": note,
        "admin_confirmed_at": now.isoformat(),
    }
    target = TransactionStatus.PAYMENT_RECEIVED
    txn = ledger.admin_confirm_transaction(reference, transaction_sources(target), target, patch)
    if txn is None:
        logger.warning(f"Admin {admin_id} tried to confirm {reference}, which is not awaiting payment")
        raise NotFound("No pending transaction found")
    logger.warning(f"Admin {admin_id} manually confirmed payment {reference}: {note or 'no note'}")
    return txn
