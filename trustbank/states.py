"""
Status vocabularies and the transition tables that govern them.

Every status change in the service is checked against one of these tables
before it is written, and the write itself is conditioned on the prior status
(see ledger.py), so an illegal or stale transition never lands.
"""
from enum import Enum

from .errors import InvalidState


class OrderStatus(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TradeStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    HELD = "held"
    PAID = "paid"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SWAP = "swap"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAYMENT_RECEIVED = "payment_received"
    USER_MARKED_PAID = "user_marked_paid"
    SUCCESS = "success"
    COMPLETED = "completed"
    FAILED = "failed"


# Cancellation happens at order level; no operation moves a trade to cancelled
TRADE_TRANSITIONS = {
    TradeStatus.PENDING_PAYMENT: {TradeStatus.PAID, TradeStatus.DISPUTED},
    TradeStatus.PAID: {TradeStatus.COMPLETED, TradeStatus.DISPUTED},
    TradeStatus.COMPLETED: set(),
    TradeStatus.DISPUTED: set(),
    TradeStatus.CANCELLED: set(),
}

# Escrow moves in lock-step with its trade
ESCROW_FOR_TRADE = {
    TradeStatus.PENDING_PAYMENT: EscrowStatus.HELD,
    TradeStatus.PAID: EscrowStatus.PAID,
    TradeStatus.COMPLETED: EscrowStatus.COMPLETED,
    TradeStatus.DISPUTED: EscrowStatus.DISPUTED,
}

ORDER_TRANSITIONS = {
    OrderStatus.OPEN: {OrderStatus.ACTIVE, OrderStatus.CANCELLED},
    OrderStatus.ACTIVE: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.PROCESSING,
        TransactionStatus.USER_MARKED_PAID,
        TransactionStatus.PAYMENT_RECEIVED,
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
    },
    TransactionStatus.PROCESSING: {
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.COMPLETED,
    },
    TransactionStatus.USER_MARKED_PAID: {
        TransactionStatus.PROCESSING,
        TransactionStatus.PAYMENT_RECEIVED,
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
    },
    TransactionStatus.PAYMENT_RECEIVED: {
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.COMPLETED,
    },
    TransactionStatus.SUCCESS: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.COMPLETED: set(),
}

# user_marked_paid belongs to the payer and payment_received to an admin
WEBHOOK_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.PROCESSING,
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
    TransactionStatus.COMPLETED,
})

TERMINAL_TRANSACTION_STATUSES = frozenset(
    s for s, targets in TRANSACTION_TRANSITIONS.items() if not targets
)

OPEN_ORDER_STATUSES = frozenset({OrderStatus.OPEN, OrderStatus.ACTIVE})

# Trades that reserve part of an order's amount
RESERVING_TRADE_STATUSES = frozenset(
    {TradeStatus.PENDING_PAYMENT, TradeStatus.PAID, TradeStatus.COMPLETED}
)

# Trades with escrow still in play; an order cannot be cancelled under them
IN_FLIGHT_TRADE_STATUSES = frozenset(
    {TradeStatus.PENDING_PAYMENT, TradeStatus.PAID, TradeStatus.DISPUTED}
)


def ensure_trade_transition(current: str, target: TradeStatus) -> TradeStatus:
    """Return the current status as an enum, or raise InvalidState if ``target`` is not reachable from it."""
    try:
        status = TradeStatus(current)
    except ValueError:
        raise InvalidState(f"Unknown trade status {current!r}")
    if target not in TRADE_TRANSITIONS[status]:
        raise InvalidState(f"Trade cannot move from {status.value} to {target.value}")
    return status


def order_sources(target: OrderStatus) -> frozenset:
    return frozenset(s for s, targets in ORDER_TRANSITIONS.items() if target in targets)


def transaction_sources(target: TransactionStatus) -> frozenset:
    """Statuses a transaction may move to ``target`` from; the CAS expected set."""
    return frozenset(s for s, targets in TRANSACTION_TRANSITIONS.items() if target in targets)


def is_terminal_transaction(status: str) -> bool:
    return status in {s.value for s in TERMINAL_TRANSACTION_STATUSES}
