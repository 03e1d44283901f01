"""Shared fixtures: an in-memory ledger with the same compare-and-swap semantics as SqlLedger, and a fake exchange."""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from trustbank import escrow
from trustbank.db import get_ledger, get_ledger_session
from trustbank.errors import UpstreamFailure
from trustbank.exchange import get_exchange
from trustbank.main import app
from trustbank.settings import WEBHOOK_PROVIDERS

SELLER = "seller-1"
BUYER = "buyer-1"
STRANGER = "someone-else"
WEBHOOK_SECRET = "test-korapay-secret"


def _v(status):
    return getattr(status, "value", status)


def _vs(statuses):
    if isinstance(statuses, str):
        statuses = [statuses]
    return {_v(s) for s in statuses}


class InMemoryLedger:
    TABLES = ("orders", "trades", "escrows", "disputes", "transactions", "wallets", "profiles", "credits")

    def __init__(self):
        self.orders = {}
        self.trades = {}
        self.escrows = {}
        self.disputes = {}
        self.transactions = {}
        self.wallets = {}
        self.profiles = {}
        self.credits = []
        self.locked_orders = []
        self.commits = 0
        self.rollbacks = 0
        self._lock = threading.Lock()
        self._committed = self._snapshot()

    def _snapshot(self):
        return {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}

    def commit(self):
        self.commits += 1
        self._committed = self._snapshot()

    def rollback(self):
        # back to the last commit, as the database would be
        self.rollbacks += 1
        for name, saved in copy.deepcopy(self._committed).items():
            setattr(self, name, saved)

    def _cas(self, table, row_id, expected, values):
        with self._lock:
            row = table.get(str(row_id))
            if row is None or row["status"] not in _vs(expected):
                return None
            row.update({k: _v(v) if k == "status" else v for k, v in values.items()})
            return copy.deepcopy(row)

    # orders

    def create_order(self, order):
        row = {**order, "status": _v(order["status"]), "created_at": datetime.now(timezone.utc)}
        self.orders[row["id"]] = row
        return copy.deepcopy(row)

    def get_order(self, order_id, for_update=False):
        if for_update:
            self.locked_orders.append(str(order_id))
        return copy.deepcopy(self.orders.get(str(order_id)))

    def transition_order(self, order_id, expected, target):
        return self._cas(self.orders, order_id, expected, {"status": target})

    def sum_trade_amounts(self, order_id, statuses):
        wanted = _vs(statuses)
        return sum(
            (t["amount"] for t in self.trades.values() if t["order_id"] == str(order_id) and t["status"] in wanted),
            Decimal("0"),
        )

    # trades and escrows

    def create_trade(self, trade, escrow_row):
        t = {
            **trade,
            "status": _v(trade["status"]),
            "payment_proof": None,
            "paid_at": None,
            "completed_at": None,
            "release_status": None,
            "release_detail": None,
        }
        e = {**escrow_row, "status": _v(escrow_row["status"]), "payment_confirmed_at": None}
        self.trades[t["id"]] = t
        self.escrows[e["id"]] = e
        return copy.deepcopy(t), copy.deepcopy(e)

    def get_trade(self, trade_id):
        return copy.deepcopy(self.trades.get(str(trade_id)))

    def get_escrow(self, escrow_id):
        return copy.deepcopy(self.escrows.get(str(escrow_id)))

    def transition_trade(self, trade_id, expected, target, **fields):
        return self._cas(self.trades, trade_id, expected, {"status": target, **fields})

    def transition_escrow(self, escrow_id, expected, target, **fields):
        return self._cas(self.escrows, escrow_id, expected, {"status": target, **fields})

    def record_fund_release(self, trade_id, status, detail=None):
        self.trades[str(trade_id)].update(release_status=status, release_detail=detail)

    def create_dispute(self, dispute):
        row = {**dispute, "status": _v(dispute["status"])}
        self.disputes[row["id"]] = row
        return copy.deepcopy(row)

    # users

    def get_custody_account(self, user_id):
        return self.profiles.get(user_id, {}).get("quidax_id")

    def increment_completed_trades(self, user_id):
        profile = self.profiles.setdefault(user_id, {"quidax_id": None, "completed_trades": 0})
        profile["completed_trades"] = profile.get("completed_trades", 0) + 1

    def credit_wallet(self, user_id, wallet, amount):
        key = (user_id, wallet)
        self.wallets[key] = self.wallets.get(key, Decimal("0")) + amount
        self.credits.append((user_id, wallet, amount))
        return self.wallets[key]

    # transactions

    def create_transaction(self, txn):
        row = {
            **txn,
            "type": _v(txn["type"]),
            "status": _v(txn["status"]),
            "metadata": copy.deepcopy(txn.get("metadata") or {}),
        }
        self.transactions[row["reference"]] = row
        return copy.deepcopy(row)

    def get_transaction(self, reference):
        return copy.deepcopy(self.transactions.get(reference))

    def apply_webhook_status(self, reference, status, expected, event):
        with self._lock:
            row = self.transactions.get(reference)
            if row is None or row["status"] not in _vs(expected):
                return None
            row["status"] = _v(status)
            row["metadata"].setdefault("webhook_events", []).append(copy.deepcopy(event))
            return copy.deepcopy(row)

    def mark_transaction_paid(self, account_number, amount, patch):
        with self._lock:
            for row in self.transactions.values():
                if (
                    row["status"] == "pending"
                    and row.get("virtual_account_number") == account_number
                    and row["amount"] == amount
                ):
                    row["status"] = "user_marked_paid"
                    row["metadata"].update(patch)
                    return copy.deepcopy(row)
        return None

    def admin_confirm_transaction(self, reference, expected, target, patch):
        with self._lock:
            row = self.transactions.get(reference)
            if row is None or row["status"] not in _vs(expected):
                return None
            row["status"] = _v(target)
            row["metadata"].update(patch)
            return copy.deepcopy(row)


class FakeExchange:
    def __init__(self):
        self.transfers = []
        self.fail = False

    async def transfer(self, from_user_id, to_user_id, currency, amount, note, narration="P2P trade settlement"):
        self.transfers.append({
            "from": from_user_id,
            "to": to_user_id,
            "currency": currency,
            "amount": amount,
            "note": note,
        })
        if self.fail:
            raise UpstreamFailure("Quidax returned HTTP 503")
        return {"id": f"wd-{len(self.transfers)}", "status": "submitted"}


@pytest.fixture
def ledger():
    led = InMemoryLedger()
    led.profiles[SELLER] = {"quidax_id": "qdx-seller", "completed_trades": 0}
    led.profiles[BUYER] = {"quidax_id": "qdx-buyer", "completed_trades": 0}
    return led


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def sell_order(ledger):
    """Seller offers 100 USDT at 1500 NGN."""
    return escrow.create_order(ledger, SELLER, "sell", "usdt", Decimal("100"), Decimal("1500"))


@pytest.fixture
def trade(ledger, sell_order):
    """Buyer takes 40 of the seller's 100 USDT; escrow held for 30 minutes from now."""
    t, _ = escrow.open_trade(ledger, sell_order["id"], BUYER, Decimal("40"))
    return t


@pytest.fixture
def paid_trade(ledger, trade):
    return escrow.confirm_payment(ledger, trade["id"], BUYER, "https://proofs.example/receipt.png")


@pytest.fixture
def korapay_secret(monkeypatch):
    monkeypatch.setitem(WEBHOOK_PROVIDERS["korapay"], "secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture
def client(ledger, exchange):
    def override_ledger():
        yield ledger

    @contextmanager
    def session():
        yield ledger

    app.dependency_overrides[get_ledger] = override_ledger
    app.dependency_overrides[get_ledger_session] = lambda: session
    app.dependency_overrides[get_exchange] = lambda: exchange
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
