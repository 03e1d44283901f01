"""
PostgreSQL ledger gateway.

Every status change is a compare-and-swap: the UPDATE is conditioned on the
row still being in one of the expected prior statuses and returns the new row,
or None when another writer got there first.
"""
from decimal import Decimal
from typing import Iterable, Optional

from psycopg import sql
from psycopg.types.json import Jsonb


def _v(status) -> str:
    return getattr(status, "value", status)


def _vs(statuses) -> list:
    if isinstance(statuses, str):
        statuses = [statuses]
    return [_v(s) for s in statuses]


class SqlLedger:
    def __init__(self, conn):
        self.conn = conn

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def _transition(self, table: str, row_id: str, expected: Iterable, values: dict, touch: bool = True):
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder(k)) for k in values
        ]
        if touch:
            assignments.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL(
            "UPDATE {} SET {} WHERE id = %(_id)s AND status = ANY(%(_expected)s) RETURNING *"
        ).format(sql.Identifier(table), sql.SQL(", ").join(assignments))
        params = {k: Jsonb(v) if isinstance(v, (dict, list)) else v for k, v in values.items()}
        params.update({"_id": row_id, "_expected": _vs(expected)})
        return self.conn.execute(query, params).fetchone()

    # --- orders -------------------------------------------------------------

    def create_order(self, order: dict) -> dict:
        return self.conn.execute(
            "INSERT INTO p2p_orders(id, creator_id, side, currency, amount, price, status) "
            "VALUES (%(id)s, %(creator_id)s, %(side)s, %(currency)s, %(amount)s, %(price)s, %(status)s) "
            "RETURNING *",
            {**order, "status": _v(order["status"])},
        ).fetchone()

    def get_order(self, order_id: str, for_update: bool = False) -> Optional[dict]:
        query = "SELECT * FROM p2p_orders WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        return self.conn.execute(query, (order_id,)).fetchone()

    def transition_order(self, order_id: str, expected, target) -> Optional[dict]:
        return self._transition("p2p_orders", order_id, expected, {"status": _v(target)})

    def sum_trade_amounts(self, order_id: str, statuses) -> Decimal:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM p2p_trades "
            "WHERE order_id = %s AND status = ANY(%s)",
            (order_id, _vs(statuses)),
        ).fetchone()
        return Decimal(row["total"])

    # --- trades and escrows ------------------------------------------------

    def create_trade(self, trade: dict, escrow: dict):
        """Insert a trade and its escrow; both land in the caller's transaction."""
        trade_row = self.conn.execute(
            "INSERT INTO p2p_trades(id, order_id, escrow_id, buyer_id, seller_id, amount, price, total, status) "
            "VALUES (%(id)s, %(order_id)s, %(escrow_id)s, %(buyer_id)s, %(seller_id)s, "
            "%(amount)s, %(price)s, %(total)s, %(status)s) RETURNING *",
            {**trade, "status": _v(trade["status"])},
        ).fetchone()
        escrow_row = self.conn.execute(
            "INSERT INTO p2p_escrows(id, trade_id, status, expires_at) "
            "VALUES (%(id)s, %(trade_id)s, %(status)s, %(expires_at)s) RETURNING *",
            {**escrow, "status": _v(escrow["status"])},
        ).fetchone()
        return trade_row, escrow_row

    def get_trade(self, trade_id: str) -> Optional[dict]:
        return self.conn.execute("SELECT * FROM p2p_trades WHERE id = %s", (trade_id,)).fetchone()

    def get_escrow(self, escrow_id: str) -> Optional[dict]:
        return self.conn.execute("SELECT * FROM p2p_escrows WHERE id = %s", (escrow_id,)).fetchone()

    def transition_trade(self, trade_id: str, expected, target, **fields) -> Optional[dict]:
        return self._transition("p2p_trades", trade_id, expected, {"status": _v(target), **fields})

    def transition_escrow(self, escrow_id: str, expected, target, **fields) -> Optional[dict]:
        return self._transition(
            "p2p_escrows", escrow_id, expected, {"status": _v(target), **fields}, touch=False
        )

    def record_fund_release(self, trade_id: str, status: str, detail: Optional[str] = None):
        self.conn.execute(
            "UPDATE p2p_trades SET release_status = %s, release_detail = %s, updated_at = NOW() "
            "WHERE id = %s",
            (status, detail, trade_id),
        )

    def create_dispute(self, dispute: dict) -> dict:
        evidence = dispute.get("evidence")
        return self.conn.execute(
            "INSERT INTO p2p_disputes(id, trade_id, initiator_id, respondent_id, reason, evidence, status) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING *",
            (
                dispute["id"],
                dispute["trade_id"],
                dispute["initiator_id"],
                dispute["respondent_id"],
                dispute["reason"],
                Jsonb(evidence) if evidence is not None else None,
                _v(dispute["status"]),
            ),
        ).fetchone()

    # --- users --------------------------------------------------------------

    def get_custody_account(self, user_id: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT quidax_id FROM user_profiles WHERE user_id = %s", (user_id,)
        ).fetchone()
        return row["quidax_id"] if row else None

    def increment_completed_trades(self, user_id: str):
        self.conn.execute("SELECT increment_completed_trades(%s)", (user_id,))

    def credit_wallet(self, user_id: str, wallet: str, amount: Decimal) -> Decimal:
        row = self.conn.execute(
            "SELECT credit_wallet(%s, %s, %s) AS balance", (user_id, wallet, amount)
        ).fetchone()
        return row["balance"]

    # --- fiat/crypto transactions -----------------------------------------

    def create_transaction(self, txn: dict) -> dict:
        return self.conn.execute(
            "INSERT INTO transactions(id, user_id, type, amount, currency, status, reference, "
            "virtual_account_number, metadata) "
            "VALUES (%(id)s, %(user_id)s, %(type)s, %(amount)s, %(currency)s, %(status)s, "
            "%(reference)s, %(virtual_account_number)s, %(metadata)s) RETURNING *",
            {
                **txn,
                "type": _v(txn["type"]),
                "status": _v(txn["status"]),
                "metadata": Jsonb(txn.get("metadata") or {}),
            },
        ).fetchone()

    def get_transaction(self, reference: str) -> Optional[dict]:
        return self.conn.execute(
            "SELECT * FROM transactions WHERE reference = %s", (reference,)
        ).fetchone()

    def apply_webhook_status(self, reference: str, status, expected, event: dict) -> Optional[dict]:
        """Move a transaction still in one of ``expected`` to ``status`` and append ``event`` to its webhook log."""
        return self.conn.execute(
            "UPDATE transactions SET status = %s, "
            "metadata = jsonb_set(metadata, '{webhook_events}', "
            "COALESCE(metadata->'webhook_events', '[]'::jsonb) || %s), "
            "updated_at = NOW() "
            "WHERE reference = %s AND status = ANY(%s) RETURNING *",
            (_v(status), Jsonb([event]), reference, _vs(expected)),
        ).fetchone()

    def mark_transaction_paid(self, account_number: str, amount: Decimal, patch: dict) -> Optional[dict]:
        # oldest pending match wins; the outer status check keeps it a CAS
        return self.conn.execute(
            "UPDATE transactions SET status = 'user_marked_paid', metadata = metadata || %s, "
            "updated_at = NOW() "
            "WHERE id = (SELECT id FROM transactions WHERE status = 'pending' "
            "AND virtual_account_number = %s AND amount = %s ORDER BY created_at LIMIT 1) "
            "AND status = 'pending' RETURNING *",
            (Jsonb(patch), account_number, amount),
        ).fetchone()

    def admin_confirm_transaction(self, reference: str, expected, target, patch: dict) -> Optional[dict]:
        return self.conn.execute(
            "UPDATE transactions SET status = %s, metadata = metadata || %s, updated_at = NOW() "
            "WHERE reference = %s AND status = ANY(%s) RETURNING *",
            (_v(target), Jsonb(patch), reference, _vs(expected)),
        ).fetchone()
