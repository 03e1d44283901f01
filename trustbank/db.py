from contextlib import contextmanager
import psycopg
from psycopg.rows import dict_row
from .ledger import SqlLedger
from .settings import DATABASE_URL

@contextmanager
def get_conn(url: str = DATABASE_URL):
    conn = psycopg.connect(url, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def ledger_session():
    with get_conn() as conn:
        yield SqlLedger(conn)


def get_ledger():
    """
    Request-scoped ledger. Whatever the handler wrote is committed when it
    returns and rolled back if it raises; handlers that must commit earlier
    call ledger.commit() themselves.
    """
    with ledger_session() as ledger:
        yield ledger


def get_ledger_session():
    # For handlers that must own connection failures (webhooks answer 200 regardless)
    return ledger_session
