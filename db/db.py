from contextlib import contextmanager
from typing import Optional

import psycopg
from loguru import logger
from psycopg.errors import DeadlockDetected, LockNotAvailable, SerializationFailure

from config import get_settings
from db import repositories
from errors import CommitFailure, StorageConflict

CONFLICT_ERRORS = (SerializationFailure, DeadlockDetected, LockNotAvailable)


@contextmanager
def get_conn(dsn: Optional[str] = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn or get_settings().database_url) as conn:
        conn.autocommit = False
        yield conn


def _safe_rollback(conn) -> None:
    try:
        conn.rollback()
    except psycopg.Error as e:
        # connection already broken; the original error is re-raised by the caller
        logger.warning(f"Rollback failed: {e}")


class PostgresSession:
    """repository calls bound to the connection of one open transaction."""

    def __init__(self, conn):
        self.conn = conn

    def find_account_by_id(self, account_id, for_update=False):
        return repositories.find_account_by_id(self.conn, account_id, for_update)

    def find_account_by_referral_code(self, referral_code):
        return repositories.find_account_by_referral_code(self.conn, referral_code)

    def find_accounts(self, account_ids):
        return repositories.find_accounts(self.conn, account_ids)

    def create_account(self, username, referral_code, referred_by=None):
        return repositories.create_account(self.conn, username, referral_code, referred_by)

    def save_account_balance(self, account_id, balance):
        return repositories.save_account_balance(self.conn, account_id, balance)

    def list_direct_referrals(self, parent_ids, limit=50):
        return repositories.list_direct_referrals(self.conn, parent_ids, limit)

    def append_transaction(self, buyer_id, type, amount, total_commission_paid):
        return repositories.append_transaction(
            self.conn, buyer_id, type, amount, total_commission_paid
        )

    def append_payouts(self, transaction_id, sender_id, payouts):
        return repositories.append_payouts(self.conn, transaction_id, sender_id, payouts)

    def list_transactions(self, buyer_id=None, type=None, start=None, end=None, limit=None):
        return repositories.list_transactions(self.conn, buyer_id, type, start, end, limit)

    def find_transactions(self, transaction_ids):
        return repositories.find_transactions(self.conn, transaction_ids)

    def list_payouts(self, receiver_id=None, start=None, end=None):
        return repositories.list_payouts(self.conn, receiver_id, start, end)


class PostgresStore:
    def __init__(self, dsn: Optional[str] = None, lock_timeout_ms: int = 0):
        self.dsn = dsn
        self.lock_timeout_ms = lock_timeout_ms

    @contextmanager
    def atomic(self):
        """
        one database transaction: commit if the block finishes, roll back on
        any exception. contention and connectivity errors surface as
        StorageConflict / CommitFailure so callers can resubmit.
        """
        try:
            with get_conn(self.dsn) as conn:
                try:
                    if self.lock_timeout_ms:
                        conn.execute(
                            "SELECT set_config('lock_timeout', %s, true)",
                            (f"{self.lock_timeout_ms}ms",),
                        )
                    yield PostgresSession(conn)
                    conn.commit()
                except Exception:
                    _safe_rollback(conn)
                    raise
        except CONFLICT_ERRORS as e:
            logger.warning(f"Transaction aborted by contention: {e}")
            raise StorageConflict(str(e)) from e
        except psycopg.OperationalError as e:
            logger.error(f"Transaction aborted by storage failure: {e}")
            raise CommitFailure(str(e)) from e
