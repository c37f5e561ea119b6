import os
import threading
from decimal import Decimal
from pathlib import Path

import psycopg
import pytest

from accounts import create_account
from analytics import commission_summary
from db.db import PostgresStore, get_conn
from errors import InsufficientFunds
from wallet_engine import add_balance, execute_purchase, recent_transactions

DSN = os.environ.get("WALLET_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not DSN, reason="WALLET_TEST_DATABASE_URL not set")

SCHEMA = Path(__file__).resolve().parent.parent / "db" / "schema.sql"


@pytest.fixture
def pg_store():
    """fresh schema per test; the ledger triggers do not fire on TRUNCATE."""
    with get_conn(DSN) as conn:
        conn.execute(SCHEMA.read_text())
        conn.execute(
            "TRUNCATE commission_payouts, purchase_transactions, accounts "
            "RESTART IDENTITY CASCADE"
        )
        conn.commit()
    return PostgresStore(DSN, lock_timeout_ms=2000)


def _balance(store, account_id):
    with store.atomic() as tx:
        return tx.find_account_by_id(account_id).balance


def _chain(store, depth):
    """root -> ... -> buyer; returns (buyer, [L1, L2, ...])."""
    created = [create_account(store, "pg0")]
    for i in range(1, depth + 1):
        created.append(create_account(store, f"pg{i}", created[-1].referral_code))
    return created[-1], list(reversed(created[:-1]))


def test_db_purchase_flow_full_lineage(pg_store):
    buyer, ancestors = _chain(pg_store, 10)
    add_balance(pg_store, buyer.id, "1000")

    result = execute_purchase(pg_store, buyer.id, "100")

    assert result.new_balance == Decimal("900")
    expected = [Decimal("3")] * 3 + [Decimal("2")] * 4 + [Decimal("0.6")] * 3
    assert [_balance(pg_store, a.id) for a in ancestors] == expected

    rows = recent_transactions(pg_store, buyer.id, limit=10)
    assert [r.type for r in rows] == ["buy", "add-balance"]
    assert [p.receiver_id for p in rows[0].payouts] == [a.id for a in ancestors]
    assert rows[0].total_commission_paid == Decimal("20")


def test_db_insufficient_funds_rolls_back(pg_store):
    buyer, ancestors = _chain(pg_store, 2)
    add_balance(pg_store, buyer.id, "5")

    with pytest.raises(InsufficientFunds):
        execute_purchase(pg_store, buyer.id, "5.01")

    assert _balance(pg_store, buyer.id) == Decimal("5")
    assert all(_balance(pg_store, a.id) == Decimal("0") for a in ancestors)
    assert len(recent_transactions(pg_store, buyer.id, limit=10)) == 1


def test_db_ledger_is_append_only(pg_store):
    buyer, _ = _chain(pg_store, 0)
    add_balance(pg_store, buyer.id, "5")

    with get_conn(DSN) as conn:
        with pytest.raises(psycopg.Error):
            conn.execute("DELETE FROM purchase_transactions")
        conn.rollback()


def test_db_commission_summary(pg_store):
    buyer, ancestors = _chain(pg_store, 1)
    add_balance(pg_store, buyer.id, "100")
    execute_purchase(pg_store, buyer.id, "100")

    with get_conn(DSN) as conn:
        now = conn.execute("SELECT NOW()").fetchone()[0]

    summary = commission_summary(pg_store, ancestors[0].id, now)
    assert summary["today_commission"] == Decimal("3")
    assert summary["transaction_count"] == 1


def test_db_concurrent_purchases_through_shared_referrer(pg_store):
    """
    8 buyers under one referrer, each on its own connection; the row locks
    on the referrer must serialize the credits without losing any.
    """
    referrer = create_account(pg_store, "pg_hub")
    buyers = [create_account(pg_store, f"pg_b{i}", referrer.referral_code) for i in range(8)]
    for b in buyers:
        add_balance(pg_store, b.id, "40")

    errors = []

    def shop(buyer_id):
        try:
            for _ in range(4):
                execute_purchase(pg_store, buyer_id, "10")
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=shop, args=(b.id,)) for b in buyers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    # 32 purchases of 10 -> 32 * 10 * 0.20 * 0.15
    assert _balance(pg_store, referrer.id) == Decimal("9.6")
    assert all(_balance(pg_store, b.id) == Decimal("0") for b in buyers)
