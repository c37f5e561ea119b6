from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from accounts import create_account
from db.memory import MemoryStore
from wallet_engine import add_balance


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def make_chain(store):
    """
    build root -> ... -> buyer where each account is referred by the previous
    one. returns (buyer, ancestors) with ancestors ordered [L1, L2, ...].
    """

    def _make(depth, buyer_balance="0", prefix="u"):
        previous = None
        created = []
        for i in range(depth + 1):
            account = create_account(
                store,
                f"{prefix}{i}",
                previous.referral_code if previous else None,
            )
            created.append(account)
            previous = account

        buyer = created[-1]
        if Decimal(buyer_balance) > 0:
            add_balance(store, buyer.id, buyer_balance)
        ancestors = list(reversed(created[:-1]))
        return buyer, ancestors

    return _make


def balance_of(store, account_id):
    with store.atomic() as tx:
        return tx.find_account_by_id(account_id).balance
