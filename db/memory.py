"""
in-process store with the same session interface as the PostgreSQL store.

every atomic unit holds one re-entrant lock, so units are fully serialized,
and a snapshot taken on entry is restored if the unit raises. used for local
development (WALLET_STORAGE_BACKEND=memory) and by the test-suite.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from errors import AccountNotFound, DuplicateAccount
from models import Account, CommissionPayout, PurchaseTransaction


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_window(ts: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts >= end:
        return False
    return True


class MemoryStore:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._accounts: Dict[int, Account] = {}
        self._transactions: List[PurchaseTransaction] = []
        self._payouts: List[CommissionPayout] = []
        self._next_account_id = 1
        self._next_transaction_id = 1
        self._next_payout_id = 1

    # ---------
    # unit of work
    # ---------

    @contextmanager
    def atomic(self):
        with self._lock:
            snapshot = (
                dict(self._accounts),
                len(self._transactions),
                len(self._payouts),
                self._next_account_id,
                self._next_transaction_id,
                self._next_payout_id,
            )
            try:
                yield self
            except BaseException:
                (
                    self._accounts,
                    n_transactions,
                    n_payouts,
                    self._next_account_id,
                    self._next_transaction_id,
                    self._next_payout_id,
                ) = snapshot
                del self._transactions[n_transactions:]
                del self._payouts[n_payouts:]
                raise

    # ---------
    # account store
    # ---------

    def find_account_by_id(self, account_id: int, for_update: bool = False) -> Account:
        # for_update is implicit: the whole unit already holds the store lock
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def find_account_by_referral_code(self, referral_code: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.referral_code == referral_code:
                return account
        return None

    def find_accounts(self, account_ids: Iterable[int]) -> Dict[int, Account]:
        return {i: self._accounts[i] for i in set(account_ids) if i in self._accounts}

    def create_account(
        self,
        username: str,
        referral_code: str,
        referred_by: Optional[int] = None,
    ) -> Account:
        for existing in self._accounts.values():
            if existing.username == username:
                raise DuplicateAccount(f"username '{username}' already exists")
            if existing.referral_code == referral_code:
                raise DuplicateAccount(f"referral code '{referral_code}' already exists")
        if referred_by is not None and referred_by not in self._accounts:
            raise AccountNotFound(referred_by)

        account = Account(
            id=self._next_account_id,
            username=username,
            referral_code=referral_code,
            balance=Decimal("0"),
            referred_by=referred_by,
            created_at=self._clock(),
        )
        self._accounts[account.id] = account
        self._next_account_id += 1
        return account

    def save_account_balance(self, account_id: int, balance: Decimal) -> Account:
        account = self.find_account_by_id(account_id)
        if balance < 0:
            raise ValueError(f"Balance of account {account_id} cannot go negative")
        updated = replace(account, balance=balance)
        self._accounts[account_id] = updated
        return updated

    def list_direct_referrals(self, parent_ids: Iterable[int], limit: int = 50) -> List[Account]:
        parents = set(parent_ids)
        children = [a for a in self._accounts.values() if a.referred_by in parents]
        children.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return children[:limit]

    # ---------
    # ledger writer
    # ---------

    def append_transaction(
        self,
        buyer_id: int,
        type: str,
        amount: Decimal,
        total_commission_paid: Decimal,
    ) -> PurchaseTransaction:
        self.find_account_by_id(buyer_id)
        record = PurchaseTransaction(
            id=self._next_transaction_id,
            buyer_id=buyer_id,
            type=type,
            amount=amount,
            total_commission_paid=total_commission_paid,
            created_at=self._clock(),
        )
        self._transactions.append(record)
        self._next_transaction_id += 1
        return record

    def append_payouts(
        self,
        transaction_id: int,
        sender_id: int,
        payouts: List[Tuple[int, int, Decimal]],
    ) -> List[CommissionPayout]:
        """payouts: [(level, receiver_id, amount), ...]"""
        rows = []
        created_at = self._clock()
        for level, receiver_id, amount in payouts:
            self.find_account_by_id(receiver_id)
            row = CommissionPayout(
                id=self._next_payout_id,
                transaction_id=transaction_id,
                level=level,
                sender_id=sender_id,
                receiver_id=receiver_id,
                amount=amount,
                created_at=created_at,
            )
            self._payouts.append(row)
            self._next_payout_id += 1
            rows.append(row)
        return rows

    # ---------
    # readers
    # ---------

    def list_transactions(
        self,
        buyer_id: Optional[int] = None,
        type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PurchaseTransaction]:
        """newest first, with payouts attached."""
        rows = [
            t
            for t in self._transactions
            if (buyer_id is None or t.buyer_id == buyer_id)
            and (type is None or t.type == type)
            and _in_window(t.created_at, start, end)
        ]
        rows.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        if limit is not None:
            rows = rows[:limit]

        by_tx: Dict[int, List[CommissionPayout]] = {}
        wanted = {t.id for t in rows}
        for p in self._payouts:
            if p.transaction_id in wanted:
                by_tx.setdefault(p.transaction_id, []).append(p)
        return [
            replace(t, payouts=sorted(by_tx.get(t.id, []), key=lambda p: p.level))
            for t in rows
        ]

    def find_transactions(self, transaction_ids: Iterable[int]) -> Dict[int, PurchaseTransaction]:
        wanted = set(transaction_ids)
        return {t.id: t for t in self._transactions if t.id in wanted}

    def list_payouts(
        self,
        receiver_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CommissionPayout]:
        """newest first."""
        rows = [
            p
            for p in self._payouts
            if (receiver_id is None or p.receiver_id == receiver_id)
            and _in_window(p.created_at, start, end)
        ]
        rows.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return rows
