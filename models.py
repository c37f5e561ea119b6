from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

BUY = "buy"
ADD_BALANCE = "add-balance"
TRANSACTION_TYPES = (BUY, ADD_BALANCE)


@dataclass(frozen=True)
class Account:
    id: int
    username: str
    referral_code: str
    balance: Decimal
    referred_by: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CommissionPayout:
    id: int
    transaction_id: int
    level: int
    sender_id: int
    receiver_id: int
    amount: Decimal
    created_at: datetime


@dataclass(frozen=True)
class PurchaseTransaction:
    """
    append-only ledger row.

    amount is signed: negative for a purchase, positive for a top-up.
    """

    id: int
    buyer_id: int
    type: str
    amount: Decimal
    total_commission_paid: Decimal
    created_at: datetime
    payouts: List[CommissionPayout] = field(default_factory=list)

    @property
    def forfeited_commission(self) -> Decimal:
        return self.total_commission_paid - sum(
            (p.amount for p in self.payouts), Decimal("0")
        )


@dataclass(frozen=True)
class PurchaseResult:
    new_balance: Decimal
    transaction: PurchaseTransaction


@dataclass(frozen=True)
class TopUpResult:
    new_balance: Decimal
    transaction: PurchaseTransaction
