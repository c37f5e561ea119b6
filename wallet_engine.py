from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger

from commission_engine import MAX_BALANCE, MAX_LEVELS, commission_splits, parse_amount
from errors import InsufficientFunds, InvalidAmount
from models import (
    ADD_BALANCE,
    BUY,
    TRANSACTION_TYPES,
    PurchaseResult,
    PurchaseTransaction,
    TopUpResult,
)
from referral_engine import walk_referral_chain


def execute_purchase(store, buyer_id: int, amount) -> PurchaseResult:
    """
    debit the buyer and fan the 20% commission out to up to MAX_LEVELS
    ancestors, as one atomic unit.

    store: MemoryStore or PostgresStore (anything exposing atomic())

    steps:
      - validate the amount (before touching storage)
      - lock the buyer, check funds
      - resolve the whole referral chain (locking each ancestor)
      - compute every split
      - only then apply balances and append the ledger rows

    any exception rolls back every write made by this call.
    """
    price = parse_amount(amount)

    with store.atomic() as tx:
        result = _execute_purchase_in_tx(tx, buyer_id, price)

    logger.info(
        f"Purchase {result.transaction.id} applied: buyer={buyer_id} amount={price} "
        f"commission={result.transaction.total_commission_paid} "
        f"paid_levels={len(result.transaction.payouts)}"
    )
    return result


def _execute_purchase_in_tx(tx, buyer_id: int, price: Decimal) -> PurchaseResult:
    # 1) buyer + funds check, inside the unit to avoid check-then-act races
    buyer = tx.find_account_by_id(buyer_id, for_update=True)
    if buyer.balance < price:
        raise InsufficientFunds(buyer_id, buyer.balance, price)

    # 2) chain walk; a missing ancestor aborts before anything is written
    chain = walk_referral_chain(
        buyer,
        lambda account_id: tx.find_account_by_id(account_id, for_update=True),
        max_levels=MAX_LEVELS,
    )

    # 3) splits (same pure logic for any store)
    total, splits = commission_splits(price, len(chain))

    # 4) plan: new balance per touched account + payout rows
    new_balances: Dict[int, Decimal] = {buyer.id: buyer.balance - price}
    payout_rows = []
    for level, (ancestor, payout) in enumerate(zip(chain, splits), start=1):
        current = new_balances.get(ancestor.id, ancestor.balance)
        new_balances[ancestor.id] = current + payout
        if new_balances[ancestor.id] > MAX_BALANCE:
            raise InvalidAmount(f"Balance of account {ancestor.id} cannot exceed {MAX_BALANCE}")
        payout_rows.append((level, ancestor.id, payout))

    # 5) apply
    for account_id, balance in new_balances.items():
        tx.save_account_balance(account_id, balance)

    record = tx.append_transaction(
        buyer_id=buyer.id,
        type=BUY,
        amount=-price,
        total_commission_paid=total,
    )
    payouts = tx.append_payouts(record.id, buyer.id, payout_rows)

    return PurchaseResult(
        new_balance=new_balances[buyer.id],
        transaction=PurchaseTransaction(
            id=record.id,
            buyer_id=record.buyer_id,
            type=record.type,
            amount=record.amount,
            total_commission_paid=record.total_commission_paid,
            created_at=record.created_at,
            payouts=payouts,
        ),
    )


def add_balance(store, user_id: int, amount) -> TopUpResult:
    """credit the account and append the top-up row in one atomic unit."""
    value = parse_amount(amount)

    with store.atomic() as tx:
        account = tx.find_account_by_id(user_id, for_update=True)
        new_balance = account.balance + value
        if new_balance > MAX_BALANCE:
            raise InvalidAmount(f"Balance of account {account.id} cannot exceed {MAX_BALANCE}")
        tx.save_account_balance(account.id, new_balance)
        record = tx.append_transaction(
            buyer_id=account.id,
            type=ADD_BALANCE,
            amount=value,
            total_commission_paid=Decimal("0"),
        )

    logger.info(f"Top-up {record.id} applied: user={user_id} amount={value}")
    return TopUpResult(new_balance=new_balance, transaction=record)


def recent_transactions(
    store,
    user_id: int,
    limit: int,
    type: Optional[str] = None,
    max_limit: int = 100,
) -> List[PurchaseTransaction]:
    """the user's own ledger rows, newest first."""
    if limit < 1 or limit > max_limit:
        raise ValueError(f"limit must be between 1 and {max_limit}")
    if type is not None and type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {type}")

    with store.atomic() as tx:
        tx.find_account_by_id(user_id)
        return tx.list_transactions(buyer_id=user_id, type=type, limit=limit)
