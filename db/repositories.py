from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import Connection
from psycopg.errors import ForeignKeyViolation, UniqueViolation

from errors import AccountNotFound, DuplicateAccount
from models import Account, CommissionPayout, PurchaseTransaction

ACCOUNT_COLUMNS = "id, username, referral_code, balance, referred_by, created_at"
TRANSACTION_COLUMNS = "id, buyer_id, type, amount, total_commission_paid, created_at"
PAYOUT_COLUMNS = "id, transaction_id, level, sender_id, receiver_id, amount, created_at"


def _account(row) -> Account:
    return Account(
        id=row[0],
        username=row[1],
        referral_code=row[2],
        balance=row[3],
        referred_by=row[4],
        created_at=row[5],
    )


def _transaction(row) -> PurchaseTransaction:
    return PurchaseTransaction(
        id=row[0],
        buyer_id=row[1],
        type=row[2],
        amount=row[3],
        total_commission_paid=row[4],
        created_at=row[5],
    )


def _payout(row) -> CommissionPayout:
    return CommissionPayout(
        id=row[0],
        transaction_id=row[1],
        level=row[2],
        sender_id=row[3],
        receiver_id=row[4],
        amount=row[5],
        created_at=row[6],
    )


def _window(column: str, start: Optional[datetime], end: Optional[datetime]):
    """[start, end) filter clauses + params for a timestamp column."""
    clauses: List[str] = []
    params: List[Any] = []
    if start is not None:
        clauses.append(f"{column} >= %s")
        params.append(start)
    if end is not None:
        clauses.append(f"{column} < %s")
        params.append(end)
    return clauses, params


# ---------
# account store
# ---------


def find_account_by_id(conn: Connection, account_id: int, for_update: bool = False) -> Account:
    """
    fetch an account, optionally locking its row until the end of the
    current transaction.
    """
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s{lock}",
            (account_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise AccountNotFound(account_id)
    return _account(row)


def find_account_by_referral_code(conn: Connection, referral_code: str) -> Optional[Account]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    return _account(row) if row else None


def find_accounts(conn: Connection, account_ids: Iterable[int]) -> Dict[int, Account]:
    ids = list(set(account_ids))
    if not ids:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ANY(%s)",
            (ids,),
        )
        rows = cur.fetchall()
    return {r[0]: _account(r) for r in rows}


def create_account(
    conn: Connection,
    username: str,
    referral_code: str,
    referred_by: Optional[int] = None,
) -> Account:
    """
    insert a new account with balance 0.

    enforces:
      - username unique
      - referral_code unique + NOT NULL
      - referred_by points at an existing account
    """
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO accounts (username, referral_code, referred_by)
                VALUES (%s, %s, %s)
                RETURNING {ACCOUNT_COLUMNS}
                """,
                (username, referral_code, referred_by),
            )
            row = cur.fetchone()
    except UniqueViolation:
        # username collision (or extremely unlikely referral_code collision)
        raise DuplicateAccount(f"username '{username}' already exists")
    except ForeignKeyViolation:
        raise AccountNotFound(referred_by)

    return _account(row)


def save_account_balance(conn: Connection, account_id: int, balance: Decimal) -> Account:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE accounts
            SET balance = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {ACCOUNT_COLUMNS}
            """,
            (balance, account_id),
        )
        row = cur.fetchone()
    if row is None:
        raise AccountNotFound(account_id)
    return _account(row)


def list_direct_referrals(
    conn: Connection,
    parent_ids: Iterable[int],
    limit: int = 50,
) -> List[Account]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {ACCOUNT_COLUMNS}
            FROM accounts
            WHERE referred_by = ANY(%s)
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (list(parent_ids), limit),
        )
        rows = cur.fetchall()
    return [_account(r) for r in rows]


# ---------
# ledger writer (append-only)
# ---------


def append_transaction(
    conn: Connection,
    buyer_id: int,
    type: str,
    amount: Decimal,
    total_commission_paid: Decimal,
) -> PurchaseTransaction:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO purchase_transactions (buyer_id, type, amount, total_commission_paid)
            VALUES (%s, %s, %s, %s)
            RETURNING {TRANSACTION_COLUMNS}
            """,
            (buyer_id, type, amount, total_commission_paid),
        )
        row = cur.fetchone()
    return _transaction(row)


def append_payouts(
    conn: Connection,
    transaction_id: int,
    sender_id: int,
    payouts: List[Tuple[int, int, Decimal]],
) -> List[CommissionPayout]:
    """payouts: [(level, receiver_id, amount), ...]"""
    rows = []
    with conn.cursor() as cur:
        for level, receiver_id, amount in payouts:
            cur.execute(
                f"""
                INSERT INTO commission_payouts
                    (transaction_id, level, sender_id, receiver_id, amount)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {PAYOUT_COLUMNS}
                """,
                (transaction_id, level, sender_id, receiver_id, amount),
            )
            rows.append(_payout(cur.fetchone()))
    return rows


# ---------
# readers
# ---------


def _payouts_for(conn: Connection, transaction_ids: List[int]) -> Dict[int, List[CommissionPayout]]:
    if not transaction_ids:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {PAYOUT_COLUMNS}
            FROM commission_payouts
            WHERE transaction_id = ANY(%s)
            ORDER BY transaction_id, level
            """,
            (transaction_ids,),
        )
        rows = cur.fetchall()

    grouped: Dict[int, List[CommissionPayout]] = {}
    for r in rows:
        grouped.setdefault(r[1], []).append(_payout(r))
    return grouped


def list_transactions(
    conn: Connection,
    buyer_id: Optional[int] = None,
    type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[PurchaseTransaction]:
    """newest first, with payouts attached."""
    where_clauses, params = _window("created_at", start, end)
    if buyer_id is not None:
        where_clauses.append("buyer_id = %s")
        params.append(buyer_id)
    if type is not None:
        where_clauses.append("type = %s")
        params.append(type)

    where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
    limit_sql = ""
    if limit is not None:
        limit_sql = "LIMIT %s"
        params.append(limit)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {TRANSACTION_COLUMNS}
            FROM purchase_transactions
            {where_sql}
            ORDER BY created_at DESC, id DESC
            {limit_sql}
            """,
            tuple(params),
        )
        rows = cur.fetchall()

    transactions = [_transaction(r) for r in rows]
    payouts = _payouts_for(conn, [t.id for t in transactions])
    return [
        PurchaseTransaction(
            id=t.id,
            buyer_id=t.buyer_id,
            type=t.type,
            amount=t.amount,
            total_commission_paid=t.total_commission_paid,
            created_at=t.created_at,
            payouts=payouts.get(t.id, []),
        )
        for t in transactions
    ]


def find_transactions(conn: Connection, transaction_ids: Iterable[int]) -> Dict[int, PurchaseTransaction]:
    ids = list(set(transaction_ids))
    if not ids:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM purchase_transactions WHERE id = ANY(%s)",
            (ids,),
        )
        rows = cur.fetchall()
    return {r[0]: _transaction(r) for r in rows}


def list_payouts(
    conn: Connection,
    receiver_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[CommissionPayout]:
    """newest first."""
    where_clauses, params = _window("created_at", start, end)
    if receiver_id is not None:
        where_clauses.append("receiver_id = %s")
        params.append(receiver_id)
    where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {PAYOUT_COLUMNS}
            FROM commission_payouts
            {where_sql}
            ORDER BY created_at DESC, id DESC
            """,
            tuple(params),
        )
        rows = cur.fetchall()
    return [_payout(r) for r in rows]
