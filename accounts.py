import secrets
import string
from typing import Any, Dict, Optional

from loguru import logger

from errors import ReferralCodeNotFound
from models import Account

REFERRAL_CODE_PREFIX = "REF_"
REFERRAL_CODE_LENGTH = 8
_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code() -> str:
    return REFERRAL_CODE_PREFIX + "".join(
        secrets.choice(_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH)
    )


def _generate_unique_referral_code(tx) -> str:
    """
    generate a referral code nobody holds yet.
    the unique constraint on the store still has the final word.
    """
    while True:
        candidate = generate_referral_code()
        if tx.find_account_by_referral_code(candidate) is None:
            return candidate


def create_account(store, username: str, referral_code: Optional[str] = None) -> Account:
    """
    signup: create an account with balance 0, optionally under the owner of
    `referral_code`.

    rules:
      - username cannot be empty and must be unique
      - referral_code, when given, must belong to an existing account
      - referred_by is fixed here and never changed afterwards, so the
        referral forest cannot acquire a cycle
    """
    username = (username or "").strip()
    if not username:
        raise ValueError("username cannot be empty")

    code = (referral_code or "").strip()

    with store.atomic() as tx:
        referred_by = None
        if code:
            referrer = tx.find_account_by_referral_code(code)
            if referrer is None:
                raise ReferralCodeNotFound(code)
            referred_by = referrer.id

        account = tx.create_account(
            username=username,
            referral_code=_generate_unique_referral_code(tx),
            referred_by=referred_by,
        )

    logger.info(f"Account {account.id} created (referred_by={account.referred_by})")
    return account


def get_profile(store, user_id: int) -> Dict[str, Any]:
    """account plus the referral code of whoever referred it."""
    with store.atomic() as tx:
        account = tx.find_account_by_id(user_id)
        referrer_code = None
        if account.referred_by is not None:
            referrer_code = tx.find_account_by_id(account.referred_by).referral_code

    return {"account": account, "referred_by_code": referrer_code}
