from datetime import date, datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

import analytics
from accounts import create_account, get_profile
from config import get_settings
from db.db import PostgresStore
from db.memory import MemoryStore
from errors import (
    AccountNotFound,
    CommitFailure,
    ReferralCycleDetected,
    StorageConflict,
    WalletError,
)
from logging_setup import setup_logging
from models import ADD_BALANCE, Account, PurchaseTransaction
from wallet_engine import add_balance, execute_purchase, recent_transactions

settings = get_settings()
setup_logging(settings)

app = FastAPI(title=settings.app_title, version="0.2.0")

# CORS middleware to allow the dashboard to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# dependencies
# ---------


@lru_cache
def get_store():
    if settings.storage_backend == "memory":
        return MemoryStore()
    return PostgresStore(settings.database_url, lock_timeout_ms=settings.lock_timeout_ms)


def current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """
    the authentication gateway verifies the caller and forwards the id in
    X-User-Id; the wallet trusts it as-is.
    """
    if x_user_id is None or not x_user_id.strip().isdigit():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return int(x_user_id)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------
# pydantic models (requests)
# ---------


class SignupRequest(BaseModel):
    username: str = Field(..., description="Unique display name")
    referral_code: Optional[str] = Field(None, description="Referral code used on signup")


class AmountRequest(BaseModel):
    # kept loose so the engine owns amount validation (InvalidAmount -> 400)
    amount: Any = Field(None, description="Positive amount with at most 2 decimal places")


# ---------
# serialization helpers
# ---------


def _fmt(value: Any) -> Any:
    """decimals must serialize as strings; dates as ISO 8601."""
    if isinstance(value, Decimal):
        return f"{value:.6f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _fmt(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_fmt(v) for v in value]
    return value


def _account_json(account: Account) -> dict:
    return _fmt(
        {
            "user_id": account.id,
            "username": account.username,
            "referral_code": account.referral_code,
            "referred_by": account.referred_by,
            "balance": account.balance,
            "created_at": account.created_at,
        }
    )


def _transaction_json(record: PurchaseTransaction) -> dict:
    return _fmt(
        {
            "id": record.id,
            "buyer_id": record.buyer_id,
            "type": record.type,
            "amount": record.amount,
            "total_commission_paid": record.total_commission_paid,
            "created_at": record.created_at,
            "commissions": [
                {
                    "level": p.level,
                    "receiver_id": p.receiver_id,
                    "amount": p.amount,
                }
                for p in record.payouts
            ],
        }
    )


def _http_error(e: Exception) -> HTTPException:
    """normalize wallet errors into HTTP errors."""
    if isinstance(e, AccountNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, StorageConflict):
        return HTTPException(status_code=409, detail="Conflicting update, please retry")
    if isinstance(e, CommitFailure):
        return HTTPException(status_code=503, detail="Storage unavailable, please retry")
    if isinstance(e, ReferralCycleDetected):
        logger.error(f"Broken referral graph: {e}")
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        # business rule violations (invalid amount, insufficient funds, bad code, ...)
        return HTTPException(status_code=400, detail=str(e))
    logger.opt(exception=e).error("Unexpected error")
    return HTTPException(status_code=500, detail="Internal server error")


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except (WalletError, ValueError) as e:
        logger.warning(f"{fn.__name__} rejected: {e}")
        raise _http_error(e)
    except Exception as e:
        raise _http_error(e)


# ---------
# endpoints
# ---------


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/users/signup", status_code=201)
def signup(payload: SignupRequest, store=Depends(get_store)):
    """
    create an account with balance 0, optionally under a referrer.
    the referrer is fixed at signup and never changes.
    """
    account = _run(create_account, store, payload.username, payload.referral_code)
    return _account_json(account)


@app.get("/api/users/profile")
def profile(user_id: int = Depends(current_user_id), store=Depends(get_store)):
    result = _run(get_profile, store, user_id)
    body = _account_json(result["account"])
    body["referred_by_code"] = result["referred_by_code"]
    return body


@app.post("/api/transactions/buy", status_code=201)
def buy(
    payload: AmountRequest,
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
):
    """
    buy a product: debit the caller and distribute the referral commission.
    either everything is applied or nothing is.
    """
    result = _run(execute_purchase, store, user_id, payload.amount)
    return {
        "message": "Transaction completed successfully and commissions have been distributed.",
        "new_balance": _fmt(result.new_balance),
        "transaction": _transaction_json(result.transaction),
    }


@app.post("/api/add-balance", status_code=201)
def top_up(
    payload: AmountRequest,
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
):
    result = _run(add_balance, store, user_id, payload.amount)
    return {
        "message": "Balance added successfully",
        "new_balance": _fmt(result.new_balance),
        "record": _transaction_json(result.transaction),
    }


@app.get("/api/transactions/recent")
def recent(
    limit: Optional[int] = Query(None, ge=1, description="How many rows to return"),
    type: Optional[Literal["buy", "add-balance"]] = Query(None, description="Filter by type"),
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
):
    """the caller's own ledger rows, newest first."""
    rows = _run(
        recent_transactions,
        store,
        user_id,
        limit or settings.recent_transactions_limit,
        type=type,
        max_limit=settings.max_page_size,
    )
    return [_transaction_json(r) for r in rows]


@app.get("/api/add-balance/recent")
def recent_top_ups(user_id: int = Depends(current_user_id), store=Depends(get_store)):
    rows = _run(
        recent_transactions,
        store,
        user_id,
        settings.topup_history_limit,
        type=ADD_BALANCE,
        max_limit=settings.max_page_size,
    )
    return [_transaction_json(r) for r in rows]


@app.get("/api/analytics/dashboard")
def analytics_dashboard(
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    return _fmt(_run(analytics.dashboard, store, user_id, now))


@app.get("/api/analytics/sales")
def analytics_sales(
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    return _fmt(_run(analytics.sales_overview, store, now, days=days))


@app.get("/api/commissions/today-summary")
def commissions_today_summary(
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    return _fmt(_run(analytics.commission_summary, store, user_id, now))


@app.get("/api/commissions/today-detailed")
def commissions_today_detailed(
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    return _fmt(_run(analytics.commission_detail, store, user_id, now))


@app.get("/api/commissions/date-range")
def commissions_date_range(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    """per-day commissions; both bounds default to today (UTC)."""
    today = now.astimezone(timezone.utc).date()
    return _fmt(
        _run(
            analytics.daily_commissions,
            store,
            user_id,
            start_date or today,
            end_date or today,
        )
    )


@app.get("/api/commissions/summary")
def commissions_weekly(
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
    now: datetime = Depends(utcnow),
):
    return _fmt(_run(analytics.weekly_commissions, store, user_id, now))


@app.get("/api/referral/network")
def referral_network(
    max_levels: int = Query(3, ge=1, le=10, description="How many levels deep to fetch"),
    limit_per_level: int = Query(50, ge=1, le=500, description="Max users per level"),
    user_id: int = Depends(current_user_id),
    store=Depends(get_store),
):
    """
    return the caller's downline up to max_levels deep.

    response:
    {
      "user_id": 123,
      "levels": [
        {"level": 1, "users": [...]},
        {"level": 2, "users": [...]}
      ]
    }
    """
    levels = _run(
        analytics.network_levels,
        store,
        user_id,
        max_levels=max_levels,
        limit_per_level=limit_per_level,
    )
    return {
        "user_id": user_id,
        "max_levels": max_levels,
        "limit_per_level": limit_per_level,
        "levels": [
            {
                "level": entry["level"],
                "users": [
                    {
                        "user_id": a.id,
                        "username": a.username,
                        "referrer_id": a.referred_by,
                        "joined_at": a.created_at.isoformat() if a.created_at else None,
                    }
                    for a in entry["users"]
                ],
            }
            for entry in levels
        ],
    }
