"""
read-only aggregations over the ledger for the dashboard.

rows are fetched from the store with simple filters and grouped here, so the
same code serves both stores. day and hour buckets are UTC.
"""

from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List

from commission_engine import MAX_LEVELS
from models import ADD_BALANCE, BUY
from referral_engine import get_network_levels

ZERO = Decimal("0")


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def _today(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


def _bucket_by(rows, key, amount) -> "OrderedDict[Any, Dict[str, Any]]":
    buckets: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for row in rows:
        bucket = buckets.setdefault(key(row), {"total": ZERO, "count": 0})
        bucket["total"] += amount(row)
        bucket["count"] += 1
    return buckets


def _monthly(rows, amount, limit=12) -> List[Dict[str, Any]]:
    def month_key(r):
        ts = r.created_at.astimezone(timezone.utc)
        return ts.year, ts.month

    buckets = _bucket_by(rows, month_key, amount)
    months = sorted(buckets.items(), reverse=True)[:limit]
    return [
        {"year": year, "month": month, "total": b["total"], "count": b["count"]}
        for (year, month), b in months
    ]


def _daily(rows, amount) -> List[Dict[str, Any]]:
    buckets = _bucket_by(rows, lambda r: r.created_at.astimezone(timezone.utc).date(), amount)
    return [
        {"date": day, "total": b["total"], "count": b["count"]}
        for day, b in sorted(buckets.items())
    ]


def change_vs(today: Decimal, yesterday: Decimal):
    """percentage change string + trend, as shown on the dashboard card."""
    if yesterday > 0:
        pct = ((today - yesterday) / yesterday * 100).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
        trend = "up" if today > yesterday else "down" if today < yesterday else "same"
    elif today > 0:
        pct, trend = Decimal("100"), "up"
    else:
        pct, trend = ZERO, "same"
    return f"{'+' if pct > 0 else ''}{pct}%", trend


def dashboard(store, user_id: int, now: datetime) -> Dict[str, Any]:
    """personal totals: purchases, commission revenue, balance, history."""
    with store.atomic() as tx:
        account = tx.find_account_by_id(user_id)
        buys = tx.list_transactions(buyer_id=user_id, type=BUY)
        topups = tx.list_transactions(buyer_id=user_id, type=ADD_BALANCE)
        received = tx.list_payouts(receiver_id=user_id)

    return {
        "stats": {
            "total_sales": sum((-t.amount for t in buys), ZERO),
            "total_revenue": sum((p.amount for p in received), ZERO),
            "current_balance": account.balance,
            "transaction_count": len(buys),
            "total_topups": sum((t.amount for t in topups), ZERO),
            "forfeited_commission": sum((t.forfeited_commission for t in buys), ZERO),
        },
        "monthly_data": _monthly(buys, lambda t: -t.amount),
        "commission_data": _monthly(received, lambda p: p.amount),
        "user_info": {
            "username": account.username,
            "referral_code": account.referral_code,
            "join_date": account.created_at,
        },
        "generated_at": now,
    }


def sales_overview(store, now: datetime, days: int = 30, top: int = 10) -> Dict[str, Any]:
    """platform-wide daily sales for the last `days` days + all-time top buyers."""
    with store.atomic() as tx:
        recent = tx.list_transactions(type=BUY, start=now - timedelta(days=days))
        all_buys = tx.list_transactions(type=BUY)
        per_buyer = _bucket_by(all_buys, lambda t: t.buyer_id, lambda t: -t.amount)
        ranked = sorted(per_buyer.items(), key=lambda kv: (-kv[1]["total"], kv[0]))[:top]
        accounts = tx.find_accounts([buyer_id for buyer_id, _ in ranked])

    return {
        "daily_sales": _daily(recent, lambda t: -t.amount),
        "top_users": [
            {
                "user_id": buyer_id,
                "username": accounts[buyer_id].username if buyer_id in accounts else None,
                "total_purchases": b["total"],
                "transaction_count": b["count"],
            }
            for buyer_id, b in ranked
        ],
    }


def commission_summary(store, user_id: int, now: datetime) -> Dict[str, Any]:
    today = _today(now)
    start_today = _day_start(today)
    start_yesterday = start_today - timedelta(days=1)
    start_tomorrow = start_today + timedelta(days=1)

    with store.atomic() as tx:
        tx.find_account_by_id(user_id)
        today_rows = tx.list_payouts(receiver_id=user_id, start=start_today, end=start_tomorrow)
        yesterday_rows = tx.list_payouts(receiver_id=user_id, start=start_yesterday, end=start_today)

    today_total = sum((p.amount for p in today_rows), ZERO)
    yesterday_total = sum((p.amount for p in yesterday_rows), ZERO)
    change, trend = change_vs(today_total, yesterday_total)

    return {
        "today_commission": today_total,
        "yesterday_commission": yesterday_total,
        "change_percentage": change,
        "trend": trend,
        "transaction_count": len(today_rows),
    }


def commission_detail(store, user_id: int, now: datetime, recent_limit: int = 10) -> Dict[str, Any]:
    """today's commissions grouped by sender, hour and level, plus the latest rows."""
    today = _today(now)
    start = _day_start(today)

    with store.atomic() as tx:
        tx.find_account_by_id(user_id)
        rows = tx.list_payouts(receiver_id=user_id, start=start, end=start + timedelta(days=1))
        senders = tx.find_accounts(p.sender_id for p in rows)
        recent = rows[:recent_limit]
        purchases = tx.find_transactions(p.transaction_id for p in recent)

    by_sender: Dict[int, Dict[str, Any]] = {}
    for p in rows:
        entry = by_sender.setdefault(p.sender_id, {"total": ZERO, "count": 0, "levels": []})
        entry["total"] += p.amount
        entry["count"] += 1
        entry["levels"].append(p.level)

    commission_by_users = []
    for sender_id, entry in sorted(by_sender.items(), key=lambda kv: (-kv[1]["total"], kv[0])):
        sender = senders.get(sender_id)
        commission_by_users.append(
            {
                "sender_id": sender_id,
                "sender_name": sender.username if sender else None,
                "sender_referral_code": sender.referral_code if sender else None,
                "total_commission_from_user": entry["total"],
                "transaction_count": entry["count"],
                "levels": entry["levels"],
                "average_level": Decimal(sum(entry["levels"])) / len(entry["levels"]),
            }
        )

    hourly = _bucket_by(rows, lambda p: p.created_at.astimezone(timezone.utc).hour, lambda p: p.amount)
    by_level = _bucket_by(rows, lambda p: p.level, lambda p: p.amount)

    recent_rows = []
    for p in recent:
        purchase = purchases.get(p.transaction_id)
        recent_rows.append(
            {
                "transaction_id": p.transaction_id,
                "sender_id": p.sender_id,
                "purchase_amount": abs(purchase.amount) if purchase else ZERO,
                "my_commission": p.amount,
                "level": p.level,
                "created_at": p.created_at,
                "type": purchase.type if purchase else BUY,
            }
        )

    return {
        "summary": {
            "total_today_commission": sum((p.amount for p in rows), ZERO),
            "total_transactions": len(rows),
            "date": today,
        },
        "commission_by_users": commission_by_users,
        "hourly_commissions": [
            {"hour": hour, "hour_label": f"{hour}:00", "total": b["total"], "count": b["count"]}
            for hour, b in sorted(hourly.items())
        ],
        "commission_by_level": [
            {"level": level, "total": b["total"], "count": b["count"]}
            for level, b in sorted(by_level.items())
        ],
        "recent_transactions": recent_rows,
    }


def daily_commissions(store, user_id: int, start: date, end: date) -> Dict[str, Any]:
    """per-day commission totals for the inclusive date range [start, end]."""
    if end < start:
        raise ValueError("endDate cannot be before startDate")

    with store.atomic() as tx:
        tx.find_account_by_id(user_id)
        rows = tx.list_payouts(
            receiver_id=user_id,
            start=_day_start(start),
            end=_day_start(end) + timedelta(days=1),
        )

    return {
        "date_range": {"start": start, "end": end},
        "commission_data": _daily(rows, lambda p: p.amount),
    }


def weekly_commissions(store, user_id: int, now: datetime) -> Dict[str, Any]:
    today = _today(now)
    return daily_commissions(store, user_id, today - timedelta(days=6), today)


def network_levels(store, user_id: int, max_levels: int = 3, limit_per_level: int = 50):
    if not 1 <= max_levels <= MAX_LEVELS:
        raise ValueError(f"max_levels must be between 1 and {MAX_LEVELS}")

    with store.atomic() as tx:
        tx.find_account_by_id(user_id)
        return get_network_levels(
            user_id,
            tx.list_direct_referrals,
            max_levels=max_levels,
            limit_per_level=limit_per_level,
        )
