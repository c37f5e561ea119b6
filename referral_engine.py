from loguru import logger

from commission_engine import MAX_LEVELS
from errors import ReferralCycleDetected


def walk_referral_chain(start, lookup, max_levels=MAX_LEVELS):
    """
    given the starting account and a `lookup(account_id)` callable,
    return the ancestors [L1, L2, ...] up to max_levels.

    the walk stops as soon as an account has no referrer. lookup errors
    (e.g. AccountNotFound) propagate so the caller can abort its unit of work.
    an account seen twice means the graph has a cycle; that is reported
    instead of paying the same account at several levels.
    """
    chain = []
    seen = {start.id}
    current = start

    for level in range(1, max_levels + 1):
        if current.referred_by is None:
            break

        if current.referred_by in seen:
            raise ReferralCycleDetected(current.referred_by, level)

        referrer = lookup(current.referred_by)
        seen.add(referrer.id)
        chain.append(referrer)
        current = referrer  # move up one level

    logger.debug(f"Referral chain for account {start.id}: {[a.id for a in chain]}")
    return chain


def get_lineage(start, lookup, max_levels=MAX_LEVELS):
    """ids of the ancestors [L1, L2, ...] for `start`."""
    return [a.id for a in walk_referral_chain(start, lookup, max_levels)]


def get_network_levels(root_id, children_of, max_levels=3, limit_per_level=50):
    """
    return up to max_levels of downline for root_id, using
    `children_of(parent_ids, limit)` to fetch each generation.

    structure:
    [
      {"level": 1, "users": [...]},
      {"level": 2, "users": [...]},
    ]
    """
    levels = []
    current_level_ids = [root_id]

    for level in range(1, max_levels + 1):
        if not current_level_ids:
            levels.append({"level": level, "users": []})
            continue

        accounts = children_of(current_level_ids, limit_per_level)
        levels.append({"level": level, "users": accounts})
        current_level_ids = [a.id for a in accounts]

    return levels
