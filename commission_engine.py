from decimal import Decimal, InvalidOperation, ROUND_DOWN

from errors import InvalidAmount

COMMISSION_RATE = Decimal("0.20")
MAX_LEVELS = 10

# storage precision; every split of a cent-denominated amount fits exactly
MONEY_QUANT = Decimal("0.000001")
CENT = Decimal("0.01")

# accounts.balance is NUMERIC(20, 6): at most 14 integer digits
MAX_BALANCE = Decimal("99999999999999.999999")
MAX_AMOUNT = Decimal("1000000000000")

# (first level, last level, share of the total commission)
LEVEL_BANDS = (
    (1, 3, Decimal("0.15")),
    (4, 7, Decimal("0.10")),
    (8, 10, Decimal("0.03")),
)


def quantize_money(value) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_DOWN)


def parse_amount(amount) -> Decimal:
    """
    normalize a request amount into a Decimal.

    accepts Decimal, int, float or numeric str. rejects anything missing,
    non-finite, non-positive, above MAX_AMOUNT or with sub-cent precision.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount("Please provide a valid amount.")
    try:
        value = Decimal(str(amount).strip())
        if not value.is_finite():
            raise InvalidAmount(f"Invalid amount: {amount!r}")
        if value <= 0:
            raise InvalidAmount("Amount must be greater than zero.")
        if value > MAX_AMOUNT:
            raise InvalidAmount(f"Amount cannot exceed {MAX_AMOUNT}.")
        if value != value.quantize(CENT):
            raise InvalidAmount("Amount cannot have more than 2 decimal places.")
        return quantize_money(value)
    except InvalidAmount:
        raise
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid amount: {amount!r}")


def level_rate(level: int) -> Decimal:
    """
    share of the total commission paid to the ancestor at `level`.
    levels outside 1..MAX_LEVELS earn nothing.
    """
    for first, last, rate in LEVEL_BANDS:
        if first <= level <= last:
            return rate
    return Decimal("0")


def total_commission(amount) -> Decimal:
    return quantize_money(Decimal(amount) * COMMISSION_RATE)


def commission_splits(amount, depth: int):
    """
    amount: purchase price (Decimal)
    depth: number of ancestors actually present in the chain

    returns (total_commission, [payout_l1, payout_l2, ...]) with one entry
    per present ancestor, capped at MAX_LEVELS. tiers beyond `depth` are
    simply not paid.
    """
    total = total_commission(amount)
    levels = min(max(depth, 0), MAX_LEVELS)
    payouts = [quantize_money(total * level_rate(level)) for level in range(1, levels + 1)]
    return total, payouts
