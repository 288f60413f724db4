"""Fixed-point money helpers. Every amount in the engine is a 2dp Decimal."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, str, int, float]


def to_money(value: MoneyLike) -> Decimal:
    """
    Convert a value to a Decimal rounded to cents.
    Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.
    Raises ValueError for anything that is not a finite number.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def has_subcent_precision(value: MoneyLike) -> bool:
    """True when the value carries digits beyond the cent."""
    if isinstance(value, float):
        value = str(value)
    amount = Decimal(value)
    return amount != amount.quantize(CENT)


def apply_multiplier(stake: Decimal, multiplier: Decimal) -> Decimal:
    """Payout for a stake at the given multiplier, rounded half-up to cents."""
    return (stake * multiplier).quantize(CENT, rounding=ROUND_HALF_UP)
