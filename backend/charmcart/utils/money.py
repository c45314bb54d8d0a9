"""Decimal helpers for monetary values (two decimal places, half-up)."""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

MONEY_PRECISION = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[str, int, float, Decimal, None]


def to_decimal(value: Number) -> Decimal:
    """Convert any value to Decimal; floats go through str to keep their printed precision."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Not a monetary amount: {value!r}")


def round_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)


def percent_of(amount: Number, percent: Number) -> Decimal:
    """`percent` of `amount`, rounded to cents."""
    return round_money(to_decimal(amount) * to_decimal(percent) / Decimal("100"))
