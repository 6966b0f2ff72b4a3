"""Decimal helpers for BRL amounts."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Quantize to cents. Floats go through str() so 0.1 stays 0.10."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return to_money(Decimal(cents) / 100)


def percentage_of(amount: Number, percentage: Number) -> Decimal:
    """amount * percentage / 100, rounded to cents."""
    return to_money(Decimal(str(amount)) * Decimal(str(percentage)) / Decimal(100))
