from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def to_decimal(value: object) -> Decimal:
    """Coerce a stored or user-supplied amount to Decimal without passing through binary float math."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def quantize_money(value: object, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return to_decimal(value).quantize(MONEY_QUANT, rounding=mode)


def apply_percentage(amount: Decimal, percentage: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    if percentage <= 0 or amount <= 0:
        return ZERO
    return quantize_money(amount * percentage / HUNDRED, rounding=rounding)


def clamp_non_negative(value: Decimal) -> Decimal:
    if value < 0:
        return ZERO
    return value


def line_total(unit_amount: Decimal, quantity: int, *, rounding: MoneyRounding = "half_up") -> Decimal:
    return quantize_money(to_decimal(unit_amount) * int(quantity), rounding=rounding)
