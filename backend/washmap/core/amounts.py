"""Exact arithmetic for token amounts.

Token amounts reach uint256 base units (78 digits), well past the 28 digit
default Decimal context, so sums and unit conversions run in a wider context
that rounds down instead of half-even.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Context, Decimal
from typing import Iterable, Union

AMOUNT_CONTEXT = Context(prec=96, rounding=ROUND_DOWN)

Number = Union[Decimal, int, str]


def to_units(amount: Number, quantum: Decimal) -> int:
    """Whole multiples of ``quantum`` contained in ``amount``, rounding down."""
    return int(AMOUNT_CONTEXT.divide(Decimal(amount), quantum).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, quantum: Decimal) -> Decimal:
    return AMOUNT_CONTEXT.multiply(Decimal(units), quantum)


def add_amounts(amounts: Iterable[Number]) -> Decimal:
    total = Decimal("0")
    for amount in amounts:
        total = AMOUNT_CONTEXT.add(total, Decimal(amount))
    return total


def scale_amount(amount: Number, factor: int) -> Decimal:
    return AMOUNT_CONTEXT.multiply(Decimal(amount), Decimal(factor))


__all__ = ["AMOUNT_CONTEXT", "to_units", "from_units", "add_amounts", "scale_amount"]
