"""
utils/money.py
--------------
Exact decimal helpers for currency amounts.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from utils.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field: str = "amount") -> Decimal:
    """
    Convert user input to a Decimal with at most two decimal places.

    Floats go through ``str()`` so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a finite number or has
            more than two decimal places.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} can have at most 2 decimal places")
    return amount.quantize(CENT)


def positive_money(value, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def round_money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)
