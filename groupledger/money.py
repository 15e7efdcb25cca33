from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Convert an amount to a Decimal quantized to cents."""
    return quantize(to_number(value))


def to_number(value: Any) -> Decimal:
    """Convert a raw split value (percentage, weight) without rounding it."""
    if isinstance(value, bool):
        raise ValidationError(f"invalid number: {value!r}")
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"invalid number: {value!r}") from None
    else:
        raise ValidationError(f"invalid number: {value!r}")
    if not number.is_finite():
        raise ValidationError(f"invalid number: {value!r}")
    return number


def quantize(value: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
    return value.quantize(CENT, rounding=rounding)


def amounts_close(a: Decimal, b: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    return abs(a - b) <= tolerance
