# Overview: Conversions between wire decimal amounts and integer cents.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .validation import ValidationError

CENT = Decimal("0.01")


def to_cents(value, field: str = "amount") -> int:
    """
    Convert a wire amount (2.5, "2.50", Decimal) to integer cents.

    Floats go through their shortest repr so 0.1 + 0.2 style noise does not
    leak into stored values. Half-cent values round away from zero.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, int):
        return value * 100
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(cents: int | None) -> float | None:
    """Integer cents to the wire representation (a JSON number)."""
    if cents is None:
        return None
    return float(Decimal(cents) / 100)
