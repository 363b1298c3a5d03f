"""Decimal hour amounts: storage encoding and JSON rendering."""

from __future__ import annotations

from decimal import Decimal

# Reported hours above this multiple of the offer are flagged for the owner.
REPORT_WARNING_FACTOR = Decimal("1.5")


def to_storage(value: Decimal) -> str:
    """Encode an hour amount as a canonical plain decimal string, without rounding."""
    return format(value.normalize(), "f")


def from_storage(value: str | None) -> Decimal | None:
    """Decode a stored hour amount; NULL stays None."""
    if value is None:
        return None
    return Decimal(value)


def to_json(value: Decimal | None) -> float | int | None:
    """Render an hour amount as a JSON number."""
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def is_positive_hours(value: Decimal) -> bool:
    """Check that value is a finite amount greater than zero."""
    return value.is_finite() and value > 0
