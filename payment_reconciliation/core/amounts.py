"""Money helpers. The gateway speaks minor units, the ledger stores major units."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

AMOUNT_TOLERANCE = Decimal("0.01")
_MINOR_PER_MAJOR = Decimal(100)
_CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce a stored or user-supplied amount to a two-place Decimal."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Any) -> int:
    """Convert a major-unit amount (e.g. 5000.00 NGN) to minor units (500000 kobo)."""
    return int((to_decimal(amount) * _MINOR_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int) -> Decimal:
    """Convert minor units reported by the gateway to a major-unit Decimal."""
    return (Decimal(int(amount_minor)) / _MINOR_PER_MAJOR).quantize(_CENT)


def within_tolerance(expected: Any, reported: Any) -> bool:
    return abs(to_decimal(expected) - to_decimal(reported)) <= AMOUNT_TOLERANCE
