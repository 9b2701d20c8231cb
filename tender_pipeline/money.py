"""Monetary arithmetic helpers.

Every amount that takes part in the project-total check is a ``Decimal``
rounded half-up to two places (kuruş precision).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

CENT = Decimal("0.01")
PT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value.strip().replace(",", "."))
    raise TypeError(f"cannot convert {type(value).__name__} to Decimal")


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_ratio(value: Any, places: int = 3) -> Decimal:
    quant = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(quant, rounding=ROUND_HALF_UP)


def as_float(value: Decimal) -> float:
    return float(value)


def within_tolerance(left: Any, right: Any, tolerance: Decimal = PT_TOLERANCE) -> bool:
    return abs(to_decimal(left) - to_decimal(right)) <= tolerance
