# Overview: Decimal quantity parsing and comparison helpers for the ledger.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from flask import current_app

from .errors import InvalidRequestError

# Storage scale of Numeric(15, 3) quantity columns
QUANTITY_PLACES = Decimal("0.001")
ZERO = Decimal("0")


def to_decimal(value: Any, *, field: str = "quantity") -> Decimal:
    """
    Convert caller input to Decimal without going through binary floats.

    Accepts int, Decimal, float (via its repr) and numeric strings.
    Rejects bools, None, NaN and infinities.
    """
    if value is None or isinstance(value, bool):
        raise InvalidRequestError(field, "must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise InvalidRequestError(field, "must be a number")
        try:
            result = Decimal(stripped)
        except InvalidOperation:
            raise InvalidRequestError(field, "must be a number")
    else:
        raise InvalidRequestError(field, "must be a number")

    if not result.is_finite():
        raise InvalidRequestError(field, "must be a finite number")
    return result


def quantize(value: Decimal) -> Decimal:
    """Round to the storage scale (half-up)."""
    return value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def positive_quantity(value: Any, *, field: str = "quantity") -> Decimal:
    qty = quantize(to_decimal(value, field=field))
    if qty <= ZERO:
        raise InvalidRequestError(field, "must be greater than 0")
    return qty


def quantity_tolerance() -> Decimal:
    return Decimal(str(current_app.config["QUANTITY_TOLERANCE"]))


def covers(total: Decimal, required: Decimal, tolerance: Decimal) -> bool:
    """True when total satisfies required, allowing for rounding from conversion factors."""
    return total + tolerance >= required


def matches(total: Decimal, required: Decimal, tolerance: Decimal) -> bool:
    """True when total equals required to within tolerance, in either direction."""
    return abs(total - required) <= tolerance
