"""
Exact-decimal money and day-window helpers.

All money values are ``Decimal``. Floats are rejected: they cannot represent
cents exactly and silently corrupt totals.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyInput = Union[Decimal, int, str]
DateInput = Union[date, datetime]


def to_money(value: MoneyInput) -> Decimal:
    """Convert ``value`` to an exact ``Decimal``.

    Args:
        value: Decimal, int or numeric string

    Returns:
        Decimal representation of the value (not rounded)

    Raises:
        TypeError: If value is a float or an unsupported type
        ValueError: If value is not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Money values must not be binary floats: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"Invalid money value: {value!r}")
    else:
        raise TypeError(f"Unsupported money type: {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"Money value must be finite: {value!r}")
    return result


def round_money(value: MoneyInput) -> Decimal:
    """Round to cents with ROUND_HALF_UP."""
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_date(value: DateInput) -> date:
    """Return the calendar date of a date or datetime."""
    if isinstance(value, datetime):
        return value.date()
    return value


def inclusive_days(start: DateInput, end: DateInput) -> int:
    """Number of days in ``[start, end]``, counting both boundary dates.

    Returns zero or a negative number when ``end`` precedes ``start``;
    callers decide whether that is an error.
    """
    return (as_date(end) - as_date(start)).days + 1
