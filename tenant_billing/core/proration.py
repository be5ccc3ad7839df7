"""
Proration of a plan's base charge over a billing cycle.

Both day counts are inclusive of their boundary dates:

    prorated = round_half_up(base * used_days / total_days, 2)
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from .errors import InvalidCycleWindow, InvalidUsageWindow
from .money import ZERO, DateInput, MoneyInput, as_date, inclusive_days, round_money, to_money


def prorate(
    base: MoneyInput,
    cycle_start: DateInput,
    cycle_end: DateInput,
    usage_start: Optional[DateInput] = None,
    usage_end: Optional[DateInput] = None
) -> Decimal:
    """Scale ``base`` to the fraction of the cycle actually used.

    Args:
        base: Plan base amount (Decimal, int or numeric string)
        cycle_start: First day of the cycle
        cycle_end: Last day of the cycle
        usage_start: First day of usage, defaults to the cycle start
        usage_end: Last day of usage, defaults to the cycle end

    Returns:
        Prorated amount rounded half-up to cents. The usage window is
        clipped to the cycle; a window outside the cycle yields 0.00.

    Raises:
        InvalidCycleWindow: If the cycle ends before it starts
        InvalidUsageWindow: If the usage window ends before it starts
        TypeError: If ``base`` is a float
    """
    amount = to_money(base)
    start = as_date(cycle_start)
    end = as_date(cycle_end)
    total_days = inclusive_days(start, end)
    if total_days <= 0:
        raise InvalidCycleWindow(f"Cycle ends before it starts: {start} > {end}")

    used_from = as_date(usage_start) if usage_start is not None else start
    used_to = as_date(usage_end) if usage_end is not None else end
    if used_to < used_from:
        raise InvalidUsageWindow(f"Usage ends before it starts: {used_from} > {used_to}")

    used_days = _clipped_days(start, end, used_from, used_to)
    if used_days <= 0:
        return ZERO
    if used_days == total_days:
        return round_money(amount)
    return round_money(amount * Decimal(used_days) / Decimal(total_days))


def covers_cycle(
    cycle_start: DateInput,
    cycle_end: DateInput,
    usage_start: Optional[DateInput],
    usage_end: Optional[DateInput]
) -> bool:
    """True when the usage window spans every day of the cycle."""
    start, end = as_date(cycle_start), as_date(cycle_end)
    used_from = as_date(usage_start) if usage_start is not None else start
    used_to = as_date(usage_end) if usage_end is not None else end
    return used_from <= start and used_to >= end


def _clipped_days(start: date, end: date, used_from: date, used_to: date) -> int:
    return inclusive_days(max(start, used_from), min(end, used_to))
