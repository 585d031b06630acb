"""Billing cadence arithmetic.

Month and year steps clamp to the last day of the target month, so
Jan 31 + 1 month is Feb 28 (or 29). When an ``anchor_day`` is given the
day of month snaps back to it whenever the target month is long enough,
which keeps a Jan 31 profile on the last day of every month instead of
drifting to the 28th.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import TypeVar

from billing_engine.models.base import utcnow
from billing_engine.models.enums import BillingPeriod

D = TypeVar("D", date, datetime)


def add_months(value: D, months: int, anchor_day: int | None = None) -> D:
    """Shift by whole months, clamping to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(anchor_day or value.day, last_day)
    return value.replace(year=year, month=month, day=day)


def add_period(
    value: D,
    period: BillingPeriod | str,
    frequency: int = 1,
    *,
    anchor_day: int | None = None,
) -> D:
    """Advance ``value`` by ``frequency`` units of ``period``."""
    if frequency < 1:
        raise ValueError("frequency must be a positive integer")

    period = BillingPeriod(period)
    if period is BillingPeriod.DAY:
        return value + timedelta(days=frequency)
    if period is BillingPeriod.WEEK:
        return value + timedelta(weeks=frequency)
    if period is BillingPeriod.MONTH:
        return add_months(value, frequency, anchor_day)
    return add_months(value, 12 * frequency, anchor_day)


def next_billing_date(
    period: BillingPeriod | str,
    frequency: int = 1,
    from_date: D | None = None,
    *,
    anchor_day: int | None = None,
) -> D:
    """Next billing date one cycle after ``from_date`` (default: now)."""
    start = from_date if from_date is not None else utcnow()
    return add_period(start, period, frequency, anchor_day=anchor_day)


def end_date_for_cycles(
    period: BillingPeriod | str,
    frequency: int,
    cycles: int,
    start: D,
) -> D:
    """Date at which a profile that bills ``cycles`` times stops."""
    if cycles < 1:
        raise ValueError("cycles must be a positive integer")
    if frequency < 1:
        raise ValueError("frequency must be a positive integer")

    period = BillingPeriod(period)
    if period in (BillingPeriod.MONTH, BillingPeriod.YEAR):
        months = cycles * frequency * (12 if period is BillingPeriod.YEAR else 1)
        return add_months(start, months)
    return add_period(start, period, frequency * cycles)
