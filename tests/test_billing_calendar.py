"""Tests for billing cadence arithmetic."""

import calendar
from datetime import date, datetime

import pytest
from hypothesis import given, strategies as st

from billing_engine.models import BillingPeriod, utcnow
from billing_engine.services.billing_calendar import (
    add_months,
    add_period,
    end_date_for_cycles,
    next_billing_date,
)


class TestAddPeriod:
    def test_monthly(self):
        assert add_period(datetime(2025, 1, 1), "month") == datetime(2025, 2, 1)

    def test_month_end_clamps(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_anchor_day_restores_month_end(self):
        feb = add_months(date(2025, 1, 31), 1)
        assert add_months(feb, 1, anchor_day=31) == date(2025, 3, 31)
        assert add_months(feb, 1) == date(2025, 3, 28)

    def test_year_from_leap_day(self):
        assert add_period(date(2024, 2, 29), BillingPeriod.YEAR) == date(2025, 2, 28)

    def test_days_and_weeks(self):
        assert add_period(date(2025, 1, 30), "day", 3) == date(2025, 2, 2)
        assert add_period(date(2025, 1, 1), "week", 2) == date(2025, 1, 15)

    def test_time_of_day_is_kept(self):
        assert add_period(datetime(2025, 1, 31, 9, 30), "month") == datetime(2025, 2, 28, 9, 30)

    def test_rejects_non_positive_frequency(self):
        with pytest.raises(ValueError):
            add_period(date(2025, 1, 1), "month", 0)

    def test_rejects_unknown_period(self):
        with pytest.raises(ValueError):
            add_period(date(2025, 1, 1), "fortnight")


class TestNextBillingDate:
    def test_from_date(self):
        assert next_billing_date("month", 3, date(2025, 1, 15)) == date(2025, 4, 15)

    def test_defaults_to_now(self):
        before = utcnow()
        assert next_billing_date("day") > before


class TestEndDateForCycles:
    def test_monthly_cycles(self):
        assert end_date_for_cycles("month", 1, 12, date(2025, 1, 31)) == date(2026, 1, 31)

    def test_weekly_cycles(self):
        assert end_date_for_cycles("week", 2, 3, date(2025, 1, 1)) == date(2025, 2, 12)

    def test_rejects_zero_cycles(self):
        with pytest.raises(ValueError):
            end_date_for_cycles("month", 1, 0, date(2025, 1, 1))


@given(
    start=st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31)),
    months=st.integers(min_value=1, max_value=120),
)
def test_add_months_lands_in_target_month(start, months):
    result = add_months(start, months)

    assert (result.year * 12 + result.month) - (start.year * 12 + start.month) == months
    assert result.day == min(start.day, calendar.monthrange(result.year, result.month)[1])


@given(
    start=st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31)),
    period=st.sampled_from(list(BillingPeriod)),
    frequency=st.integers(min_value=1, max_value=6),
)
def test_add_period_always_moves_forward(start, period, frequency):
    assert add_period(start, period, frequency) > start
