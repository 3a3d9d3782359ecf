"""
Accrual due-date evaluation tests.

Pure functions: every date comes from the test.
"""

from datetime import date

import pytest

from ledger_kernel.domain.schedule import add_months, is_due, next_due_date, occurrence_suffix
from ledger_kernel.models.accrual import AccrualFrequency


class TestAddMonths:

    def test_simple(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_year_rollover(self):
        assert add_months(date(2024, 12, 10), 1) == date(2025, 1, 10)


class TestNextDueDate:

    @pytest.mark.parametrize(
        "frequency, expected",
        [
            (AccrualFrequency.DAILY, date(2024, 3, 11)),
            (AccrualFrequency.WEEKLY, date(2024, 3, 17)),
            (AccrualFrequency.MONTHLY, date(2024, 4, 10)),
        ],
    )
    def test_intervals(self, frequency, expected):
        assert next_due_date(frequency, date(2024, 3, 10)) == expected

    @pytest.mark.parametrize(
        "frequency", [AccrualFrequency.ON_DEMAND, AccrualFrequency.PERIOD_END]
    )
    def test_unscheduled_frequencies(self, frequency):
        assert next_due_date(frequency, date(2024, 3, 10)) is None


class TestIsDue:

    def test_never_run_without_start_date_is_due(self):
        assert is_due(AccrualFrequency.MONTHLY, None, None, date(2024, 1, 1))

    def test_never_run_waits_for_start_date(self):
        assert not is_due(AccrualFrequency.MONTHLY, None, date(2024, 2, 1), date(2024, 1, 31))
        assert is_due(AccrualFrequency.MONTHLY, None, date(2024, 2, 1), date(2024, 2, 1))

    def test_monthly_interval(self):
        last = date(2024, 1, 31)
        assert not is_due(AccrualFrequency.MONTHLY, last, None, date(2024, 2, 28))
        assert is_due(AccrualFrequency.MONTHLY, last, None, date(2024, 2, 29))

    def test_weekly_interval(self):
        last = date(2024, 1, 1)
        assert not is_due(AccrualFrequency.WEEKLY, last, None, date(2024, 1, 7))
        assert is_due(AccrualFrequency.WEEKLY, last, None, date(2024, 1, 8))

    def test_missed_intervals_are_one_occurrence(self):
        """Three months late is still just "due"."""
        assert is_due(AccrualFrequency.MONTHLY, date(2024, 1, 1), None, date(2024, 4, 1))

    @pytest.mark.parametrize(
        "frequency", [AccrualFrequency.ON_DEMAND, AccrualFrequency.PERIOD_END]
    )
    def test_unscheduled_never_due(self, frequency):
        assert not is_due(frequency, None, None, date(2024, 1, 1))


def test_occurrence_suffix_only_for_sub_period_frequencies():
    as_of = date(2024, 1, 15)
    assert occurrence_suffix(AccrualFrequency.DAILY, as_of) == "2024-01-15"
    assert occurrence_suffix(AccrualFrequency.WEEKLY, as_of) == "2024-01-15"
    assert occurrence_suffix(AccrualFrequency.MONTHLY, as_of) is None
