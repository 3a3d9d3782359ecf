"""
Pure accrual schedule evaluation.

Contract:
    ``is_due(frequency, last_run, start_date, as_of)`` and
    ``next_due_date(frequency, last_run)`` are PURE: no I/O, all dates come
    from the caller.

Rules:
    - ON_DEMAND and PERIOD_END never become due in a due run.
    - A rule that has never run is due once ``as_of`` reaches its start date
      (or immediately when it has none).
    - Otherwise it is due when ``last_run + interval <= as_of``.
      DAILY = 1 day, WEEKLY = 7 days, MONTHLY = one calendar month, clamped
      to the last day of a shorter month (Jan 31 -> Feb 28).
    - One occurrence per invocation.  Missed intervals are not caught up.
"""

import calendar
from datetime import date, timedelta

from ledger_kernel.models.accrual import AccrualFrequency

SCHEDULED_FREQUENCIES = frozenset(
    {AccrualFrequency.DAILY, AccrualFrequency.WEEKLY, AccrualFrequency.MONTHLY}
)


def add_months(d: date, months: int) -> date:
    """Calendar-month addition with end-of-month clamping."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(frequency: AccrualFrequency, last_run: date | None) -> date | None:
    """Next due date after last_run, or None for unscheduled frequencies."""
    if frequency not in SCHEDULED_FREQUENCIES or last_run is None:
        return None
    if frequency == AccrualFrequency.DAILY:
        return last_run + timedelta(days=1)
    if frequency == AccrualFrequency.WEEKLY:
        return last_run + timedelta(weeks=1)
    return add_months(last_run, 1)


def is_due(
    frequency: AccrualFrequency,
    last_run: date | None,
    start_date: date | None,
    as_of: date,
) -> bool:
    """Determine whether a rule is due on ``as_of``."""
    if frequency not in SCHEDULED_FREQUENCIES:
        return False
    if last_run is None:
        return start_date is None or start_date <= as_of
    due = next_due_date(frequency, last_run)
    return due is not None and due <= as_of


def occurrence_suffix(frequency: AccrualFrequency, as_of: date) -> str | None:
    """
    Extra idempotency-key component for sub-period frequencies.

    DAILY and WEEKLY rules fire several times within one period, so their
    key carries the occurrence date.  MONTHLY rules are keyed per period.
    """
    if frequency in (AccrualFrequency.DAILY, AccrualFrequency.WEEKLY):
        return as_of.isoformat()
    return None
