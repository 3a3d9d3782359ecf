"""
Clock -- injectable time source.

Services stamp workflow timestamps (submitted_at, posted_at, closed_at)
and pick default dates (current period, accrual as-of) from a Clock, never
from ``datetime.now()`` or ``date.today()``.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """The UTC calendar date of ``now()``; the ledger's business date."""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock for tests: time stands still until moved explicitly.

    Defaults to noon UTC on 2024-01-01, the first day of the fixture
    calendar.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, *, days: int = 0, seconds: int = 0) -> datetime:
        """Move forward and return the new time."""
        self._now += timedelta(days=days, seconds=seconds)
        return self._now

    def set_today(self, business_date: date) -> None:
        """Jump to noon UTC on ``business_date``."""
        self._now = datetime.combine(business_date, time(12, 0), tzinfo=timezone.utc)
