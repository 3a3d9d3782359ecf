"""Tests for the deterministic clock the services are wired with."""

from datetime import date, datetime, timezone

from ledger_kernel.domain.clock import DeterministicClock, SystemClock


def test_system_clock_is_utc():
    assert SystemClock().now().tzinfo is not None


def test_deterministic_clock_stands_still():
    clock = DeterministicClock()
    assert clock.now() == clock.now() == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert clock.today() == date(2024, 1, 1)


def test_advance_moves_business_date():
    clock = DeterministicClock()
    clock.advance(seconds=30)
    assert clock.today() == date(2024, 1, 1)
    assert clock.advance(days=31).date() == date(2024, 2, 1)


def test_set_today():
    clock = DeterministicClock()
    clock.set_today(date(2024, 2, 29))
    assert clock.today() == date(2024, 2, 29)
    assert clock.now().hour == 12


def test_current_period_follows_clock(periods, period_service, deterministic_clock):
    deterministic_clock.set_today(date(2024, 3, 15))
    assert period_service.get_current_period().id == periods["mar"].id
