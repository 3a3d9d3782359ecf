"""
Deferral allocation (pure).

Contract:
    ``allocate(total_minor, period_count)`` splits a total across
    ``period_count`` consecutive periods with no rounding drift:
    the first ``period_count - 1`` periods receive
    ``floor(total_minor / period_count)`` and the last period absorbs the
    remainder.

Architecture: ledger_kernel/domain.  ZERO I/O.

Example:
    allocate(10000, 3) -> (3333, 3333, 3334)
"""

from ledger_kernel.exceptions import DeferralScheduleError


def allocate(total_minor: int, period_count: int, rule_code: str = "") -> tuple[int, ...]:
    """
    Partition total_minor into period_count integer allocations.

    Raises:
        DeferralScheduleError: period_count < 1 or total_minor < 0.
    """
    if period_count < 1:
        raise DeferralScheduleError(rule_code, "period_count must be at least 1")
    if total_minor < 0:
        raise DeferralScheduleError(rule_code, "total amount must not be negative")

    base = total_minor // period_count
    last = total_minor - base * (period_count - 1)
    allocations = (base,) * (period_count - 1) + (last,)

    if sum(allocations) != total_minor:
        raise DeferralScheduleError(
            rule_code,
            f"allocations sum to {sum(allocations)}, expected {total_minor}",
        )
    return allocations


def allocation_for_index(
    total_minor: int, period_count: int, index: int, rule_code: str = ""
) -> int:
    """
    Allocation for the period at ``index`` (0-based) within the schedule.

    Returns 0 for indexes outside the schedule.
    """
    if index < 0 or index >= period_count:
        return 0
    return allocate(total_minor, period_count, rule_code)[index]
