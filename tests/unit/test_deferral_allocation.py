"""
Deferral allocation tests.

The allocation must partition the total exactly: no cent is created or
lost to rounding, for any total and any period count.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from ledger_kernel.domain.deferral import allocate, allocation_for_index
from ledger_kernel.exceptions import DeferralScheduleError


class TestAllocate:

    def test_non_divisible_total_puts_remainder_last(self):
        """100.00 over 3 periods -> 33.33, 33.33, 33.34."""
        assert allocate(10000, 3) == (3333, 3333, 3334)

    def test_divisible_total(self):
        assert allocate(1200, 12) == (100,) * 12

    def test_single_period_gets_everything(self):
        assert allocate(999, 1) == (999,)

    def test_total_smaller_than_count(self):
        assert allocate(2, 3) == (0, 0, 2)

    def test_zero_periods_rejected(self):
        with pytest.raises(DeferralScheduleError) as exc_info:
            allocate(100, 0, "PREPAID-RENT")
        assert exc_info.value.rule_code == "PREPAID-RENT"

    def test_negative_total_rejected(self):
        with pytest.raises(DeferralScheduleError):
            allocate(-1, 2)

    def test_index_outside_schedule_is_zero(self):
        assert allocation_for_index(10000, 3, 3) == 0
        assert allocation_for_index(10000, 3, -1) == 0
        assert allocation_for_index(10000, 3, 2) == 3334


class TestAllocationProperties:

    @given(
        total=st.integers(min_value=0, max_value=10**12),
        count=st.integers(min_value=1, max_value=120),
    )
    def test_allocations_sum_to_total(self, total, count):
        allocations = allocate(total, count)
        assert len(allocations) == count
        assert sum(allocations) == total

    @given(
        total=st.integers(min_value=0, max_value=10**12),
        count=st.integers(min_value=1, max_value=120),
    )
    def test_only_last_period_differs(self, total, count):
        allocations = allocate(total, count)
        assert len(set(allocations[:-1])) <= 1
        assert 0 <= allocations[-1] - allocations[0] < count
