"""
Unit tests for minor-unit money arithmetic.

Verifies:
- Exact conversion between Decimal amounts and integer minor units
- Sub-minor-unit precision is rejected, never rounded
- Float constructor prohibition
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from ledger_kernel.domain.amounts import format_minor, from_minor, to_decimal, to_minor
from ledger_kernel.exceptions import InvalidAmountError


class TestToMinor:

    def test_two_places(self):
        assert to_minor(Decimal("100.50")) == 10050

    def test_string_input(self):
        assert to_minor("0.01") == 1

    def test_integer_input(self):
        assert to_minor(7) == 700

    def test_trailing_zeros_are_not_precision(self):
        assert to_minor(Decimal("1.2300")) == 123

    def test_sub_minor_unit_rejected(self):
        with pytest.raises(InvalidAmountError) as exc_info:
            to_minor(Decimal("0.001"))
        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_negative_rejected_by_default(self):
        with pytest.raises(InvalidAmountError):
            to_minor("-1.00")

    def test_negative_allowed_when_asked(self):
        assert to_minor("-1.25", allow_negative=True) == -125

    def test_float_rejected(self):
        """Binary floats never reach the ledger."""
        with pytest.raises(InvalidAmountError):
            to_minor(0.1)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_non_numbers_rejected(self, value):
        with pytest.raises(InvalidAmountError):
            to_decimal(value)


class TestFromMinor:

    def test_always_two_places(self):
        assert str(from_minor(500)) == "5.00"

    def test_format(self):
        assert format_minor(3334) == "33.34"


class TestRoundTripProperty:

    @given(st.integers(min_value=0, max_value=10**15))
    def test_minor_units_survive_conversion(self, minor):
        assert to_minor(from_minor(minor)) == minor
