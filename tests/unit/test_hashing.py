"""
Request hashing tests.

Idempotency-key replays compare request hashes, so the same logical
request must always hash the same way.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.models.journal import LineSide
from ledger_kernel.utils.hashing import canonicalize_json, hash_payload, to_jsonable
from ledger_kernel.utils.idempotency import accrual_entry_key, parse_accrual_entry_key


class TestHashPayload:

    def test_key_order_is_irrelevant(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_decimal_scale_is_irrelevant(self):
        assert hash_payload({"amount": Decimal("10.50")}) == hash_payload({"amount": Decimal("10.5")})

    def test_different_values_differ(self):
        assert hash_payload({"amount": Decimal("10.50")}) != hash_payload({"amount": Decimal("10.51")})

    def test_sha256_hex(self):
        assert len(hash_payload({})) == 64

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})


class TestToJsonable:

    def test_converts_domain_values(self):
        entity_id = uuid4()
        data = to_jsonable({
            "id": entity_id,
            "amount": Decimal("10.50"),
            "side": LineSide.DEBIT,
            "on": date(2024, 1, 31),
            "codes": ("a", "b"),
        })
        assert data == {
            "id": str(entity_id),
            "amount": "10.50",
            "side": "debit",
            "on": "2024-01-31",
            "codes": ["a", "b"],
        }


class TestAccrualEntryKey:

    def test_without_qualifier(self):
        rule_id, period_id = uuid4(), uuid4()
        key = accrual_entry_key("period_end", rule_id, period_id)
        assert parse_accrual_entry_key(key) == ("period_end", str(rule_id), str(period_id), None)

    def test_with_date_qualifier(self):
        rule_id, period_id = uuid4(), uuid4()
        key = accrual_entry_key("due", rule_id, period_id, "2024-01-15")
        assert key.endswith(":2024-01-15")
        assert parse_accrual_entry_key(key)[3] == "2024-01-15"

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            parse_accrual_entry_key("not-a-key")
