"""Utility functions for the ledger kernel."""

from ledger_kernel.utils.hashing import canonicalize_json, hash_payload, to_jsonable
from ledger_kernel.utils.idempotency import accrual_entry_key, parse_accrual_entry_key

__all__ = [
    "accrual_entry_key",
    "canonicalize_json",
    "hash_payload",
    "parse_accrual_entry_key",
    "to_jsonable",
]
