"""
LedgerSettings schema.

The parsed, frozen runtime settings.  YAML files are parsed into this type
by the loader; nothing else in the system sees raw YAML.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class LedgerSettings:
    """Runtime settings for the ledger core."""

    database_url: str
    echo_sql: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    log_level: str = "INFO"

    # Accrual scheduler worker pool
    accrual_max_workers: int = 4

    # Upper bound an operator may pass as an auto-correct threshold
    auto_correct_max_threshold: Decimal = Decimal("1.00")

    # Account codes looked up when the caller does not name one
    suspense_account_code: str | None = None
    retained_earnings_account_code: str | None = None

    reject_reason_max_length: int = 300

    checksum: str = ""
