"""
Idempotency key generation for accrual occurrences.

Format: accrual:<kind>:<rule_id>:<period_id>[:<qualifier>]

The qualifier distinguishes several occurrences of one rule inside one
period: the occurrence date for daily/weekly rules, or the originating
entry id for reversal mirrors.
"""

from uuid import UUID

_PREFIX = "accrual"


def accrual_entry_key(
    kind: str,
    rule_id: UUID | str,
    period_id: UUID | str,
    qualifier: str | None = None,
) -> str:
    """
    Build the idempotency key for one accrual occurrence.

    Example:
        >>> accrual_entry_key("due", rule_id, period_id, "2024-01-15")
        "accrual:due:<rule_id>:<period_id>:2024-01-15"
    """
    key = f"{_PREFIX}:{kind}:{rule_id}:{period_id}"
    if qualifier:
        key = f"{key}:{qualifier}"
    return key


def parse_accrual_entry_key(key: str) -> tuple[str, str, str, str | None]:
    """
    Parse a key into (kind, rule_id, period_id, qualifier).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 4)
    if len(parts) < 4 or parts[0] != _PREFIX:
        raise ValueError(f"Invalid accrual idempotency key: {key}")
    qualifier = parts[4] if len(parts) == 5 else None
    return parts[1], parts[2], parts[3], qualifier
