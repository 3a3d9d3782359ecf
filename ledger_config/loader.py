"""
Settings loader (``ledger_config.loader``).

Responsibility
--------------
Reads YAML settings files and parses them into a frozen
``LedgerSettings``.  Runtime callers use ``ledger_config.get_active_settings``
instead of calling this module directly.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError``; required keys have no
  silent defaults.
* Unknown keys are rejected so a typo never falls back to a default.
* Amount settings are parsed from their string form as ``Decimal``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``database_url``  -> ``KeyError``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import LedgerSettings

_FIELDS = {f.name: f for f in dataclasses.fields(LedgerSettings) if f.name != "checksum"}

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its top-level mapping.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings must be a mapping, got {type(data).__name__}")
    return data


def merge_settings(*layers: dict[str, Any]) -> dict[str, Any]:
    """Later layers override earlier ones key by key.  None values are skipped."""
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update({k: v for k, v in layer.items() if v is not None})
    return merged


def parse_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, float):
        # YAML reads 0.01 as float; go through its repr to keep the literal.
        value = repr(value)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field}: {value!r} is not a decimal") from None


def parse_settings(data: dict[str, Any]) -> LedgerSettings:
    """
    Parse a settings mapping.

    Raises:
        KeyError: database_url missing.
        ValueError: unknown key or invalid value.
    """
    unknown = sorted(set(data) - set(_FIELDS))
    if unknown:
        raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")

    values = dict(data)
    values["database_url"] = str(data["database_url"])

    if "auto_correct_max_threshold" in values:
        threshold = parse_decimal(values["auto_correct_max_threshold"], "auto_correct_max_threshold")
        if threshold < 0:
            raise ValueError("auto_correct_max_threshold must not be negative")
        values["auto_correct_max_threshold"] = threshold

    for name in ("pool_size", "max_overflow", "accrual_max_workers", "reject_reason_max_length"):
        if name in values:
            if not isinstance(values[name], int) or isinstance(values[name], bool):
                raise ValueError(f"{name} must be an integer, got {values[name]!r}")
    if values.get("accrual_max_workers", 1) < 1:
        raise ValueError("accrual_max_workers must be at least 1")
    if not 1 <= values.get("reject_reason_max_length", 300) <= 300:
        raise ValueError("reject_reason_max_length must be between 1 and 300")

    if "log_level" in values:
        level = str(values["log_level"]).upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        values["log_level"] = level

    if "echo_sql" in values and not isinstance(values["echo_sql"], bool):
        raise ValueError("echo_sql must be a boolean")

    return LedgerSettings(**values, checksum=compute_checksum(values))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of the parsed settings."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
