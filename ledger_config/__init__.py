"""
ledger_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component reads settings files or
    environment variables directly.

Architecture position:
    Configuration.  Sits beside ``ledger_kernel`` and below
    ``ledger_services``.  The kernel MUST NEVER import from
    ``ledger_config``; services pass individual values into kernel
    constructors.

Resolution order (later wins):
    1. ``ledger_config/settings/default.yaml``
    2. the file named by ``path``, or by the ``LEDGER_SETTINGS`` variable
    3. ``LEDGER_DATABASE_URL`` for the database URL alone

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``ValueError`` / ``KeyError`` -- invalid settings.

Audit relevance:
    Every call emits a ``LEDGER_SETTINGS_TRACE`` log entry with the source
    files and the settings checksum.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ledger_config.loader import load_yaml_file, merge_settings, parse_settings
from ledger_config.schema import LedgerSettings

_logger = logging.getLogger("ledger_kernel.config")

DEFAULT_SETTINGS_FILE = Path(__file__).parent / "settings" / "default.yaml"

SETTINGS_ENV_VAR = "LEDGER_SETTINGS"
DATABASE_URL_ENV_VAR = "LEDGER_DATABASE_URL"


def get_active_settings(path: str | Path | None = None) -> LedgerSettings:
    """The ONLY public settings entrypoint.

    Args:
        path: Override file.  Defaults to ``$LEDGER_SETTINGS`` when set.

    Returns:
        A frozen ``LedgerSettings``.
    """
    sources = [DEFAULT_SETTINGS_FILE]
    layers = [load_yaml_file(DEFAULT_SETTINGS_FILE)]

    override = path or os.environ.get(SETTINGS_ENV_VAR)
    if override:
        override_path = Path(override)
        if not override_path.is_file():
            raise FileNotFoundError(f"Settings file not found: {override_path}")
        sources.append(override_path)
        layers.append(load_yaml_file(override_path))

    env_url = os.environ.get(DATABASE_URL_ENV_VAR)
    if env_url:
        layers.append({"database_url": env_url})

    settings = parse_settings(merge_settings(*layers))

    _logger.info(
        "LEDGER_SETTINGS_TRACE",
        extra={
            "trace_type": "LEDGER_SETTINGS_TRACE",
            "sources": [str(s) for s in sources],
            "database_url_from_env": bool(env_url),
            "checksum": settings.checksum,
        },
    )
    return settings


__all__ = ["LedgerSettings", "get_active_settings"]
