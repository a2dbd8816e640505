"""
fiscal_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the runtime configuration of the fiscal engine through
    ``get_active_settings()``.  Reads the YAML file named by the
    ``FISCAL_ENGINE_CONFIG`` environment variable, or the default shipped in
    ``fiscal_config/defaults/engine.yaml``.  ``DATABASE_URL`` overrides the
    configured database URL.

Architecture position:
    Configuration -- sits above ``fiscal_kernel`` and below
    ``fiscal_services``.  The kernel MUST NEVER import from
    ``fiscal_config``.

Audit relevance:
    Every ``get_active_settings()`` call emits a ``FISCAL_CONFIG_TRACE``
    log entry with the config path and checksum.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from fiscal_config.loader import load_settings, parse_settings
from fiscal_config.schema import (
    EngineSettings,
    ObligationKindDef,
    ReferenceCatalog,
    RegimeDef,
    TaxTypeDef,
)

_logger = logging.getLogger("fiscal_kernel.config")

CONFIG_ENV_VAR = "FISCAL_ENGINE_CONFIG"
DATABASE_URL_ENV_VAR = "DATABASE_URL"

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "engine.yaml"


def get_active_settings(path: Path | str | None = None) -> EngineSettings:
    """
    Load the active engine settings.

    Resolution order for the file: ``path`` argument, then
    ``$FISCAL_ENGINE_CONFIG``, then the packaged default.

    Raises:
        FileNotFoundError: the selected file does not exist.
        ValueError: the configuration is invalid.
    """
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    settings = load_settings(config_path)

    database_url = os.environ.get(DATABASE_URL_ENV_VAR)
    if database_url:
        settings = dataclasses.replace(settings, database_url=database_url)

    _logger.info(
        "FISCAL_CONFIG_TRACE",
        extra={
            "trace_type": "FISCAL_CONFIG_TRACE",
            "config_path": str(config_path),
            "checksum": settings.checksum,
            "database_url_overridden": bool(database_url),
            "regime_count": len(settings.catalog.regimes),
            "tax_type_count": len(settings.catalog.tax_types),
        },
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "DATABASE_URL_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "EngineSettings",
    "ObligationKindDef",
    "ReferenceCatalog",
    "RegimeDef",
    "TaxTypeDef",
    "get_active_settings",
    "load_settings",
    "parse_settings",
]
