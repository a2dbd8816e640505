"""
Configuration Loader (``fiscal_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``fiscal_config.schema`` dataclasses.  Runtime callers use
``fiscal_config.get_active_settings()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required catalog keys.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from fiscal_config.schema import (
    EngineSettings,
    ObligationKindDef,
    ReferenceCatalog,
    RegimeDef,
    TaxTypeDef,
)

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_catalog(data: dict[str, Any]) -> ReferenceCatalog:
    """Parse the ``catalog`` section."""
    return ReferenceCatalog(
        regimes=tuple(
            RegimeDef(
                code=r["code"],
                name=r["name"],
                description=r.get("description"),
            )
            for r in data.get("regimes", [])
        ),
        tax_types=tuple(
            TaxTypeDef(
                code=t["code"],
                name=t["name"],
                jurisdiction=t["jurisdiction"],
                description=t.get("description"),
            )
            for t in data.get("tax_types", [])
        ),
        obligation_kinds=tuple(
            ObligationKindDef(
                code=k["code"],
                name=k["name"],
                periodicity=k["periodicity"],
                description=k.get("description"),
            )
            for k in data.get("obligation_kinds", [])
        ),
    )


def _positive_int(value: Any, name: str) -> int:
    result = int(value)
    if result < 1:
        raise ValueError(f"{name} must be >= 1, got {value!r}")
    return result


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse ``EngineSettings`` from a configuration dict.

    Every key is optional; missing keys take the schema default.
    """
    defaults = EngineSettings()
    engine = data.get("engine", {}) or {}
    audit = data.get("audit", {}) or {}

    log_level = str(engine.get("log_level", defaults.log_level)).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"Unknown log_level {log_level!r}")

    lock_timeout = float(engine.get("lock_timeout_seconds", defaults.lock_timeout_seconds))
    if lock_timeout <= 0:
        raise ValueError(f"lock_timeout_seconds must be > 0, got {lock_timeout!r}")

    page_size = _positive_int(audit.get("page_size", defaults.audit_page_size), "audit.page_size")
    max_page_size = _positive_int(
        audit.get("max_page_size", defaults.audit_max_page_size), "audit.max_page_size"
    )
    if page_size > max_page_size:
        raise ValueError(
            f"audit.page_size ({page_size}) exceeds audit.max_page_size ({max_page_size})"
        )

    return EngineSettings(
        database_url=str(engine.get("database_url", defaults.database_url)),
        echo=bool(engine.get("echo", defaults.echo)),
        pool_size=_positive_int(engine.get("pool_size", defaults.pool_size), "pool_size"),
        max_overflow=int(engine.get("max_overflow", defaults.max_overflow)),
        lock_timeout_seconds=lock_timeout,
        log_level=log_level,
        audit_page_size=page_size,
        audit_max_page_size=max_page_size,
        catalog=parse_catalog(data.get("catalog", {}) or {}),
        checksum=compute_checksum(data),
    )


def load_settings(path: Path | str) -> EngineSettings:
    """Load and parse a configuration file."""
    return parse_settings(load_yaml_file(Path(path)))
