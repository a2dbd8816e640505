"""
Engine configuration schema.

Frozen dataclasses that YAML configuration files are parsed into by
``fiscal_config.loader``.  Two parts:

  EngineSettings    = runtime knobs (database, locking, logging, audit paging)
  ReferenceCatalog  = reference data seeded into the fiscal catalog
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Reference catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegimeDef:
    code: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class TaxTypeDef:
    code: str
    name: str
    jurisdiction: str  # federal, estadual, municipal
    description: str | None = None


@dataclass(frozen=True)
class ObligationKindDef:
    code: str
    name: str
    periodicity: str  # mensal, trimestral, anual
    description: str | None = None


@dataclass(frozen=True)
class ReferenceCatalog:
    """Catalog entries created by ``FiscalEngine.seed_reference_data``."""

    regimes: tuple[RegimeDef, ...] = ()
    tax_types: tuple[TaxTypeDef, ...] = ()
    obligation_kinds: tuple[ObligationKindDef, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.regimes or self.tax_types or self.obligation_kinds)


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings of a FiscalEngine."""

    database_url: str = "sqlite:///fiscal.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    lock_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    audit_page_size: int = 50
    audit_max_page_size: int = 500
    catalog: ReferenceCatalog = field(default_factory=ReferenceCatalog)
    checksum: str = ""

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")
