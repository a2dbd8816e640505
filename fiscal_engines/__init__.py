"""
Module: fiscal_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines: rule
    resolution and tax calculation.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fiscal_kernel.domain, fiscal_kernel.exceptions and
    fiscal_kernel.logging_config (and sibling engine modules).
    MUST NOT import fiscal_services or touch the database.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates and timestamps are passed in by the caller.
    - Decimal-only arithmetic; floats are rejected at the request boundary.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from fiscal_engines import RuleResolver, TaxCalculator
"""

from fiscal_engines.rule_resolver import ResolvedRule, RuleResolver, rank_key
from fiscal_engines.tax import TaxCalculator, reduced_base
from fiscal_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "ResolvedRule",
    "RuleResolver",
    "TaxCalculator",
    "compute_input_fingerprint",
    "rank_key",
    "reduced_base",
    "traced_engine",
]
