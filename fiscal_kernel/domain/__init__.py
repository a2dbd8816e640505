"""
Pure domain layer.

This module contains value objects, DTOs, rule matching and the formula
evaluator, with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from fiscal_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from fiscal_kernel.domain.formula import evaluate_formula, validate_formula
from fiscal_kernel.domain.rules import (
    CalcRecipe,
    Exempt,
    FixedAmount,
    Formula,
    NonIncidence,
    Percentual,
    RuleScope,
    TaxRuleSnapshot,
    build_recipe,
    match_specificity,
)
from fiscal_kernel.domain.values import (
    AuditActor,
    AuditOperation,
    CalcMethod,
    LedgerStatus,
    ObligationStatus,
    Operation,
    Periodicity,
    TaxPeriod,
    quantize_money,
)

__all__ = [
    "AuditActor",
    "AuditOperation",
    "CalcMethod",
    "CalcRecipe",
    "Clock",
    "DeterministicClock",
    "Exempt",
    "FixedAmount",
    "Formula",
    "LedgerStatus",
    "NonIncidence",
    "ObligationStatus",
    "Operation",
    "Percentual",
    "Periodicity",
    "RuleScope",
    "SystemClock",
    "TaxPeriod",
    "TaxRuleSnapshot",
    "build_recipe",
    "evaluate_formula",
    "match_specificity",
    "quantize_money",
    "validate_formula",
]
