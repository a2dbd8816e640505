"""
Tax Engine - Apply resolved rules to a calculation request.

Pure functions with no I/O - rules are provided as parameters.

Calc methods:
    percentual      base = amount * (1 - base_reduction/100)
                    tax  = base * rate/100
    valor_fixo      tax  = the rule's fixed amount
    isento          tax  = 0 (line kept)
    nao_incidencia  tax  = 0 (line kept)
    formula mode    tax  = formula over {amount, base_reduction, rate}

Bases keep full precision; each line amount is rounded once, half-up, to
2 places.  ``total_tax`` is the sum of the rounded line amounts.

Usage:
    from fiscal_engines.tax import TaxCalculator

    calculator = TaxCalculator()
    result = calculator.calculate(
        request,
        regime_id=regime_id,
        effective_date=date(2024, 1, 15),
        resolved=resolved_rules,
        calculated_at=clock.now(),
    )
    print(result.total_tax)
"""

from __future__ import annotations

import time
from datetime import date, datetime
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from fiscal_engines.rule_resolver import ResolvedRule
from fiscal_engines.tracer import traced_engine
from fiscal_kernel.domain.dtos import TaxCalculationRequest, TaxCalculationResult, TaxLine
from fiscal_kernel.domain.formula import evaluate_formula
from fiscal_kernel.domain.rules import (
    Exempt,
    FixedAmount,
    Formula,
    NonIncidence,
    Percentual,
    TaxRuleSnapshot,
)
from fiscal_kernel.domain.values import HUNDRED, quantize_money
from fiscal_kernel.exceptions import FormulaEvaluationError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("engines.tax")

ZERO = Decimal("0")
ZERO_MONEY = Decimal("0.00")


def reduced_base(amount: Decimal, base_reduction: Decimal | None) -> Decimal:
    """amount * (1 - base_reduction/100), unrounded."""
    if not base_reduction:
        return amount
    return amount * (1 - base_reduction / HUNDRED)


class TaxCalculator:
    """
    Calculate tax lines for a request.

    Pure functions - no I/O, no database access.
    """

    def calculate_line(self, amount: Decimal, rule: TaxRuleSnapshot) -> TaxLine:
        """
        Compute the tax line one rule produces for an amount.

        Raises:
            FormulaEvaluationError: formula mode and the formula fails; the
                error names the tax type and the rule.
        """
        recipe = rule.recipe
        formula_text: str | None = None

        if isinstance(recipe, Percentual):
            base = reduced_base(amount, recipe.base_reduction)
            tax = quantize_money(base * recipe.rate / HUNDRED)
            rate, reduction = recipe.rate, recipe.base_reduction

        elif isinstance(recipe, FixedAmount):
            base = amount
            tax = quantize_money(recipe.amount)
            rate, reduction = None, None

        elif isinstance(recipe, (Exempt, NonIncidence)):
            base = amount
            tax = ZERO_MONEY
            rate, reduction = None, None

        elif isinstance(recipe, Formula):
            reduction = recipe.base_reduction
            rate = recipe.rate
            base = reduced_base(amount, reduction)
            formula_text = recipe.expression
            try:
                value = evaluate_formula(
                    recipe.expression,
                    {
                        "amount": amount,
                        "base_reduction": reduction if reduction is not None else ZERO,
                        "rate": rate if rate is not None else ZERO,
                    },
                )
            except FormulaEvaluationError as exc:
                logger.error(
                    "formula_evaluation_failed",
                    extra={
                        "tax_type_code": rule.tax_type_code,
                        "rule_id": str(rule.id),
                        "formula": recipe.expression,
                        "reason": exc.reason,
                    },
                )
                raise exc.with_context(rule.tax_type_code, str(rule.id)) from exc
            tax = quantize_money(value)

        else:  # pragma: no cover
            raise TypeError(f"unknown calc recipe {type(recipe).__name__}")

        return TaxLine(
            tax_type_id=rule.tax_type_id,
            tax_type_code=rule.tax_type_code,
            tax_type=rule.tax_type_name,
            rule_id=rule.id,
            calc_method=rule.calc_method,
            base=base,
            rate=rate,
            base_reduction=reduction,
            amount=tax,
            formula=formula_text,
        )

    @traced_engine("tax", "1.0", fingerprint_fields=("regime_id", "effective_date", "resolved"))
    def calculate(
        self,
        request: TaxCalculationRequest,
        *,
        regime_id: UUID,
        effective_date: date,
        resolved: Sequence[ResolvedRule],
        calculated_at: datetime,
    ) -> TaxCalculationResult:
        """
        Calculate every resolved tax line and aggregate the result.

        Any line failure aborts the whole calculation; no partial result is
        returned.
        """
        t0 = time.monotonic()
        logger.info("tax_calculation_started", extra={
            "operation": request.operation.value,
            "amount": str(request.amount),
            "rule_count": len(resolved),
            "effective_date": effective_date.isoformat(),
        })

        lines = tuple(self.calculate_line(request.amount, r.rule) for r in resolved)
        total_tax = sum((line.amount for line in lines), ZERO_MONEY)

        result = TaxCalculationResult(
            org_id=request.org_id,
            regime_id=regime_id,
            operation=request.operation,
            effective_date=effective_date,
            total_amount=request.amount,
            total_tax=total_tax,
            net_amount=request.amount - total_tax,
            taxes=lines,
            calculated_at=calculated_at,
            classification_id=request.classification_id,
            origin_uf=request.origin_uf,
            destination_uf=request.destination_uf,
            notes=request.notes,
        )

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info("tax_calculation_completed", extra={
            "total_amount": str(result.total_amount),
            "total_tax": str(result.total_tax),
            "net_amount": str(result.net_amount),
            "tax_line_count": len(lines),
            "duration_ms": duration_ms,
        })
        return result
