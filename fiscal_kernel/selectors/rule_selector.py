"""
Module: fiscal_kernel.selectors.rule_selector
Responsibility: Read access to tax rules -- filtered listing for management
    screens and the candidate snapshots handed to the rule resolver.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Candidates are returned as frozen TaxRuleSnapshot objects, built when
      the query runs.  A rule edited afterwards does not change a resolution
      already in progress.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import or_, select

from fiscal_kernel.domain.dtos import RuleFilter, TaxRuleInfo
from fiscal_kernel.domain.rules import RuleScope, TaxRuleSnapshot, build_recipe
from fiscal_kernel.domain.values import Operation
from fiscal_kernel.models.catalog import TaxType
from fiscal_kernel.models.tax_rule import TaxRule
from fiscal_kernel.selectors.base import BaseSelector


def snapshot_of(rule: TaxRule, tax_type: TaxType) -> TaxRuleSnapshot:
    return TaxRuleSnapshot(
        id=rule.id,
        regime_id=rule.regime_id,
        tax_type_id=rule.tax_type_id,
        tax_type_code=tax_type.code,
        tax_type_name=tax_type.name,
        operation=Operation(rule.operation),
        scope=RuleScope(
            origin_uf=rule.origin_uf,
            destination_uf=rule.destination_uf,
            classification_id=rule.classification_id,
        ),
        recipe=build_recipe(
            rule.calc_method,
            rate=rule.rate,
            base_reduction=rule.base_reduction,
            fixed_amount=rule.fixed_amount,
            formula=rule.formula,
        ),
        priority=rule.priority,
        valid_from=rule.valid_from,
        valid_to=rule.valid_to,
        is_active=rule.is_active,
    )


class RuleSelector(BaseSelector[TaxRule]):
    """Queries over tax rules of one organization."""

    def list(self, org_id: UUID, filters: RuleFilter | None = None) -> list[TaxRuleInfo]:
        """
        Rules of an organization, ordered by tax type, priority and
        valid_from (newest first).
        """
        filters = filters or RuleFilter()
        stmt = select(TaxRule).where(TaxRule.org_id == org_id)
        if filters.regime_id is not None:
            stmt = stmt.where(TaxRule.regime_id == filters.regime_id)
        if filters.tax_type_id is not None:
            stmt = stmt.where(TaxRule.tax_type_id == filters.tax_type_id)
        if filters.operation is not None:
            stmt = stmt.where(TaxRule.operation == Operation(filters.operation).value)
        if filters.is_active is not None:
            stmt = stmt.where(TaxRule.is_active.is_(filters.is_active))
        if filters.valid_on is not None:
            stmt = stmt.where(
                TaxRule.valid_from <= filters.valid_on,
                or_(TaxRule.valid_to.is_(None), TaxRule.valid_to >= filters.valid_on),
            )
        stmt = stmt.order_by(
            TaxRule.tax_type_id, TaxRule.priority, TaxRule.valid_from.desc(), TaxRule.id
        )
        return [TaxRuleInfo.from_model(r) for r in self.session.execute(stmt).scalars()]

    def candidates(
        self, org_id: UUID, regime_id: UUID, operation: Operation
    ) -> list[TaxRuleSnapshot]:
        """Active rules of the org for a regime and operation, as snapshots."""
        rows = self.session.execute(
            select(TaxRule, TaxType)
            .join(TaxType, TaxType.id == TaxRule.tax_type_id)
            .where(
                TaxRule.org_id == org_id,
                TaxRule.regime_id == regime_id,
                TaxRule.operation == Operation(operation).value,
                TaxRule.is_active.is_(True),
            )
            .order_by(TaxRule.id)
        ).all()
        return [snapshot_of(rule, tax_type) for rule, tax_type in rows]
