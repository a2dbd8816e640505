"""
Rule Resolver - pick the single rule to apply per tax type.

Pure functions with no I/O.  Candidate rules are loaded by the caller
(``RuleSelector.candidates``) as immutable snapshots, so a rule edited while
a resolution is running cannot change its outcome.

Ranking within one tax type:
    1. specificity   - number of exactly matched scope fields, higher wins
    2. priority      - lower number wins
    3. valid_from    - most recent wins

A tie on all three raises RuleConflictError.  Tax types with no candidate
are simply absent from the resolution.

Usage:
    resolver = RuleResolver()
    resolved = resolver.resolve(
        snapshots,
        regime_id=regime_id,
        operation=Operation.VENDA,
        scope=RuleScope(origin_uf="SP"),
        on=date(2024, 1, 15),
    )
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Iterable
from uuid import UUID

from fiscal_engines.tracer import traced_engine
from fiscal_kernel.domain.rules import RuleScope, TaxRuleSnapshot, match_specificity
from fiscal_kernel.domain.values import Operation
from fiscal_kernel.exceptions import RuleConflictError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("engines.rule_resolver")


@dataclass(frozen=True)
class ResolvedRule:
    """The winning rule of one tax type and how specifically it matched."""

    rule: TaxRuleSnapshot
    specificity: int
    candidate_count: int


def rank_key(rule: TaxRuleSnapshot, specificity: int) -> tuple[int, int, int]:
    """Sort key: ascending order puts the winning rule first."""
    return (-specificity, rule.priority, -rule.valid_from.toordinal())


class RuleResolver:
    """
    Resolve applicable rules for a calculation request.

    Deterministic: the same candidates and request always produce the same
    resolution, independent of candidate order.
    """

    @traced_engine("rule_resolver", "1.0", fingerprint_fields=("regime_id", "operation", "scope", "on"))
    def resolve(
        self,
        rules: Iterable[TaxRuleSnapshot],
        *,
        regime_id: UUID,
        operation: Operation,
        scope: RuleScope,
        on: date,
    ) -> tuple[ResolvedRule, ...]:
        """
        Return one ResolvedRule per tax type, ordered by tax type code.

        Raises:
            RuleConflictError: two or more top-ranked rules of one tax type
                share specificity, priority and valid_from.
        """
        groups: dict[UUID, list[tuple[TaxRuleSnapshot, int]]] = defaultdict(list)
        considered = 0

        for rule in rules:
            considered += 1
            if not rule.is_active:
                continue
            if rule.regime_id != regime_id or rule.operation != operation:
                continue
            if not rule.is_valid_on(on):
                continue
            specificity = match_specificity(rule.scope, scope)
            if specificity is None:
                continue
            groups[rule.tax_type_id].append((rule, specificity))

        resolved: list[ResolvedRule] = []
        # Tax type code order, so the same conflict is reported whatever the input order
        ordered = sorted(groups.items(), key=lambda g: (g[1][0][0].tax_type_code, str(g[0])))
        for tax_type_id, candidates in ordered:
            candidates.sort(key=lambda c: (rank_key(c[0], c[1]), str(c[0].id)))
            best_rule, best_specificity = candidates[0]
            best_key = rank_key(best_rule, best_specificity)

            tied = [c[0] for c in candidates if rank_key(c[0], c[1]) == best_key]
            if len(tied) > 1:
                rule_ids = sorted(str(r.id) for r in tied)
                logger.warning(
                    "rule_conflict",
                    extra={
                        "tax_type_id": str(tax_type_id),
                        "tax_type_code": best_rule.tax_type_code,
                        "rule_ids": rule_ids,
                    },
                )
                raise RuleConflictError(str(tax_type_id), best_rule.tax_type_code, rule_ids)

            logger.debug(
                "rule_resolved",
                extra={
                    "tax_type_code": best_rule.tax_type_code,
                    "rule_id": str(best_rule.id),
                    "specificity": best_specificity,
                    "priority": best_rule.priority,
                    "candidate_count": len(candidates),
                },
            )
            resolved.append(
                ResolvedRule(
                    rule=best_rule,
                    specificity=best_specificity,
                    candidate_count=len(candidates),
                )
            )

        resolved.sort(key=lambda r: (r.rule.tax_type_code, str(r.rule.tax_type_id)))

        logger.info(
            "rules_resolved",
            extra={
                "regime_id": str(regime_id),
                "operation": operation.value,
                "rules_considered": considered,
                "tax_types_resolved": len(resolved),
            },
        )
        return tuple(resolved)
