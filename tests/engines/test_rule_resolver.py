"""
Tests for the RuleResolver.

Covers:
- Ranking: specificity, then priority, then most recent valid_from
- Filtering by regime, operation, activity and validity window
- Conflict detection on a full tie
- Determinism independent of candidate order
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fiscal_engines.rule_resolver import RuleResolver
from fiscal_kernel.domain.rules import Percentual, RuleScope, TaxRuleSnapshot
from fiscal_kernel.domain.values import Operation
from fiscal_kernel.exceptions import RuleConflictError

REGIME = uuid4()
ICMS = uuid4()
PIS = uuid4()
ON = date(2024, 1, 15)


def snapshot(tax_type_id=ICMS, code="ICMS", scope=RuleScope(), priority=0,
             valid_from=date(2023, 1, 1), valid_to=None, operation=Operation.VENDA,
             regime_id=REGIME, is_active=True, rate="18"):
    return TaxRuleSnapshot(
        id=uuid4(),
        regime_id=regime_id,
        tax_type_id=tax_type_id,
        tax_type_code=code,
        tax_type_name=code,
        operation=operation,
        scope=scope,
        recipe=Percentual(Decimal(rate)),
        priority=priority,
        valid_from=valid_from,
        valid_to=valid_to,
        is_active=is_active,
    )


class TestRuleResolver:

    def setup_method(self):
        self.resolver = RuleResolver()

    def resolve(self, rules, scope=RuleScope(), operation=Operation.VENDA, on=ON):
        return self.resolver.resolve(rules, regime_id=REGIME, operation=operation, scope=scope, on=on)

    def test_most_specific_wins(self):
        generic = snapshot()
        specific = snapshot(scope=RuleScope(origin_uf="SP", destination_uf="RJ"), priority=9)
        resolved = self.resolve([generic, specific], scope=RuleScope("SP", "RJ"))
        assert [r.rule.id for r in resolved] == [specific.id]
        assert resolved[0].specificity == 2
        assert resolved[0].candidate_count == 2

    def test_priority_breaks_specificity_tie(self):
        low = snapshot(priority=5)
        high = snapshot(priority=1)
        assert self.resolve([low, high])[0].rule.id == high.id

    def test_recent_valid_from_breaks_priority_tie(self):
        old = snapshot(valid_from=date(2022, 1, 1))
        new = snapshot(valid_from=date(2023, 6, 1))
        assert self.resolve([old, new])[0].rule.id == new.id

    def test_full_tie_is_a_conflict(self):
        a, b = snapshot(), snapshot()
        with pytest.raises(RuleConflictError) as exc_info:
            self.resolve([a, b])
        assert exc_info.value.tax_type_code == "ICMS"
        assert sorted(exc_info.value.rule_ids) == sorted([str(a.id), str(b.id)])

    def test_tie_below_the_winner_is_not_a_conflict(self):
        winner = snapshot(priority=0)
        tied_a, tied_b = snapshot(priority=3), snapshot(priority=3)
        assert self.resolve([tied_a, winner, tied_b])[0].rule.id == winner.id

    def test_non_matching_scope_excluded(self):
        rj_only = snapshot(scope=RuleScope(origin_uf="RJ"))
        assert self.resolve([rj_only], scope=RuleScope(origin_uf="SP")) == ()

    def test_filters_regime_operation_and_activity(self):
        rules = [
            snapshot(regime_id=uuid4()),
            snapshot(operation=Operation.COMPRA),
            snapshot(is_active=False),
        ]
        assert self.resolve(rules) == ()

    def test_validity_window_inclusive(self):
        ends_today = snapshot(valid_to=ON)
        starts_tomorrow = snapshot(valid_from=date(2024, 1, 16), priority=-1)
        resolved = self.resolve([ends_today, starts_tomorrow])
        assert [r.rule.id for r in resolved] == [ends_today.id]

    def test_one_rule_per_tax_type_ordered_by_code(self):
        pis = snapshot(tax_type_id=PIS, code="PIS")
        icms = snapshot()
        resolved = self.resolve([pis, icms])
        assert [r.rule.tax_type_code for r in resolved] == ["ICMS", "PIS"]

    def test_order_independent(self):
        rules = [
            snapshot(priority=2),
            snapshot(scope=RuleScope(origin_uf="SP"), priority=4),
            snapshot(tax_type_id=PIS, code="PIS"),
            snapshot(valid_from=date(2023, 12, 1), priority=2),
        ]
        forward = self.resolve(rules, scope=RuleScope(origin_uf="SP"))
        backward = self.resolve(list(reversed(rules)), scope=RuleScope(origin_uf="SP"))
        assert [r.rule.id for r in forward] == [r.rule.id for r in backward]

    def test_no_candidates(self):
        assert self.resolve([]) == ()
