"""
Tests for the TaxCalculator.

Covers:
- Each calc method (percentual, valor_fixo, isento, nao_incidencia)
- Base reduction and rounding (once per line, half-up)
- Formula mode and formula failures
- Totals: total_tax == sum(lines), net == amount - total_tax
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from fiscal_engines.rule_resolver import ResolvedRule
from fiscal_engines.tax import TaxCalculator
from fiscal_kernel.domain.dtos import TaxCalculationRequest
from fiscal_kernel.domain.rules import RuleScope, TaxRuleSnapshot, build_recipe
from fiscal_kernel.domain.values import CalcMethod, Operation
from fiscal_kernel.exceptions import FormulaEvaluationError

REGIME = uuid4()
ORG = uuid4()
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def resolved(code, calc_method, **recipe_fields):
    rule = TaxRuleSnapshot(
        id=uuid4(),
        regime_id=REGIME,
        tax_type_id=uuid4(),
        tax_type_code=code,
        tax_type_name=f"{code} name",
        operation=Operation.VENDA,
        scope=RuleScope(),
        recipe=build_recipe(calc_method, **recipe_fields),
        priority=0,
        valid_from=date(2020, 1, 1),
    )
    return ResolvedRule(rule=rule, specificity=0, candidate_count=1)


class TestTaxCalculator:

    def setup_method(self):
        self.calculator = TaxCalculator()

    def calculate(self, amount, rules, operation=Operation.VENDA):
        request = TaxCalculationRequest(org_id=ORG, operation=operation, amount=Decimal(amount))
        return self.calculator.calculate(
            request,
            regime_id=REGIME,
            effective_date=date(2024, 1, 15),
            resolved=rules,
            calculated_at=NOW,
        )

    def test_percentual(self):
        result = self.calculate("1000.00", [resolved("ICMS", CalcMethod.PERCENTUAL, rate="18")])
        line = result.tax_by_code["ICMS"]
        assert line.amount == Decimal("180.00")
        assert line.base == Decimal("1000.00")
        assert line.rate == Decimal("18")
        assert result.total_tax == Decimal("180.00")
        assert result.net_amount == Decimal("820.00")

    def test_base_reduction(self):
        result = self.calculate(
            "1000.00", [resolved("ICMS", CalcMethod.PERCENTUAL, rate="12", base_reduction="33.33")]
        )
        line = result.taxes[0]
        assert line.base == Decimal("666.7000")
        assert line.amount == Decimal("80.00")

    def test_rounding_once_per_line(self):
        # 0.65% of 33.33 = 0.216645 -> 0.22
        result = self.calculate("33.33", [resolved("PIS", CalcMethod.PERCENTUAL, rate="0.65")])
        assert result.taxes[0].amount == Decimal("0.22")

    def test_valor_fixo_ignores_amount(self):
        result = self.calculate("10.00", [resolved("ISS", CalcMethod.VALOR_FIXO, fixed_amount="50")])
        assert result.taxes[0].amount == Decimal("50.00")
        assert result.net_amount == Decimal("-40.00")

    @pytest.mark.parametrize("method", [CalcMethod.ISENTO, CalcMethod.NAO_INCIDENCIA])
    def test_zero_methods_keep_the_line(self, method):
        result = self.calculate("500.00", [resolved("IPI", method)])
        assert len(result.taxes) == 1
        assert result.taxes[0].amount == Decimal("0.00")
        assert result.taxes[0].calc_method is method
        assert result.total_tax == Decimal("0.00")

    def test_formula(self):
        rule = resolved(
            "COFINS", CalcMethod.PERCENTUAL,
            rate="3", formula="max(amount * rate / 100, 40)",
        )
        result = self.calculate("1000.00", [rule])
        line = result.taxes[0]
        assert line.amount == Decimal("40.00")
        assert line.formula == "max(amount * rate / 100, 40)"
        assert line.calc_method is CalcMethod.PERCENTUAL

    def test_formula_failure_names_tax_and_rule(self):
        good = resolved("ICMS", CalcMethod.PERCENTUAL, rate="18")
        bad = resolved("PIS", CalcMethod.PERCENTUAL, rate="0", formula="amount / rate")
        with pytest.raises(FormulaEvaluationError) as exc_info:
            self.calculate("100.00", [good, bad])
        assert exc_info.value.tax_type == "PIS"
        assert exc_info.value.rule_id == str(bad.rule.id)

    def test_totals(self):
        rules = [
            resolved("ICMS", CalcMethod.PERCENTUAL, rate="18"),
            resolved("PIS", CalcMethod.PERCENTUAL, rate="1.65"),
            resolved("COFINS", CalcMethod.PERCENTUAL, rate="7.6"),
        ]
        result = self.calculate("1234.56", rules)
        assert result.total_tax == sum(line.amount for line in result.taxes)
        assert result.net_amount == result.total_amount - result.total_tax
        assert result.tax_by_code["PIS"].amount == Decimal("20.37")
        assert result.tax_by_code["COFINS"].amount == Decimal("93.83")

    def test_no_rules_means_no_tax(self):
        result = self.calculate("100.00", [])
        assert result.taxes == ()
        assert result.total_tax == Decimal("0.00")
        assert result.net_amount == Decimal("100.00")

    def test_result_serializes_to_plain_json(self):
        result = self.calculate("100.00", [resolved("ICMS", CalcMethod.PERCENTUAL, rate="18")])
        data = result.to_dict()
        assert data["total_tax"] == "18.00"
        assert data["taxes"][0]["calc_method"] == "percentual"
        assert data["operation"] == "venda"
