"""
Period close / reopen and posting into ledgers.

Verifies:
- Posting creates ledgers lazily and accumulates debits and credits
- balance_due == total_debits - total_credits after every post
- Close is all-or-nothing and freezes the period
- Posting into a closed period is refused and changes nothing
- Reopen restores posting and is audited
- Results whose lines do not match their rules are refused before any write
- Money keeps every digit through storage and the summary
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fiscal_kernel.domain.dtos import (
    AuditLogFilter,
    LedgerFilter,
    TaxCalculationRequest,
)
from fiscal_kernel.domain.values import AuditOperation, LedgerStatus, Operation, TaxPeriod
from fiscal_kernel.exceptions import LedgerClosedError, NotFoundError, ValidationError

JAN = TaxPeriod(2024, 1)


@pytest.fixture
def rules(make_rule, company_setting):
    make_rule("ICMS", rate=Decimal("18"))
    make_rule("PIS", rate=Decimal("1.65"))
    make_rule("ICMS", operation=Operation.COMPRA, rate=Decimal("12"))


@pytest.fixture
def calculate(engine, rules, org_id):
    def _calculate(amount, operation=Operation.VENDA, on=date(2024, 1, 10)):
        return engine.calculate_tax(
            TaxCalculationRequest(
                org_id=org_id, operation=operation, amount=Decimal(amount), effective_date=on,
            )
        )

    return _calculate


def ledgers_by_code(engine, org_id, period=JAN):
    return {l.tax_type_code: l for l in engine.get_ledgers(org_id, period)}


class TestPosting:

    def test_first_post_creates_ledgers(self, engine, calculate, org_id, actor):
        record = engine.post_calculation(org_id, calculate("1000.00"), JAN, actor)
        assert record.period_month == 1 and record.period_year == 2024
        assert record.total_tax == Decimal("196.50")

        ledgers = ledgers_by_code(engine, org_id)
        assert set(ledgers) == {"ICMS", "PIS"}
        assert ledgers["ICMS"].total_debits == Decimal("180.00")
        assert ledgers["ICMS"].balance_due == Decimal("180.00")
        assert ledgers["ICMS"].status is LedgerStatus.ABERTO

    def test_debits_and_credits_accumulate(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("1000.00"), JAN, actor)
        engine.post_calculation(org_id, calculate("500.00"), JAN, actor)
        engine.post_calculation(org_id, calculate("400.00", Operation.COMPRA), JAN, actor)

        icms = ledgers_by_code(engine, org_id)["ICMS"]
        assert icms.total_debits == Decimal("270.00")
        assert icms.total_credits == Decimal("48.00")
        assert icms.balance_due == Decimal("222.00")

    def test_credit_only_ledger_goes_negative(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00", Operation.COMPRA), JAN, actor)
        icms = ledgers_by_code(engine, org_id)["ICMS"]
        assert icms.balance_due == Decimal("-12.00")

    def test_version_increases_on_every_change(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("10.00"), JAN, actor)
        v1 = ledgers_by_code(engine, org_id)["ICMS"].version
        engine.post_calculation(org_id, calculate("10.00"), JAN, actor)
        assert ledgers_by_code(engine, org_id)["ICMS"].version > v1

    def test_zero_tax_lines_are_posted(self, engine, make_rule, company_setting, org_id, actor):
        make_rule("IPI", calc_method="isento", rate=None)
        result = engine.calculate_tax(
            TaxCalculationRequest(org_id=org_id, operation=Operation.VENDA, amount=Decimal("50.00"),
                                  effective_date=date(2024, 1, 2))
        )
        engine.post_calculation(org_id, result, JAN, actor)
        ipi = ledgers_by_code(engine, org_id)["IPI"]
        assert ipi.total_debits == Decimal("0")

    def test_result_of_other_organization_rejected(self, engine, calculate, actor):
        with pytest.raises(ValidationError):
            engine.post_calculation(uuid4(), calculate("10.00"), JAN, actor)

    def test_ledger_filter(self, engine, calculate, org_id, actor, tax_types):
        engine.post_calculation(org_id, calculate("10.00"), JAN, actor)
        only_pis = engine.get_ledgers(org_id, JAN, LedgerFilter(tax_type_id=tax_types["PIS"].id))
        assert [l.tax_type_code for l in only_pis] == ["PIS"]

    def test_periods_are_independent(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("10.00"), JAN, actor)
        assert engine.get_ledgers(org_id, TaxPeriod(2024, 2)) == []

    def test_large_amounts_keep_every_digit(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("123456789012345.67"), JAN, actor)

        icms = ledgers_by_code(engine, org_id)["ICMS"]
        assert icms.total_debits == Decimal("22222222022222.22")
        assert icms.balance_due == Decimal("22222222022222.22")
        summary = engine.get_tax_calculations_summary(org_id, JAN)
        assert summary.total_amount == Decimal("123456789012345.67")
        assert summary.tax_breakdown["ICMS"].total == Decimal("22222222022222.22")


class TestPostValidation:

    def test_duplicate_tax_type_rejected(self, engine, calculate, org_id, actor):
        result = calculate("100.00")
        line = result.tax_by_code["ICMS"]
        doubled = replace(
            result,
            taxes=(line, line),
            total_tax=line.amount * 2,
            net_amount=result.total_amount - line.amount * 2,
        )
        with pytest.raises(ValidationError) as exc_info:
            engine.post_calculation(org_id, doubled, JAN, actor)
        assert exc_info.value.field == "taxes"
        assert engine.get_ledgers(org_id, JAN) == []

    def test_rule_of_other_tax_type_rejected(self, engine, calculate, org_id, actor):
        result = calculate("100.00")
        icms, pis = result.tax_by_code["ICMS"], result.tax_by_code["PIS"]
        swapped = replace(result, taxes=(replace(icms, rule_id=pis.rule_id), pis))
        with pytest.raises(ValidationError):
            engine.post_calculation(org_id, swapped, JAN, actor)
        assert engine.get_tax_calculations(org_id, JAN) == []

    def test_rule_of_other_operation_rejected(self, engine, calculate, org_id, actor):
        purchase = calculate("100.00", Operation.COMPRA)
        sale = calculate("100.00")
        icms = sale.tax_by_code["ICMS"]
        mixed = replace(
            sale,
            taxes=(replace(icms, rule_id=purchase.tax_by_code["ICMS"].rule_id),),
            total_tax=icms.amount,
            net_amount=sale.total_amount - icms.amount,
        )
        with pytest.raises(ValidationError):
            engine.post_calculation(org_id, mixed, JAN, actor)

    def test_rule_of_other_regime_rejected(self, engine, calculate, org_id, actor, catalog):
        result = calculate("100.00")
        other = catalog["regimes"]["LUCRO_REAL"]
        with pytest.raises(ValidationError):
            engine.post_calculation(org_id, replace(result, regime_id=other.id), JAN, actor)
        assert engine.get_ledgers(org_id, JAN) == []


class TestClose:

    def test_close_all_ledgers(self, engine, calculate, org_id, actor, clock):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        outcome = engine.close_tax_period(org_id, JAN, actor)

        assert outcome.success
        assert outcome.period == "2024-01"
        assert outcome.ledgers_affected == 2
        for ledger in engine.get_ledgers(org_id, JAN):
            assert ledger.status is LedgerStatus.FECHADO
            assert ledger.closed_at == clock.now()
            assert ledger.closed_by == actor.user_id

    def test_close_without_ledgers(self, engine, org_id, actor, catalog):
        outcome = engine.close_tax_period(org_id, JAN, actor)
        assert not outcome.success
        assert outcome.error_code == NotFoundError.code

    def test_second_close_rejected(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)
        outcome = engine.close_tax_period(org_id, JAN, actor)
        assert not outcome.success
        assert outcome.error_code == LedgerClosedError.code

    def test_post_into_closed_period_refused(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)
        before = ledgers_by_code(engine, org_id)

        with pytest.raises(LedgerClosedError) as exc_info:
            engine.post_calculation(org_id, calculate("999.00"), JAN, actor)
        assert exc_info.value.period == "2024-01"
        assert exc_info.value.status == "fechado"

        after = ledgers_by_code(engine, org_id)
        assert {c: l.total_debits for c, l in after.items()} == {c: l.total_debits for c, l in before.items()}
        assert len(engine.get_tax_calculations(org_id, JAN)) == 1

    def test_closing_one_period_leaves_others_open(self, engine, calculate, org_id, actor):
        feb = TaxPeriod(2024, 2)
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.post_calculation(org_id, calculate("100.00", on=date(2024, 2, 5)), feb, actor)
        engine.close_tax_period(org_id, JAN, actor)
        assert all(l.status is LedgerStatus.ABERTO for l in engine.get_ledgers(org_id, feb))

    def test_close_is_audited(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)
        page = engine.query_audit_log(org_id, AuditLogFilter(table_name="tax_ledgers"))
        assert page.total == 1
        entry = page.entries[0]
        assert entry.operation is AuditOperation.UPDATE
        assert entry.record_id == "2024-01"
        assert set(entry.old_values["ledgers"].values()) == {"aberto"}
        assert set(entry.new_values["ledgers"].values()) == {"fechado"}


class TestReopen:

    def test_reopen_allows_posting_again(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)

        outcome = engine.reopen_tax_period(org_id, JAN, actor)
        assert outcome.success
        assert outcome.ledgers_affected == 2

        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        icms = ledgers_by_code(engine, org_id)["ICMS"]
        assert icms.total_debits == Decimal("36.00")
        assert icms.closed_at is None

    def test_reopen_of_open_period(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        outcome = engine.reopen_tax_period(org_id, JAN, actor)
        assert not outcome.success
        assert outcome.error_code == ValidationError.code

    def test_reopen_is_audited_and_logged(self, engine, calculate, org_id, actor, captured_logs):
        engine.post_calculation(org_id, calculate("100.00"), JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)
        engine.reopen_tax_period(org_id, JAN, actor)

        page = engine.query_audit_log(org_id, AuditLogFilter(table_name="tax_ledgers"))
        assert page.total == 2
        assert page.entries[0].new_values["action"] == "reopen"

        reopened = [r for r in captured_logs() if r["message"] == "period_reopened"]
        assert reopened and reopened[0]["level"] == "WARNING"
        assert reopened[0]["actor_id"] == actor.user_id
        assert reopened[0]["period"] == "2024-01"


class TestSummary:

    def test_summary(self, engine, calculate, org_id, actor):
        engine.post_calculation(org_id, calculate("1000.00"), JAN, actor)
        engine.post_calculation(org_id, calculate("500.00"), JAN, actor)

        summary = engine.get_tax_calculations_summary(org_id, JAN)
        assert summary.period == "2024-01"
        assert summary.total_operations == 2
        assert summary.total_amount == Decimal("1500.00")
        assert summary.total_taxes == Decimal("294.75")
        assert summary.tax_breakdown["ICMS"].operations == 2
        assert summary.tax_breakdown["ICMS"].total == Decimal("270.00")
        assert summary.tax_breakdown["PIS"].total == Decimal("24.75")

    def test_empty_period(self, engine, org_id):
        summary = engine.get_tax_calculations_summary(org_id, JAN)
        assert summary.total_operations == 0
        assert summary.total_taxes == Decimal("0.00")
        assert summary.tax_breakdown == {}

    def test_calculation_records_keep_the_result(self, engine, calculate, org_id, actor):
        result = calculate("1000.00")
        engine.post_calculation(org_id, result, JAN, actor)
        [record] = engine.get_tax_calculations(org_id, JAN)
        assert record.result == result.to_dict()
