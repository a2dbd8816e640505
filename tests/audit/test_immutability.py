"""
ORM-level immutability of the fiscal record.

Verifies:
- Audit entries, ledger postings and posted calculations reject UPDATE
  and DELETE through the ORM
- Ledgers are never deleted; closed ledger totals are frozen
- Company fiscal settings are never deleted
- Rules referenced by postings cannot be deleted or have their
  calculation-defining fields changed, even bypassing the services
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from fiscal_kernel.domain.dtos import TaxCalculationRequest
from fiscal_kernel.domain.values import LedgerStatus, Operation, TaxPeriod
from fiscal_kernel.exceptions import ImmutabilityViolationError, RuleReferencedError
from fiscal_kernel.models.audit_log import FiscalAuditLogEntry
from fiscal_kernel.models.calculation import TaxCalculationRecord
from fiscal_kernel.models.company_setting import CompanyFiscalSetting
from fiscal_kernel.models.ledger import TaxLedger, TaxLedgerPosting
from fiscal_kernel.models.tax_rule import TaxRule

JAN = TaxPeriod(2024, 1)


@pytest.fixture
def posted(engine, make_rule, company_setting, org_id, actor):
    rule = make_rule("ICMS")
    result = engine.calculate_tax(
        TaxCalculationRequest(org_id=org_id, operation=Operation.VENDA, amount=Decimal("100.00"))
    )
    record = engine.post_calculation(org_id, result, JAN, actor)
    return rule, record


def _first(session, model):
    return session.execute(select(model)).scalars().first()


class TestAppendOnlyRecords:

    def test_audit_entry_update_rejected(self, posted, session):
        entry = _first(session, FiscalAuditLogEntry)
        entry.user_id = "someone-else"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_audit_entry_delete_rejected(self, posted, session):
        session.delete(_first(session, FiscalAuditLogEntry))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_posting_update_rejected(self, posted, session):
        posting = _first(session, TaxLedgerPosting)
        posting.amount = Decimal("1.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_posting_delete_rejected(self, posted, session):
        session.delete(_first(session, TaxLedgerPosting))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_calculation_update_rejected(self, posted, session):
        record = _first(session, TaxCalculationRecord)
        record.total_tax = Decimal("0.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_calculation_delete_rejected(self, posted, session):
        session.delete(_first(session, TaxCalculationRecord))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_setting_delete_rejected(self, posted, session):
        session.delete(_first(session, CompanyFiscalSetting))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestLedgerImmutability:

    def test_ledger_delete_rejected(self, posted, session):
        session.delete(_first(session, TaxLedger))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_open_ledger_totals_may_change(self, posted, session):
        ledger = _first(session, TaxLedger)
        ledger.total_debits = ledger.total_debits + Decimal("1")
        session.flush()

    def test_closed_ledger_totals_frozen(self, engine, posted, session, org_id, actor):
        engine.close_tax_period(org_id, JAN, actor)
        ledger = _first(session, TaxLedger)
        assert ledger.status == LedgerStatus.FECHADO
        ledger.balance_due = Decimal("0.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_closed_ledger_may_reopen(self, engine, posted, session, org_id, actor):
        engine.close_tax_period(org_id, JAN, actor)
        ledger = _first(session, TaxLedger)
        ledger.status = LedgerStatus.ABERTO
        ledger.closed_at = None
        ledger.closed_by = None
        session.flush()


class TestReferencedRules:

    def test_delete_referenced_rule_rejected(self, posted, session):
        rule, _ = posted
        session.delete(session.get(TaxRule, rule.id))
        with pytest.raises(RuleReferencedError) as exc_info:
            session.flush()
        assert exc_info.value.posting_count == 1

    def test_rate_change_on_referenced_rule_rejected(self, posted, session):
        rule, _ = posted
        session.get(TaxRule, rule.id).rate = Decimal("12")
        with pytest.raises(RuleReferencedError):
            session.flush()

    def test_deactivating_referenced_rule_allowed(self, posted, session):
        rule, _ = posted
        session.get(TaxRule, rule.id).is_active = False
        session.flush()

    def test_unreferenced_rule_delete_allowed(self, make_rule, session):
        rule = make_rule("PIS", rate=Decimal("1.65"))
        session.delete(session.get(TaxRule, rule.id))
        session.flush()
        assert session.get(TaxRule, rule.id) is None
