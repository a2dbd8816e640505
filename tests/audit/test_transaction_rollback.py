"""
A mutation and its audit entry commit together or not at all.

Verifies:
- A failing audit write rolls back the post, the close and a rule create
- A rollback that itself fails surfaces as IntegrityFaultError and is
  logged at CRITICAL
"""

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from fiscal_kernel.domain.dtos import TaxCalculationRequest, TaxRuleInput
from fiscal_kernel.domain.values import CalcMethod, LedgerStatus, Operation, TaxPeriod
from fiscal_kernel.exceptions import IntegrityFaultError, LedgerClosedError
from fiscal_kernel.models.ledger import TaxLedgerPosting
from fiscal_kernel.services.auditor_service import AuditorService

JAN = TaxPeriod(2024, 1)


class AuditStoreDown(RuntimeError):
    pass


@pytest.fixture
def sale(engine, make_rule, company_setting, org_id):
    make_rule("ICMS", rate=Decimal("18"))
    return engine.calculate_tax(
        TaxCalculationRequest(
            org_id=org_id, operation=Operation.VENDA, amount=Decimal("100.00"),
            effective_date=date(2024, 1, 10),
        )
    )


def audit_fails():
    return patch.object(AuditorService, "record", side_effect=AuditStoreDown("audit store unavailable"))


def rollback_fails():
    return patch.object(
        Session, "rollback", side_effect=OperationalError("ROLLBACK", {}, Exception("connection lost")),
    )


class TestAuditFailureRollsBack:

    def test_post_leaves_nothing_behind(self, engine, sale, org_id, actor, session):
        audit_before = engine.query_audit_log(org_id).total
        with audit_fails(), pytest.raises(AuditStoreDown):
            engine.post_calculation(org_id, sale, JAN, actor)

        assert engine.get_ledgers(org_id, JAN) == []
        assert engine.get_tax_calculations(org_id, JAN) == []
        assert session.execute(select(func.count(TaxLedgerPosting.id))).scalar_one() == 0
        assert engine.query_audit_log(org_id).total == audit_before

    def test_close_leaves_period_open(self, engine, sale, org_id, actor):
        engine.post_calculation(org_id, sale, JAN, actor)
        with audit_fails(), pytest.raises(AuditStoreDown):
            engine.close_tax_period(org_id, JAN, actor)

        assert [l.status for l in engine.get_ledgers(org_id, JAN)] == [LedgerStatus.ABERTO]

    def test_rule_create_is_undone(self, engine, org_id, regime, tax_types, actor):
        data = TaxRuleInput(
            regime_id=regime.id,
            tax_type_id=tax_types["ISS"].id,
            operation=Operation.PRESTACAO_SERVICO,
            calc_method=CalcMethod.PERCENTUAL,
            rate=Decimal("5"),
            valid_from=date(2024, 1, 1),
        )
        with audit_fails(), pytest.raises(AuditStoreDown):
            engine.create_rule(org_id, data, actor)

        assert engine.list_rules(org_id) == []


class TestFailedRollback:

    def test_raises_integrity_fault(self, engine, sale, org_id, actor):
        engine.post_calculation(org_id, sale, JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)

        with rollback_fails(), pytest.raises(IntegrityFaultError) as exc_info:
            engine.post_calculation(org_id, sale, JAN, actor)

        assert exc_info.value.operation == "post_calculation"
        assert "connection lost" in exc_info.value.reason
        assert isinstance(exc_info.value.__cause__, LedgerClosedError)

    def test_logged_as_critical(self, engine, sale, org_id, actor, captured_logs):
        engine.post_calculation(org_id, sale, JAN, actor)
        engine.close_tax_period(org_id, JAN, actor)

        with rollback_fails(), pytest.raises(IntegrityFaultError):
            engine.post_calculation(org_id, sale, JAN, actor)

        critical = [r for r in captured_logs() if r["message"] == "rollback_failed"]
        assert len(critical) == 1
        assert critical[0]["level"] == "CRITICAL"
        assert critical[0]["operation"] == "post_calculation"
