"""
Audit hash chain tests.

Verifies:
- Every mutation appends exactly one entry with a matching record id
- Sequence numbers are gapless and each entry links to its predecessor
- The chain head tracks the newest entry, so a removed tail is caught
- validate_audit_chain() passes on an untouched chain
- Tampering below the ORM (raw SQL), or through it with the guards
  removed, is detected
"""

from contextlib import contextmanager
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from fiscal_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from fiscal_kernel.domain.dtos import (
    AuditLogFilter,
    TaxCalculationRequest,
)
from fiscal_kernel.domain.values import AuditOperation, Operation, TaxPeriod
from fiscal_kernel.exceptions import AuditChainBrokenError
from fiscal_kernel.models.audit_log import FiscalAuditLogEntry
from fiscal_kernel.services.sequence_service import AuditChainHead

JAN = TaxPeriod(2024, 1)


@pytest.fixture
def history(engine, make_rule, company_setting, org_id, actor):
    """A short but varied org history: rule, update, post, close."""
    rule = make_rule("ICMS")
    engine.update_rule(org_id, rule.id, {"priority": 5}, actor)
    result = engine.calculate_tax(
        TaxCalculationRequest(org_id=org_id, operation=Operation.VENDA, amount=Decimal("100.00"))
    )
    record = engine.post_calculation(org_id, result, JAN, actor)
    engine.close_tax_period(org_id, JAN, actor)
    return rule, record


@contextmanager
def disabled_immutability():
    """Remove the ORM guards, to simulate tampering through the ORM."""
    unregister_immutability_listeners()
    try:
        yield
    finally:
        register_immutability_listeners()


def _all_entries(session):
    return session.execute(
        select(FiscalAuditLogEntry).order_by(FiscalAuditLogEntry.seq)
    ).scalars().all()


class TestAuditEntriesPerMutation:

    def test_one_entry_per_mutation(self, engine, history, org_id):
        rule, record = history
        entries = engine.query_audit_log(org_id).entries

        # setting, rule create, rule update, post, close; newest first
        assert [(e.table_name, e.operation) for e in entries] == [
            ("tax_ledgers", AuditOperation.UPDATE),
            ("tax_calculations", AuditOperation.INSERT),
            ("tax_rules", AuditOperation.UPDATE),
            ("tax_rules", AuditOperation.INSERT),
            ("company_fiscal_settings", AuditOperation.INSERT),
        ]
        assert entries[1].record_id == str(record.id)
        assert entries[2].record_id == str(rule.id)
        assert entries[0].record_id == JAN.code
        assert all(e.new_values is not None for e in entries)

    def test_update_keeps_old_and_new(self, engine, history, org_id):
        rule, _ = history
        [entry] = engine.query_audit_log(
            org_id, AuditLogFilter(table_name="tax_rules", operation=AuditOperation.UPDATE)
        ).entries
        assert entry.old_values["priority"] == 0
        assert entry.new_values["priority"] == 5

    def test_actor_is_recorded(self, engine, history, org_id, actor):
        for entry in engine.query_audit_log(org_id).entries:
            assert entry.user_id == actor.user_id
            assert entry.ip_address == actor.ip_address
            assert entry.user_agent == actor.user_agent

    def test_failed_mutation_writes_nothing(self, engine, history, org_id, actor):
        before = engine.query_audit_log(org_id).total
        outcome = engine.close_tax_period(org_id, JAN, actor)
        assert not outcome.success
        assert engine.query_audit_log(org_id).total == before


class TestChainLinkage:

    def test_sequence_is_gapless(self, history, session):
        seqs = [e.seq for e in _all_entries(session)]
        assert seqs == list(range(seqs[0], seqs[0] + len(seqs)))

    def test_entries_link_to_predecessor(self, history, session):
        entries = _all_entries(session)
        assert entries[0].is_genesis
        for prev, entry in zip(entries, entries[1:]):
            assert entry.prev_hash == prev.hash

    def test_chain_head_names_newest_entry(self, history, session):
        newest = _all_entries(session)[-1]
        head = session.execute(select(AuditChainHead)).scalar_one()
        assert (head.last_seq, head.last_hash) == (newest.seq, newest.hash)

    def test_untouched_chain_validates(self, engine, history):
        assert engine.validate_audit_chain() is True

    def test_empty_chain_validates(self, engine):
        assert engine.validate_audit_chain() is True


class TestTamperDetection:

    def _tamper(self, session, sql, **params):
        session.execute(text(sql), params)
        session.commit()

    def test_changed_user_is_detected(self, engine, history, session):
        target = _all_entries(session)[2]
        self._tamper(
            session,
            "UPDATE fiscal_audit_log SET user_id = :user WHERE seq = :seq",
            user="intruder", seq=target.seq,
        )
        with pytest.raises(AuditChainBrokenError) as exc_info:
            engine.validate_audit_chain()
        assert exc_info.value.audit_entry_id == str(target.id)

    def test_rewritten_hash_is_detected(self, engine, history, session):
        target = _all_entries(session)[1]
        self._tamper(
            session,
            "UPDATE fiscal_audit_log SET hash = :hash WHERE seq = :seq",
            hash="0" * 64, seq=target.seq,
        )
        with pytest.raises(AuditChainBrokenError):
            engine.validate_audit_chain()

    def test_removed_entry_is_detected(self, engine, history, session):
        target = _all_entries(session)[1]
        self._tamper(session, "DELETE FROM fiscal_audit_log WHERE seq = :seq", seq=target.seq)
        with pytest.raises(AuditChainBrokenError):
            engine.validate_audit_chain()

    def test_removed_tail_is_detected(self, engine, history, session):
        newest = _all_entries(session)[-1]
        self._tamper(session, "DELETE FROM fiscal_audit_log WHERE seq = :seq", seq=newest.seq)
        with pytest.raises(AuditChainBrokenError):
            engine.validate_audit_chain()

    def test_orm_rewrite_with_guards_removed_is_detected(self, engine, history, session):
        target = _all_entries(session)[-1]
        with disabled_immutability():
            target.new_values = {**target.new_values, "action": "reopen"}
            session.commit()
        with pytest.raises(AuditChainBrokenError) as exc_info:
            engine.validate_audit_chain()
        assert exc_info.value.audit_entry_id == str(target.id)
