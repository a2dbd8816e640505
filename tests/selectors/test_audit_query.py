"""
Audit log query tests.

Covers:
- Newest-first ordering and paging metadata
- Default and maximum page sizes from settings; invalid limit/offset
- Filters: table, operation, record id, user, time window, search
- Organization scoping and the global (catalog) scope
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from fiscal_kernel.domain.dtos import AuditLogFilter
from fiscal_kernel.domain.values import AuditActor, AuditOperation
from fiscal_kernel.exceptions import ValidationError
from fiscal_services import FiscalEngine


@pytest.fixture
def rules(make_rule, clock):
    """Five rule inserts, one second apart."""
    created = []
    for i in range(5):
        created.append(make_rule("ICMS", rate=Decimal("10"), priority=i))
        clock.advance(1)
    return created


class TestPaging:

    def test_newest_first(self, engine, rules, org_id):
        page = engine.query_audit_log(org_id, AuditLogFilter(table_name="tax_rules"))
        assert [e.record_id for e in page.entries] == [str(r.id) for r in reversed(rules)]
        seqs = [e.seq for e in page.entries]
        assert seqs == sorted(seqs, reverse=True)

    def test_limit_and_offset(self, engine, rules, org_id):
        first = engine.query_audit_log(org_id, AuditLogFilter(table_name="tax_rules", limit=2))
        second = engine.query_audit_log(
            org_id, AuditLogFilter(table_name="tax_rules", limit=2, offset=2)
        )
        last = engine.query_audit_log(
            org_id, AuditLogFilter(table_name="tax_rules", limit=2, offset=4)
        )

        assert first.total == second.total == last.total == 5
        assert first.has_more and second.has_more and not last.has_more
        assert len(last.entries) == 1
        ids = [e.id for p in (first, second, last) for e in p.entries]
        assert len(set(ids)) == 5

    def test_offset_past_end_is_empty(self, engine, rules, org_id):
        page = engine.query_audit_log(org_id, AuditLogFilter(offset=100))
        assert page.entries == ()
        assert not page.has_more

    def test_limit_capped_at_maximum(self, session_factory, settings, clock, rules, org_id):
        capped = FiscalEngine(
            session_factory,
            settings=replace(settings, audit_page_size=2, audit_max_page_size=3),
            clock=clock,
        )
        assert capped.query_audit_log(org_id).limit == 2
        page = capped.query_audit_log(org_id, AuditLogFilter(limit=1000))
        assert page.limit == 3
        assert len(page.entries) == 3

    @pytest.mark.parametrize("limit,offset,field", [(0, 0, "limit"), (-1, 0, "limit"), (10, -1, "offset")])
    def test_invalid_paging(self, engine, org_id, limit, offset, field):
        with pytest.raises(ValidationError) as exc_info:
            engine.query_audit_log(org_id, AuditLogFilter(limit=limit, offset=offset))
        assert exc_info.value.field == field


class TestFilters:

    def test_by_operation(self, engine, rules, org_id, actor):
        engine.update_rule(org_id, rules[0].id, {"priority": 99}, actor)
        page = engine.query_audit_log(org_id, AuditLogFilter(operation=AuditOperation.UPDATE))
        assert page.total == 1
        assert page.entries[0].record_id == str(rules[0].id)

    def test_by_record_id(self, engine, rules, org_id):
        page = engine.query_audit_log(org_id, AuditLogFilter(record_id=str(rules[2].id)))
        assert [e.record_id for e in page.entries] == [str(rules[2].id)]

    def test_by_user(self, engine, rules, org_id):
        other = AuditActor(user_id="auditor-7")
        engine.deactivate_rule(org_id, rules[1].id, other)
        page = engine.query_audit_log(org_id, AuditLogFilter(user_id="auditor-7"))
        assert page.total == 1
        assert page.entries[0].user_id == "auditor-7"

    def test_time_window_inclusive(self, engine, rules, org_id, clock):
        start = clock.now() - timedelta(seconds=4)
        page = engine.query_audit_log(
            org_id,
            AuditLogFilter(table_name="tax_rules", since=start, until=start + timedelta(seconds=1)),
        )
        assert {e.record_id for e in page.entries} == {str(rules[1].id), str(rules[2].id)}

    def test_search_is_case_insensitive(self, engine, rules, org_id):
        page = engine.query_audit_log(org_id, AuditLogFilter(search="TAX_RU"))
        assert page.total == 5
        assert engine.query_audit_log(org_id, AuditLogFilter(search="no-such-thing")).total == 0

    def test_search_matches_record_id(self, engine, rules, org_id):
        fragment = str(rules[3].id)[:13]
        page = engine.query_audit_log(org_id, AuditLogFilter(search=fragment))
        assert str(rules[3].id) in {e.record_id for e in page.entries}


class TestScoping:

    def test_other_org_sees_nothing(self, engine, rules):
        assert engine.query_audit_log(uuid4()).total == 0

    def test_global_scope_holds_catalog(self, engine, rules, org_id):
        page = engine.query_audit_log(None)
        assert page.total >= 1
        assert all(e.org_id is None for e in page.entries)
        assert "reference_catalog" in {e.table_name for e in page.entries}
        assert all(e.org_id == org_id for e in engine.query_audit_log(org_id).entries)
