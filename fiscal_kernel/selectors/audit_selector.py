"""
Module: fiscal_kernel.selectors.audit_selector
Responsibility: Paged, filtered read access to the fiscal audit log.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Entries of one organization only; ``org_id=None`` selects the global
      (catalog) entries.
    - Newest first (descending seq).
    - Page size never exceeds the configured maximum.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, or_, select

from fiscal_kernel.domain.dtos import AuditLogEntryInfo, AuditLogFilter, AuditLogPage
from fiscal_kernel.domain.values import AuditOperation
from fiscal_kernel.exceptions import ValidationError
from fiscal_kernel.models.audit_log import FiscalAuditLogEntry
from fiscal_kernel.selectors.base import BaseSelector


class AuditSelector(BaseSelector[FiscalAuditLogEntry]):

    def query(
        self,
        org_id: UUID | None,
        filters: AuditLogFilter | None = None,
        default_limit: int = 50,
        max_limit: int = 500,
    ) -> AuditLogPage:
        filters = filters or AuditLogFilter()
        limit = filters.limit if filters.limit is not None else default_limit
        if limit < 1:
            raise ValidationError("must be at least 1", field="limit")
        if filters.offset < 0:
            raise ValidationError("must not be negative", field="offset")
        limit = min(limit, max_limit)

        entry = FiscalAuditLogEntry
        conditions = [
            entry.org_id.is_(None) if org_id is None else entry.org_id == org_id,
        ]
        if filters.table_name:
            conditions.append(entry.table_name == filters.table_name)
        if filters.operation is not None:
            conditions.append(entry.operation == AuditOperation(filters.operation).value)
        if filters.record_id:
            conditions.append(entry.record_id == str(filters.record_id))
        if filters.user_id:
            conditions.append(entry.user_id == filters.user_id)
        if filters.since is not None:
            conditions.append(entry.timestamp >= filters.since)
        if filters.until is not None:
            conditions.append(entry.timestamp <= filters.until)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(
                    entry.table_name.ilike(pattern),
                    entry.record_id.ilike(pattern),
                    entry.user_id.ilike(pattern),
                )
            )

        total = self.session.execute(
            select(func.count(entry.id)).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(entry)
            .where(*conditions)
            .order_by(entry.seq.desc())
            .limit(limit)
            .offset(filters.offset)
        ).scalars()

        return AuditLogPage(
            entries=tuple(AuditLogEntryInfo.from_model(r) for r in rows),
            total=total,
            limit=limit,
            offset=filters.offset,
        )
