"""Read access to obligations."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from fiscal_kernel.domain.dtos import ObligationFilter, ObligationInfo
from fiscal_kernel.domain.values import ObligationStatus
from fiscal_kernel.models.obligation import Obligation
from fiscal_kernel.selectors.base import BaseSelector


class ObligationSelector(BaseSelector[Obligation]):

    def list(self, org_id: UUID, filters: ObligationFilter | None = None) -> list[ObligationInfo]:
        """Obligations of an organization, newest period first."""
        filters = filters or ObligationFilter()
        stmt = select(Obligation).where(Obligation.org_id == org_id)
        if filters.period is not None:
            stmt = stmt.where(
                Obligation.period_month == filters.period.month,
                Obligation.period_year == filters.period.year,
            )
        if filters.status is not None:
            stmt = stmt.where(Obligation.status == ObligationStatus(filters.status).value)
        if filters.obligation_kind_id is not None:
            stmt = stmt.where(Obligation.obligation_kind_id == filters.obligation_kind_id)
        stmt = stmt.order_by(
            Obligation.period_year.desc(), Obligation.period_month.desc(), Obligation.id
        )
        return [ObligationInfo.from_model(o) for o in self.session.execute(stmt).scalars()]
