"""Read access to company fiscal settings."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import or_, select

from fiscal_kernel.domain.dtos import CompanyFiscalSettingInfo
from fiscal_kernel.models.company_setting import CompanyFiscalSetting
from fiscal_kernel.selectors.base import BaseSelector


class SettingSelector(BaseSelector[CompanyFiscalSetting]):

    def list(self, org_id: UUID) -> list[CompanyFiscalSettingInfo]:
        """All settings of an organization, oldest window first."""
        rows = self.session.execute(
            select(CompanyFiscalSetting)
            .where(CompanyFiscalSetting.org_id == org_id)
            .order_by(CompanyFiscalSetting.effective_from)
        ).scalars()
        return [CompanyFiscalSettingInfo.from_model(s) for s in rows]

    def effective(self, org_id: UUID, on: date) -> CompanyFiscalSettingInfo | None:
        """The setting whose half-open window contains ``on``, if any."""
        row = self.session.execute(
            select(CompanyFiscalSetting).where(
                CompanyFiscalSetting.org_id == org_id,
                CompanyFiscalSetting.effective_from <= on,
                or_(
                    CompanyFiscalSetting.effective_to.is_(None),
                    CompanyFiscalSetting.effective_to > on,
                ),
            )
        ).scalars().first()
        return CompanyFiscalSettingInfo.from_model(row) if row else None
