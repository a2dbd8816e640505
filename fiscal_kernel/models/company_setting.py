"""
Module: fiscal_kernel.models.company_setting
Responsibility: ORM persistence for the time-bounded fiscal setting of an
    organization (which regime applies, and from when).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Validity windows are half-open: [effective_from, effective_to).
    - Windows of one organization never overlap and at most one is open
      ended.  Checked by CompanySettingService under the org's settings
      lock; the database cannot express it portably.
    - Rows are never deleted, so the regime in force for any past
      calculation can always be recovered.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UUIDString


class CompanyFiscalSetting(TrackedBase):
    """Regime assignment of an organization over a date window."""

    __tablename__ = "company_fiscal_settings"

    __table_args__ = (
        Index("idx_company_setting_org_from", "org_id", "effective_from"),
    )

    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    org_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # CNPJ
    tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)

    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    municipality_code: Mapped[str | None] = mapped_column(String(10), nullable=True)

    regime_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_regimes.id", ondelete="RESTRICT"),
        nullable=False,
    )

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    # Exclusive upper bound; NULL = open ended (current)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return f"<CompanyFiscalSetting {self.org_id} {self.effective_from}..{self.effective_to}>"
