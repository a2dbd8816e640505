"""
Module: fiscal_kernel.models.calculation
Responsibility: ORM persistence for posted tax calculations.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A calculation is stored only when it is posted; calculate_tax() alone
      writes nothing.
    - The stored ``result`` is the exact JSON form of the posted
      TaxCalculationResult, so the export layer sees what was posted.
    - Rows are append-only (db/immutability.py).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from fiscal_kernel.domain.values import Operation


class TaxCalculationRecord(TrackedBase):
    """A calculation result posted into a ledger period."""

    __tablename__ = "tax_calculations"

    __table_args__ = (
        Index("idx_tax_calculation_org_period", "org_id", "period_year", "period_month"),
    )

    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    period_year: Mapped[int] = mapped_column(Integer, nullable=False)

    regime_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_regimes.id", ondelete="RESTRICT"),
        nullable=False,
    )

    operation: Mapped[Operation] = mapped_column(String(30), nullable=False)

    classification_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    origin_uf: Mapped[str | None] = mapped_column(String(2), nullable=True)

    destination_uf: Mapped[str | None] = mapped_column(String(2), nullable=True)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    total_tax: Mapped[Decimal] = mapped_column(nullable=False)

    net_amount: Mapped[Decimal] = mapped_column(nullable=False)

    result: Mapped[dict] = mapped_column(JSON, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    calculated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<TaxCalculationRecord {self.id} "
            f"{self.period_year:04d}-{self.period_month:02d} tax={self.total_tax}>"
        )
