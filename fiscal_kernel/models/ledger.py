"""
Module: fiscal_kernel.models.ledger
Responsibility: ORM persistence for period tax ledgers and the postings
    that make up their totals.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One ledger per (org, tax_type, regime, month, year)
      (uq_tax_ledger_period).
    - balance_due == total_debits - total_credits after every posting.
    - A FECHADO ledger accepts no postings and its totals are frozen
      (ORM listener in db/immutability.py).
    - version increases by one on every change (posting, close, reopen).
    - TaxLedgerPosting rows are append-only; each references the rule that
      produced it, which blocks the rule's deletion.

Failure modes:
    - LedgerClosedError when posting into a FECHADO ledger.
    - ImmutabilityViolationError on any update/delete of a posting, or on a
      totals change of a closed ledger.

Audit relevance:
    Totals are a stored aggregate of postings; the postings table lets an
    auditor rebuild every ledger from its calculations.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from fiscal_kernel.domain.values import LedgerStatus, PostingSide


class TaxLedger(TrackedBase):
    """Per-period totals for one tax type and regime of an organization."""

    __tablename__ = "tax_ledgers"

    __table_args__ = (
        UniqueConstraint(
            "org_id", "tax_type_id", "regime_id", "period_month", "period_year",
            name="uq_tax_ledger_period",
        ),
        Index("idx_tax_ledger_org_period", "org_id", "period_year", "period_month"),
    )

    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    tax_type_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_types.id", ondelete="RESTRICT"),
        nullable=False,
    )

    regime_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_regimes.id", ondelete="RESTRICT"),
        nullable=False,
    )

    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    period_year: Mapped[int] = mapped_column(Integer, nullable=False)

    total_debits: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    total_credits: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    balance_due: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    status: Mapped[LedgerStatus] = mapped_column(
        String(20),
        nullable=False,
        default=LedgerStatus.ABERTO,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    closed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    postings: Mapped[list["TaxLedgerPosting"]] = relationship(
        back_populates="ledger",
        order_by="TaxLedgerPosting.created_at",
    )

    def __repr__(self) -> str:
        return (
            f"<TaxLedger {self.tax_type_id} "
            f"{self.period_year:04d}-{self.period_month:02d}: {self.status}>"
        )

    @property
    def is_closed(self) -> bool:
        return self.status == LedgerStatus.FECHADO

    def apply(self, side: PostingSide, amount: Decimal) -> None:
        """Add a posting amount to the debit or credit total."""
        if side == PostingSide.DEBIT:
            self.total_debits = self.total_debits + amount
        else:
            self.total_credits = self.total_credits + amount
        self.balance_due = self.total_debits - self.total_credits
        self.version = self.version + 1


class TaxLedgerPosting(Base):
    """One tax line of a posted calculation, as applied to a ledger."""

    __tablename__ = "tax_ledger_postings"

    __table_args__ = (
        UniqueConstraint("ledger_id", "calculation_id", name="uq_posting_ledger_calculation"),
        Index("idx_posting_rule", "rule_id"),
    )

    ledger_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_ledgers.id", ondelete="RESTRICT"),
        nullable=False,
    )

    calculation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_calculations.id", ondelete="RESTRICT"),
        nullable=False,
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_rules.id", ondelete="RESTRICT"),
        nullable=False,
    )

    tax_type_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    side: Mapped[PostingSide] = mapped_column(String(10), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    ledger: Mapped[TaxLedger] = relationship(back_populates="postings")

    def __repr__(self) -> str:
        return f"<TaxLedgerPosting {self.side} {self.amount} -> {self.ledger_id}>"
