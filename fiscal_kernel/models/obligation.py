"""
Module: fiscal_kernel.models.obligation
Responsibility: ORM persistence for accessory obligations and their
    lifecycle status.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One obligation per (org, kind, month, year) (uq_obligation_period);
      creation is idempotent on this key.
    - Status moves only along VALID_TRANSITIONS.  ENVIADO is terminal.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from fiscal_kernel.domain.values import ObligationStatus

VALID_TRANSITIONS: dict[ObligationStatus, frozenset[ObligationStatus]] = {
    ObligationStatus.RASCUNHO: frozenset({ObligationStatus.GERADO, ObligationStatus.ERRO}),
    ObligationStatus.GERADO: frozenset({ObligationStatus.VALIDADO, ObligationStatus.ERRO}),
    ObligationStatus.VALIDADO: frozenset({ObligationStatus.ENVIADO, ObligationStatus.ERRO}),
    ObligationStatus.ERRO: frozenset({ObligationStatus.RASCUNHO}),
    ObligationStatus.ENVIADO: frozenset(),
}


class Obligation(TrackedBase):
    """A filing of one obligation kind for one period."""

    __tablename__ = "obligations"

    __table_args__ = (
        UniqueConstraint(
            "org_id", "obligation_kind_id", "period_month", "period_year",
            name="uq_obligation_period",
        ),
        Index("idx_obligation_org_status", "org_id", "status"),
    )

    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    obligation_kind_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("obligation_kinds.id", ondelete="RESTRICT"),
        nullable=False,
    )

    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    period_year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[ObligationStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ObligationStatus.RASCUNHO,
    )

    # Receipt number from the tax authority; required for ENVIADO
    protocol: Mapped[str | None] = mapped_column(String(100), nullable=True)

    generated_file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Obligation {self.obligation_kind_id} "
            f"{self.period_year:04d}-{self.period_month:02d}: {self.status}>"
        )

    def can_transition_to(self, target: ObligationStatus) -> bool:
        return target in VALID_TRANSITIONS[ObligationStatus(self.status)]
