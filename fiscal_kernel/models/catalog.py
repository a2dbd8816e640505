"""
Module: fiscal_kernel.models.catalog
Responsibility: ORM persistence for fiscal reference data -- tax regimes,
    tax types, fiscal classifications and obligation kinds.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Codes are unique per table (per classification type for
      classifications).
    - Catalog rows are global (not organization scoped) and read-shared by
      every calculation.

Audit relevance:
    Catalog writes are audited with ``org_id = NULL``.  Tax rules reference
    regimes, tax types and classifications by id, so catalog rows are never
    deleted.
"""

from datetime import date

from sqlalchemy import Date, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase
from fiscal_kernel.domain.values import ClassificationType, Jurisdiction, Periodicity


class TaxRegime(TrackedBase):
    """Tax framework a company operates under (e.g. Simples Nacional)."""

    __tablename__ = "tax_regimes"

    __table_args__ = (
        UniqueConstraint("code", name="uq_tax_regime_code"),
    )

    code: Mapped[str] = mapped_column(String(30), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Informational window during which the regime exists in law
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)

    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return f"<TaxRegime {self.code}>"


class TaxType(TrackedBase):
    """A tax (ICMS, ISS, PIS...) and the jurisdiction that levies it."""

    __tablename__ = "tax_types"

    __table_args__ = (
        UniqueConstraint("code", name="uq_tax_type_code"),
    )

    code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    jurisdiction: Mapped[Jurisdiction] = mapped_column(
        String(20),
        nullable=False,
        default=Jurisdiction.FEDERAL,
    )

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<TaxType {self.code}>"


class FiscalClassification(TrackedBase):
    """Product (NCM) or service code used to scope rules."""

    __tablename__ = "fiscal_classifications"

    __table_args__ = (
        UniqueConstraint(
            "classification_type", "code",
            name="uq_fiscal_classification_type_code",
        ),
    )

    classification_type: Mapped[ClassificationType] = mapped_column(
        String(20),
        nullable=False,
    )

    # NCM for products, service list code for services
    code: Mapped[str] = mapped_column(String(20), nullable=False)

    description: Mapped[str] = mapped_column(String(255), nullable=False)

    # Tax substitution code (products only)
    cest: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<FiscalClassification {self.classification_type}:{self.code}>"


class ObligationKind(TrackedBase):
    """Recurring filing type (SPED Fiscal, DCTF, DEFIS...)."""

    __tablename__ = "obligation_kinds"

    __table_args__ = (
        UniqueConstraint("code", name="uq_obligation_kind_code"),
    )

    code: Mapped[str] = mapped_column(String(30), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    periodicity: Mapped[Periodicity] = mapped_column(
        String(20),
        nullable=False,
        default=Periodicity.MENSAL,
    )

    def __repr__(self) -> str:
        return f"<ObligationKind {self.code} ({self.periodicity})>"
