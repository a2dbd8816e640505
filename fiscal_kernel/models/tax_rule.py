"""
Module: fiscal_kernel.models.tax_rule
Responsibility: ORM persistence for tax rules -- matching conditions plus
    the calculation recipe.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - NULL origin_uf / destination_uf / classification_id are wildcards.
    - Calc-method-dependent required fields are validated by RuleService
      through ``fiscal_kernel.domain.rules.build_recipe`` before any write.
    - A rule referenced by a TaxLedgerPosting cannot be deleted (FK RESTRICT
      plus an explicit reference check) and its calculation fields are
      frozen; it can only be deactivated or have its window ended.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UUIDString
from fiscal_kernel.domain.values import CalcMethod, Operation

# Fields that define what a rule computes; frozen once the rule is referenced
CALCULATION_FIELDS: tuple[str, ...] = (
    "regime_id",
    "tax_type_id",
    "operation",
    "origin_uf",
    "destination_uf",
    "classification_id",
    "calc_method",
    "rate",
    "base_reduction",
    "fixed_amount",
    "formula",
    "priority",
    "valid_from",
)


class TaxRule(TrackedBase):
    """A rule resolving one tax type for a (regime, operation, scope)."""

    __tablename__ = "tax_rules"

    __table_args__ = (
        Index("idx_tax_rule_lookup", "org_id", "regime_id", "operation", "is_active"),
        Index("idx_tax_rule_tax_type", "tax_type_id"),
    )

    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    regime_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_regimes.id", ondelete="RESTRICT"),
        nullable=False,
    )

    tax_type_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_types.id", ondelete="RESTRICT"),
        nullable=False,
    )

    operation: Mapped[Operation] = mapped_column(String(30), nullable=False)

    origin_uf: Mapped[str | None] = mapped_column(String(2), nullable=True)

    destination_uf: Mapped[str | None] = mapped_column(String(2), nullable=True)

    classification_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_classifications.id", ondelete="RESTRICT"),
        nullable=True,
    )

    calc_method: Mapped[CalcMethod] = mapped_column(String(20), nullable=False)

    # Percentage, e.g. 18.00 for 18%
    rate: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Percentage of the amount removed before applying the rate
    base_reduction: Mapped[Decimal | None] = mapped_column(nullable=True)

    fixed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    formula: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Lower number wins among equally specific rules
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Inclusive on both ends
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)

    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return f"<TaxRule {self.id} {self.operation} {self.calc_method}>"
