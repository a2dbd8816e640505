"""Read access to the fiscal reference catalog."""

from __future__ import annotations

from sqlalchemy import select

from fiscal_kernel.domain.dtos import (
    FiscalClassificationInfo,
    ObligationKindInfo,
    TaxRegimeInfo,
    TaxTypeInfo,
)
from fiscal_kernel.domain.values import ClassificationType
from fiscal_kernel.models.catalog import (
    FiscalClassification,
    ObligationKind,
    TaxRegime,
    TaxType,
)
from fiscal_kernel.selectors.base import BaseSelector


class CatalogSelector(BaseSelector[TaxRegime]):
    """Regimes, tax types, classifications and obligation kinds, ordered by code."""

    def list_regimes(self) -> list[TaxRegimeInfo]:
        rows = self.session.execute(select(TaxRegime).order_by(TaxRegime.code)).scalars()
        return [TaxRegimeInfo.from_model(r) for r in rows]

    def list_tax_types(self) -> list[TaxTypeInfo]:
        rows = self.session.execute(select(TaxType).order_by(TaxType.code)).scalars()
        return [TaxTypeInfo.from_model(t) for t in rows]

    def list_classifications(
        self, classification_type: ClassificationType | None = None
    ) -> list[FiscalClassificationInfo]:
        stmt = select(FiscalClassification)
        if classification_type is not None:
            stmt = stmt.where(
                FiscalClassification.classification_type == ClassificationType(classification_type).value
            )
        stmt = stmt.order_by(FiscalClassification.classification_type, FiscalClassification.code)
        return [FiscalClassificationInfo.from_model(c) for c in self.session.execute(stmt).scalars()]

    def list_obligation_kinds(self) -> list[ObligationKindInfo]:
        rows = self.session.execute(select(ObligationKind).order_by(ObligationKind.code)).scalars()
        return [ObligationKindInfo.from_model(k) for k in rows]
