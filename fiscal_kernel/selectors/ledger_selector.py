"""
Module: fiscal_kernel.selectors.ledger_selector
Responsibility: Read access to period ledgers and posted calculations --
    ledger listing, the per-period summary and the calculation records used
    by the export layer.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Summary totals are derived from the stored calculation records and
      postings of the period; they are never cached.
    - The tax breakdown counts each calculation once per tax type.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from fiscal_kernel.domain.dtos import (
    LedgerFilter,
    TaxBreakdownItem,
    TaxCalculationRecordInfo,
    TaxCalculationsSummary,
    TaxLedgerInfo,
)
from fiscal_kernel.domain.values import LedgerStatus, TaxPeriod, quantize_money
from fiscal_kernel.models.calculation import TaxCalculationRecord
from fiscal_kernel.models.catalog import TaxType
from fiscal_kernel.models.ledger import TaxLedger, TaxLedgerPosting
from fiscal_kernel.selectors.base import BaseSelector

ZERO = Decimal("0")


def _money(value: Decimal | None) -> Decimal:
    return quantize_money(Decimal(value) if value is not None else ZERO)


class LedgerSelector(BaseSelector[TaxLedger]):
    """Queries over ledgers and calculations of one org+period."""

    def get_ledgers(
        self,
        org_id: UUID,
        period: TaxPeriod,
        filters: LedgerFilter | None = None,
    ) -> list[TaxLedgerInfo]:
        """Ledgers of the period ordered by tax type code."""
        filters = filters or LedgerFilter()
        stmt = (
            select(TaxLedger, TaxType.code)
            .join(TaxType, TaxType.id == TaxLedger.tax_type_id)
            .where(
                TaxLedger.org_id == org_id,
                TaxLedger.period_month == period.month,
                TaxLedger.period_year == period.year,
            )
        )
        if filters.tax_type_id is not None:
            stmt = stmt.where(TaxLedger.tax_type_id == filters.tax_type_id)
        if filters.regime_id is not None:
            stmt = stmt.where(TaxLedger.regime_id == filters.regime_id)
        if filters.status is not None:
            stmt = stmt.where(TaxLedger.status == LedgerStatus(filters.status).value)
        stmt = stmt.order_by(TaxType.code, TaxLedger.regime_id)

        return [
            TaxLedgerInfo.from_model(ledger, tax_type_code=code)
            for ledger, code in self.session.execute(stmt).all()
        ]

    def calculations(self, org_id: UUID, period: TaxPeriod) -> list[TaxCalculationRecordInfo]:
        """Posted calculation records of the period in posting order."""
        rows = self.session.execute(
            select(TaxCalculationRecord)
            .where(
                TaxCalculationRecord.org_id == org_id,
                TaxCalculationRecord.period_month == period.month,
                TaxCalculationRecord.period_year == period.year,
            )
            .order_by(TaxCalculationRecord.calculated_at, TaxCalculationRecord.id)
        ).scalars()
        return [TaxCalculationRecordInfo.from_model(r) for r in rows]

    def summary(self, org_id: UUID, period: TaxPeriod) -> TaxCalculationsSummary:
        """
        Roll-up of every calculation posted into the period.

        ``tax_breakdown`` maps tax type code to the number of calculations
        with a line of that type and the sum of those lines.
        """
        # Summed in Python: SQLite SUM would go through float
        totals = self.session.execute(
            select(TaxCalculationRecord.total_amount, TaxCalculationRecord.total_tax).where(
                TaxCalculationRecord.org_id == org_id,
                TaxCalculationRecord.period_month == period.month,
                TaxCalculationRecord.period_year == period.year,
            )
        ).all()

        posting_rows = self.session.execute(
            select(TaxType.code, TaxLedgerPosting.calculation_id, TaxLedgerPosting.amount)
            .select_from(TaxLedgerPosting)
            .join(TaxLedger, TaxLedger.id == TaxLedgerPosting.ledger_id)
            .join(TaxType, TaxType.id == TaxLedgerPosting.tax_type_id)
            .where(
                TaxLedger.org_id == org_id,
                TaxLedger.period_month == period.month,
                TaxLedger.period_year == period.year,
            )
            .order_by(TaxType.code)
        ).all()

        operations: dict[str, set[UUID]] = defaultdict(set)
        sums: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for code, calculation_id, amount in posting_rows:
            operations[code].add(calculation_id)
            sums[code] += amount

        return TaxCalculationsSummary(
            period=period.code,
            total_operations=len(totals),
            total_amount=_money(sum((amount for amount, _ in totals), ZERO)),
            total_taxes=_money(sum((tax for _, tax in totals), ZERO)),
            tax_breakdown={
                code: TaxBreakdownItem(operations=len(operations[code]), total=_money(sums[code]))
                for code in sorted(sums)
            },
        )
