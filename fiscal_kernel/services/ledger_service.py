"""
LedgerService -- posting calculations into period ledgers; close and reopen.

Responsibility:
    ``post`` persists a calculation result: one TaxCalculationRecord, one
    TaxLedgerPosting per tax line, and the updated totals of the ledger of
    each line's (tax type, regime, period).  ``close`` and ``reopen`` flip
    every ledger of an org+period at once.

Architecture position:
    Kernel > Services -- imperative shell.  The FiscalEngine holds the
    ``(org_id, month, year)`` period lock around every call and owns the
    transaction, so a post and a close of the same period never interleave.

Invariants enforced:
    - A period with any FECHADO ledger accepts no postings.  Checked before
      anything is written; a rejected post leaves every total unchanged.
    - balance_due == total_debits - total_credits; venda and
      prestacao_servico lines are debits, compra lines are credits.
    - Ledger rows are read with ``SELECT ... FOR UPDATE`` and their
      ``version`` is bumped on every change, so concurrent posts cannot
      lose an update.
    - close is all-or-nothing over every ledger of the period.
    - Every successful call writes exactly one audit entry, after the
      mutation, in the same transaction.

Failure modes:
    - LedgerClosedError: post into, or close of, a period with a FECHADO
      ledger.
    - NotFoundError: close of a period with no ledgers; post of an unknown
      rule.
    - ValidationError: result of another organization; a result with two
      lines of one tax type, or a line whose rule belongs to another tax
      type, regime or operation; reopen of a period with nothing closed.

Audit relevance:
    Posts are audited as an INSERT on ``tax_calculations``; close and
    reopen as an UPDATE on ``tax_ledgers`` keyed by the period code, with
    the per-ledger status before and after.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import (
    TaxCalculationRecordInfo,
    TaxCalculationResult,
    TaxLedgerInfo,
)
from fiscal_kernel.domain.values import (
    AuditActor,
    AuditOperation,
    LedgerStatus,
    Operation,
    PostingSide,
    TaxPeriod,
)
from fiscal_kernel.exceptions import LedgerClosedError, NotFoundError, ValidationError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.calculation import TaxCalculationRecord
from fiscal_kernel.models.catalog import TaxRegime
from fiscal_kernel.models.ledger import TaxLedger, TaxLedgerPosting
from fiscal_kernel.models.tax_rule import TaxRule
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.base import BaseService

logger = get_logger("services.ledger")

ZERO = Decimal("0")


def _side_of(result: TaxCalculationResult) -> PostingSide:
    return PostingSide.DEBIT if result.operation.is_debit else PostingSide.CREDIT


def _status_map(ledgers: list[TaxLedger]) -> dict[str, Any]:
    return {str(l.id): LedgerStatus(l.status).value for l in ledgers}


class LedgerService(BaseService[TaxLedger]):
    """Ledger writes: post, close, reopen."""

    def __init__(self, session: Session, auditor: AuditorService, clock: Clock | None = None):
        super().__init__(session)
        self._auditor = auditor
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Locked reads
    # -------------------------------------------------------------------------

    def _period_ledgers(self, org_id: UUID, period: TaxPeriod) -> list[TaxLedger]:
        """All ledgers of an org+period, row-locked, in id order."""
        return list(
            self.session.execute(
                select(TaxLedger)
                .where(
                    TaxLedger.org_id == org_id,
                    TaxLedger.period_month == period.month,
                    TaxLedger.period_year == period.year,
                )
                .order_by(TaxLedger.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def _get_or_create_ledger(
        self,
        existing: dict[tuple[UUID, UUID], TaxLedger],
        org_id: UUID,
        tax_type_id: UUID,
        regime_id: UUID,
        period: TaxPeriod,
        actor: AuditActor,
    ) -> TaxLedger:
        ledger = existing.get((tax_type_id, regime_id))
        if ledger is None:
            # Created lazily on first posting to the period
            ledger = TaxLedger(
                org_id=org_id,
                tax_type_id=tax_type_id,
                regime_id=regime_id,
                period_month=period.month,
                period_year=period.year,
                total_debits=ZERO,
                total_credits=ZERO,
                balance_due=ZERO,
                status=LedgerStatus.ABERTO,
                version=1,
                created_by=actor.user_id,
            )
            self.session.add(ledger)
            existing[(tax_type_id, regime_id)] = ledger
            logger.info(
                "ledger_created",
                extra={"tax_type_id": str(tax_type_id), "period": period.code},
            )
        return ledger

    # -------------------------------------------------------------------------
    # Post
    # -------------------------------------------------------------------------

    def _check_lines(self, org_id: UUID, result: TaxCalculationResult) -> None:
        """One line per tax type, each produced by a rule of that tax type, regime and operation."""
        seen: set[UUID] = set()
        for line in result.taxes:
            if line.tax_type_id in seen:
                raise ValidationError(
                    f"tax type {line.tax_type_code} appears in more than one line",
                    field="taxes",
                )
            seen.add(line.tax_type_id)

        rule_ids = {line.rule_id for line in result.taxes}
        if not rule_ids:
            return
        rules = {
            rule.id: rule
            for rule in self.session.execute(
                select(TaxRule).where(TaxRule.id.in_(rule_ids), TaxRule.org_id == org_id)
            ).scalars()
        }
        missing = sorted(str(r) for r in rule_ids - set(rules))
        if missing:
            raise NotFoundError("TaxRule", missing[0])

        for line in result.taxes:
            rule = rules[line.rule_id]
            if (
                rule.tax_type_id != line.tax_type_id
                or rule.regime_id != result.regime_id
                or Operation(rule.operation) != result.operation
            ):
                raise ValidationError(
                    f"rule {line.rule_id} does not apply to the {line.tax_type_code} line "
                    f"of a {result.operation.value} under regime {result.regime_id}",
                    field="taxes",
                )

    def post(
        self,
        org_id: UUID,
        result: TaxCalculationResult,
        period: TaxPeriod,
        actor: AuditActor,
    ) -> TaxCalculationRecordInfo:
        """
        Persist a calculation result into the ledgers of ``period``.

        Preconditions:
            - The caller holds the period lock of (org_id, period).

        Postconditions:
            - Each line's amount is added to its ledger's debits (venda,
              prestacao_servico) or credits (compra); balance_due and
              version are updated.
            - On any error nothing is written.

        Raises:
            LedgerClosedError: any ledger of the period is FECHADO.
            ValidationError: the lines do not match their rules.
        """
        if result.org_id != org_id:
            raise ValidationError("result belongs to another organization", field="org_id")

        if self.session.get(TaxRegime, result.regime_id) is None:
            raise NotFoundError("TaxRegime", str(result.regime_id))

        self._check_lines(org_id, result)

        ledgers = self._period_ledgers(org_id, period)
        for ledger in ledgers:
            if ledger.is_closed:
                type_code = next(
                    (l.tax_type_code for l in result.taxes if l.tax_type_id == ledger.tax_type_id),
                    None,
                )
                logger.warning(
                    "post_rejected_period_closed",
                    extra={
                        "period": period.code,
                        "ledger_id": str(ledger.id),
                        "tax_type_code": type_code,
                    },
                )
                raise LedgerClosedError(period.code, LedgerStatus.FECHADO.value, type_code)

        side = _side_of(result)
        existing = {(l.tax_type_id, l.regime_id): l for l in ledgers}

        record = TaxCalculationRecord(
            org_id=org_id,
            period_month=period.month,
            period_year=period.year,
            regime_id=result.regime_id,
            operation=result.operation,
            classification_id=result.classification_id,
            origin_uf=result.origin_uf,
            destination_uf=result.destination_uf,
            effective_date=result.effective_date,
            total_amount=result.total_amount,
            total_tax=result.total_tax,
            net_amount=result.net_amount,
            result=result.to_dict(),
            notes=result.notes,
            calculated_at=result.calculated_at,
            created_by=actor.user_id,
        )
        self.session.add(record)

        # Lines in tax type code order so ledger rows are touched in a stable order
        lines = sorted(result.taxes, key=lambda l: (l.tax_type_code, str(l.tax_type_id)))
        touched: list[TaxLedger] = []
        for line in lines:
            ledger = self._get_or_create_ledger(
                existing, org_id, line.tax_type_id, result.regime_id, period, actor,
            )
            touched.append(ledger)
        self.session.flush()

        postings = []
        for line, ledger in zip(lines, touched):
            postings.append(
                TaxLedgerPosting(
                    ledger_id=ledger.id,
                    calculation_id=record.id,
                    rule_id=line.rule_id,
                    tax_type_id=line.tax_type_id,
                    side=side,
                    amount=line.amount,
                )
            )
            ledger.apply(side, line.amount)
            ledger.updated_by = actor.user_id
        self.session.add_all(postings)
        self.session.flush()

        info = TaxCalculationRecordInfo.from_model(record)
        self._auditor.record(
            TaxCalculationRecord.__tablename__, record.id, AuditOperation.INSERT,
            None,
            {
                "period": period.code,
                "calculation": record.result,
                "postings": [
                    {
                        "ledger_id": p.ledger_id,
                        "tax_type_id": p.tax_type_id,
                        "rule_id": p.rule_id,
                        "side": p.side,
                        "amount": p.amount,
                    }
                    for p in postings
                ],
            },
            actor,
            org_id=org_id,
        )
        logger.info(
            "ledger_posted",
            extra={
                "calculation_id": str(record.id),
                "period": period.code,
                "side": side.value,
                "line_count": len(lines),
                "total_tax": str(result.total_tax),
            },
        )
        return info

    # -------------------------------------------------------------------------
    # Close / reopen
    # -------------------------------------------------------------------------

    def close(self, org_id: UUID, period: TaxPeriod, actor: AuditActor) -> list[TaxLedgerInfo]:
        """
        Close every ledger of the period, all-or-nothing.

        Raises:
            NotFoundError: the period has no ledgers.
            LedgerClosedError: any ledger of the period is already FECHADO;
                nothing changes.
        """
        ledgers = self._period_ledgers(org_id, period)
        if not ledgers:
            raise NotFoundError("TaxLedger", period.code)

        closed = [l for l in ledgers if l.is_closed]
        if closed:
            logger.warning(
                "period_close_rejected",
                extra={"period": period.code, "closed_ledgers": len(closed)},
            )
            raise LedgerClosedError(period.code, LedgerStatus.FECHADO.value)

        before = _status_map(ledgers)
        now = self._clock.now()
        for ledger in ledgers:
            ledger.status = LedgerStatus.FECHADO
            ledger.closed_at = now
            ledger.closed_by = actor.user_id
            ledger.version = ledger.version + 1
            ledger.updated_by = actor.user_id
        self.session.flush()

        self._auditor.record(
            TaxLedger.__tablename__, period.code, AuditOperation.UPDATE,
            {"action": "close", "ledgers": before},
            {"action": "close", "ledgers": _status_map(ledgers), "closed_at": now},
            actor,
            org_id=org_id,
        )
        logger.info(
            "period_closed",
            extra={"period": period.code, "ledger_count": len(ledgers)},
        )
        return [TaxLedgerInfo.from_model(l) for l in ledgers]

    def reopen(self, org_id: UUID, period: TaxPeriod, actor: AuditActor) -> list[TaxLedgerInfo]:
        """
        Reopen every FECHADO ledger of the period.

        Raises:
            ValidationError: no ledger of the period is FECHADO.
        """
        ledgers = self._period_ledgers(org_id, period)
        closed = [l for l in ledgers if l.is_closed]
        if not closed:
            raise ValidationError(f"period {period.code} has no closed ledgers", field="period")

        before = _status_map(ledgers)
        for ledger in closed:
            ledger.status = LedgerStatus.ABERTO
            ledger.closed_at = None
            ledger.closed_by = None
            ledger.version = ledger.version + 1
            ledger.updated_by = actor.user_id
        self.session.flush()

        self._auditor.record(
            TaxLedger.__tablename__, period.code, AuditOperation.UPDATE,
            {"action": "reopen", "ledgers": before},
            {"action": "reopen", "ledgers": _status_map(ledgers)},
            actor,
            org_id=org_id,
        )
        logger.warning(
            "period_reopened",
            extra={"period": period.code, "ledger_count": len(closed)},
        )
        return [TaxLedgerInfo.from_model(l) for l in closed]
