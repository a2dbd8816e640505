"""
ObligationService -- accessory obligation tracking.

Responsibility:
    Idempotent creation of an obligation per (org, kind, period) and its
    status lifecycle.  The engine only tracks status; the obligation files
    themselves are produced elsewhere.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - One obligation per (org, kind, month, year); a repeated create
      returns the existing obligation and writes nothing.
    - Status moves only along VALID_TRANSITIONS (models/obligation.py).
    - RASCUNHO -> GERADO requires every ledger of the covered months to be
      FECHADO, and at least one ledger to exist.  Covered months: the month
      itself (mensal), the quarter ending in it (trimestral), the whole year
      (anual).
    - ENVIADO requires a protocol.
    - Periodicity: trimestral kinds only for months 3/6/9/12, anual kinds
      only for month 12.

Failure modes:
    - ValidationError: periodicity mismatch, unknown status.
    - InvalidTransitionError: transition not allowed, ledger gate not met,
      missing protocol.
    - NotFoundError: unknown kind or obligation.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import ObligationInfo
from fiscal_kernel.domain.values import (
    AuditActor,
    AuditOperation,
    LedgerStatus,
    ObligationStatus,
    Periodicity,
    TaxPeriod,
)
from fiscal_kernel.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.catalog import ObligationKind
from fiscal_kernel.models.ledger import TaxLedger
from fiscal_kernel.models.obligation import Obligation
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.base import BaseService

logger = get_logger("services.obligation")


def covered_months(periodicity: Periodicity, period: TaxPeriod) -> list[int]:
    """Months of ``period.year`` an obligation of this periodicity reports on."""
    if periodicity is Periodicity.TRIMESTRAL:
        return list(range(period.month - 2, period.month + 1))
    if periodicity is Periodicity.ANUAL:
        return list(range(1, 13))
    return [period.month]


class ObligationService(BaseService[Obligation]):
    """Writes to obligations."""

    def __init__(self, session: Session, auditor: AuditorService, clock: Clock | None = None):
        super().__init__(session)
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def _find(self, org_id: UUID, kind_id: UUID, period: TaxPeriod) -> Obligation | None:
        return self.session.execute(
            select(Obligation).where(
                Obligation.org_id == org_id,
                Obligation.obligation_kind_id == kind_id,
                Obligation.period_month == period.month,
                Obligation.period_year == period.year,
            )
        ).scalar_one_or_none()

    def create(
        self,
        org_id: UUID,
        obligation_kind_id: UUID,
        period: TaxPeriod,
        actor: AuditActor,
    ) -> tuple[ObligationInfo, bool]:
        """
        Create the obligation of a kind for a period, or return the existing
        one.

        Returns:
            (obligation, created).  ``created`` is False when it already
            existed; no audit entry is written in that case.
        """
        kind = self.session.get(ObligationKind, obligation_kind_id)
        if kind is None:
            raise NotFoundError("ObligationKind", str(obligation_kind_id))
        periodicity = Periodicity(kind.periodicity)
        if not periodicity.allows_month(period.month):
            raise ValidationError(
                f"{periodicity.value} obligation {kind.code} cannot be filed for month {period.month}",
                field="period_month",
            )

        existing = self._find(org_id, obligation_kind_id, period)
        if existing is not None:
            logger.info(
                "obligation_exists",
                extra={"obligation_id": str(existing.id), "period": period.code},
            )
            return ObligationInfo.from_model(existing), False

        # Another transaction may insert the same key concurrently
        savepoint = self.session.begin_nested()
        try:
            obligation = Obligation(
                org_id=org_id,
                obligation_kind_id=obligation_kind_id,
                period_month=period.month,
                period_year=period.year,
                status=ObligationStatus.RASCUNHO,
                created_by=actor.user_id,
            )
            self.session.add(obligation)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find(org_id, obligation_kind_id, period)
            if existing is None:
                raise
            logger.info(
                "obligation_create_race_resolved",
                extra={"obligation_id": str(existing.id), "period": period.code},
            )
            return ObligationInfo.from_model(existing), False

        info = ObligationInfo.from_model(obligation)
        self._auditor.record(
            Obligation.__tablename__, obligation.id, AuditOperation.INSERT,
            None, info, actor, org_id=org_id,
        )
        logger.info(
            "obligation_created",
            extra={
                "obligation_id": str(obligation.id),
                "kind_code": kind.code,
                "period": period.code,
            },
        )
        return info, True

    def _ledger_gate(self, obligation: Obligation, target: ObligationStatus) -> None:
        kind = self.session.get(ObligationKind, obligation.obligation_kind_id)
        period = TaxPeriod(obligation.period_year, obligation.period_month)
        months = covered_months(Periodicity(kind.periodicity), period)

        statuses = self.session.execute(
            select(TaxLedger.status).where(
                TaxLedger.org_id == obligation.org_id,
                TaxLedger.period_year == period.year,
                TaxLedger.period_month.in_(months),
            )
        ).scalars().all()

        if not statuses:
            reason = f"no ledgers for period {period.code}"
        elif any(LedgerStatus(s) is LedgerStatus.ABERTO for s in statuses):
            reason = f"ledgers of period {period.code} are still open"
        else:
            return
        logger.warning(
            "obligation_gate_blocked",
            extra={"obligation_id": str(obligation.id), "reason": reason},
        )
        raise InvalidTransitionError(
            str(obligation.id), ObligationStatus(obligation.status).value, target.value, reason,
        )

    def advance(
        self,
        org_id: UUID,
        obligation_id: UUID,
        target: ObligationStatus | str,
        actor: AuditActor,
        protocol: str | None = None,
        message: str | None = None,
        generated_file_path: str | None = None,
    ) -> ObligationInfo:
        """
        Move an obligation to ``target``.

        ``started_at`` is stamped when the obligation first leaves RASCUNHO;
        ``finished_at`` when it reaches ENVIADO or ERRO, and cleared again
        on the ERRO -> RASCUNHO retry.

        Raises:
            InvalidTransitionError: not in VALID_TRANSITIONS, the ledger
                gate is not met, or ENVIADO without a protocol.
        """
        try:
            target = ObligationStatus(target)
        except ValueError:
            raise ValidationError(f"unknown obligation status '{target}'", field="status")

        obligation = self.session.execute(
            select(Obligation).where(Obligation.id == obligation_id).with_for_update()
        ).scalar_one_or_none()
        if obligation is None or obligation.org_id != org_id:
            raise NotFoundError("Obligation", str(obligation_id))

        current = ObligationStatus(obligation.status)
        if not obligation.can_transition_to(target):
            logger.warning(
                "obligation_transition_rejected",
                extra={
                    "obligation_id": str(obligation.id),
                    "from_status": current.value,
                    "to_status": target.value,
                },
            )
            raise InvalidTransitionError(str(obligation.id), current.value, target.value)

        if current is ObligationStatus.RASCUNHO and target is ObligationStatus.GERADO:
            self._ledger_gate(obligation, target)

        if target is ObligationStatus.ENVIADO and not (protocol or obligation.protocol):
            raise InvalidTransitionError(
                str(obligation.id), current.value, target.value, "protocol is required",
            )

        old = ObligationInfo.from_model(obligation)
        now = self._clock.now()

        obligation.status = target
        if protocol is not None:
            obligation.protocol = protocol
        if message is not None:
            obligation.message = message
        if generated_file_path is not None:
            obligation.generated_file_path = generated_file_path
        if current is ObligationStatus.RASCUNHO and obligation.started_at is None:
            obligation.started_at = now
        if target in (ObligationStatus.ENVIADO, ObligationStatus.ERRO):
            obligation.finished_at = now
        if target is ObligationStatus.RASCUNHO:
            obligation.started_at = None
            obligation.finished_at = None
        obligation.updated_by = actor.user_id
        self.session.flush()

        info = ObligationInfo.from_model(obligation)
        self._auditor.record(
            Obligation.__tablename__, obligation.id, AuditOperation.UPDATE,
            old, info, actor, org_id=org_id,
        )
        logger.info(
            "obligation_status_changed",
            extra={
                "obligation_id": str(obligation.id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return info
