"""
CompanySettingService -- time-bounded fiscal settings of an organization.

Responsibility:
    Create and update the regime assignment of an organization.  Windows
    are half-open ``[effective_from, effective_to)``.

Architecture position:
    Kernel > Services -- imperative shell.  The FiscalEngine holds the
    org's settings lock around every call, so the overlap check and the
    write are not interleaved with another writer.

Invariants enforced:
    - No two settings of one organization overlap.
    - At most one setting of an organization is open ended (follows from
      the overlap rule: two open windows always overlap).
    - Settings are never deleted; a window is ended by setting
      ``effective_to``.

Failure modes:
    - ValidationError: empty org name, unknown UF, inverted window, unknown
      patch field.
    - NotFoundError: unknown regime or setting (or a setting of another
      organization).
    - OverlapError: the new or updated window overlaps an existing one.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.dtos import CompanyFiscalSettingInfo, CompanyFiscalSettingInput
from fiscal_kernel.domain.values import AuditActor, AuditOperation, normalize_uf
from fiscal_kernel.exceptions import NotFoundError, OverlapError, ValidationError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.catalog import TaxRegime
from fiscal_kernel.models.company_setting import CompanyFiscalSetting
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.base import BaseService

logger = get_logger("services.company_setting")

UPDATABLE_FIELDS = (
    "org_name",
    "tax_id",
    "state",
    "municipality_code",
    "regime_id",
    "effective_from",
    "effective_to",
)


def windows_overlap(
    a_from: date, a_to: date | None, b_from: date, b_to: date | None
) -> bool:
    """Half-open windows overlap iff each starts before the other ends."""
    a_before_b_ends = b_to is None or a_from < b_to
    b_before_a_ends = a_to is None or b_from < a_to
    return a_before_b_ends and b_before_a_ends


class CompanySettingService(BaseService[CompanyFiscalSetting]):
    """Writes to company fiscal settings."""

    def __init__(self, session: Session, auditor: AuditorService):
        super().__init__(session)
        self._auditor = auditor

    def _check_regime(self, regime_id: UUID) -> None:
        if self.session.get(TaxRegime, regime_id) is None:
            raise NotFoundError("TaxRegime", str(regime_id))

    def _check_window(
        self,
        org_id: UUID,
        effective_from: date,
        effective_to: date | None,
        exclude_id: UUID | None = None,
    ) -> None:
        if effective_to is not None and effective_to <= effective_from:
            raise ValidationError("must be after effective_from", field="effective_to")

        stmt = select(CompanyFiscalSetting).where(CompanyFiscalSetting.org_id == org_id)
        if exclude_id is not None:
            stmt = stmt.where(CompanyFiscalSetting.id != exclude_id)

        for other in self.session.execute(stmt).scalars():
            if windows_overlap(effective_from, effective_to, other.effective_from, other.effective_to):
                logger.warning(
                    "setting_overlap_rejected",
                    extra={
                        "existing_setting_id": str(other.id),
                        "effective_from": effective_from.isoformat(),
                    },
                )
                raise OverlapError(
                    str(other.id),
                    other.effective_from.isoformat(),
                    other.effective_to.isoformat() if other.effective_to else None,
                )

    def create(
        self,
        org_id: UUID,
        data: CompanyFiscalSettingInput,
        actor: AuditActor,
    ) -> CompanyFiscalSettingInfo:
        """
        Create a setting window for an organization.

        Raises:
            ValidationError, NotFoundError, OverlapError -- nothing is
            written.
        """
        org_name = (data.org_name or "").strip()
        if not org_name:
            raise ValidationError("is required", field="org_name")
        state = normalize_uf(data.state, "state")
        self._check_regime(data.regime_id)
        self._check_window(org_id, data.effective_from, data.effective_to)

        model = CompanyFiscalSetting(
            org_id=org_id,
            org_name=org_name,
            tax_id=data.tax_id,
            state=state,
            municipality_code=data.municipality_code,
            regime_id=data.regime_id,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
            created_by=actor.user_id,
        )
        self.session.add(model)
        self.session.flush()

        info = CompanyFiscalSettingInfo.from_model(model)
        self._auditor.record(
            CompanyFiscalSetting.__tablename__, model.id, AuditOperation.INSERT,
            None, info, actor, org_id=org_id,
        )
        logger.info(
            "company_setting_created",
            extra={
                "setting_id": str(model.id),
                "regime_id": str(model.regime_id),
                "effective_from": model.effective_from.isoformat(),
            },
        )
        return info

    def update(
        self,
        org_id: UUID,
        setting_id: UUID,
        patch: Mapping[str, Any],
        actor: AuditActor,
    ) -> CompanyFiscalSettingInfo:
        """
        Apply a partial update.  A changed window is re-checked against the
        organization's other settings.
        """
        self._check_patch(patch, UPDATABLE_FIELDS)

        model = self.session.get(CompanyFiscalSetting, setting_id)
        if model is None or model.org_id != org_id:
            raise NotFoundError("CompanyFiscalSetting", str(setting_id))

        patch = dict(patch)
        if "org_name" in patch:
            patch["org_name"] = (patch["org_name"] or "").strip()
            if not patch["org_name"]:
                raise ValidationError("is required", field="org_name")
        if "state" in patch:
            patch["state"] = normalize_uf(patch["state"], "state")
        if "regime_id" in patch:
            self._check_regime(patch["regime_id"])
        if "effective_from" in patch and patch["effective_from"] is None:
            raise ValidationError("is required", field="effective_from")
        if "effective_from" in patch or "effective_to" in patch:
            self._check_window(
                org_id,
                patch.get("effective_from", model.effective_from),
                patch.get("effective_to", model.effective_to),
                exclude_id=model.id,
            )

        old = CompanyFiscalSettingInfo.from_model(model)
        for key, value in patch.items():
            setattr(model, key, value)
        model.updated_by = actor.user_id
        self.session.flush()

        info = CompanyFiscalSettingInfo.from_model(model)
        self._auditor.record(
            CompanyFiscalSetting.__tablename__, model.id, AuditOperation.UPDATE,
            old, info, actor, org_id=org_id,
        )
        logger.info(
            "company_setting_updated",
            extra={"setting_id": str(model.id), "fields": sorted(patch)},
        )
        return info
