"""
CatalogService -- writes to the global fiscal reference data.

Responsibility:
    Create and update tax regimes, tax types, fiscal classifications and
    obligation kinds, and seed the catalog from configuration.

Architecture position:
    Kernel > Services -- imperative shell.  Reads go through
    ``fiscal_kernel.selectors.catalog_selector``.

Invariants enforced:
    - Codes are unique (per classification type for classifications).
    - Regimes and tax types are deleted only while no rule, setting, ledger
      or calculation references them.  Classifications and obligation kinds
      are never deleted.
    - One audit entry per call, with ``org_id = NULL``.

Failure modes:
    - ValidationError: empty code/name, unknown enum value, duplicate code,
      unknown patch field.
    - NotFoundError: update or delete of an unknown id.
    - CatalogEntryReferencedError: delete of a regime or tax type in use.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.dtos import (
    FiscalClassificationInfo,
    ObligationKindInfo,
    TaxRegimeInfo,
    TaxTypeInfo,
)
from fiscal_kernel.domain.values import (
    AuditActor,
    AuditOperation,
    ClassificationType,
    Jurisdiction,
    Periodicity,
)
from fiscal_kernel.exceptions import CatalogEntryReferencedError, NotFoundError, ValidationError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.calculation import TaxCalculationRecord
from fiscal_kernel.models.catalog import (
    FiscalClassification,
    ObligationKind,
    TaxRegime,
    TaxType,
)
from fiscal_kernel.models.company_setting import CompanyFiscalSetting
from fiscal_kernel.models.ledger import TaxLedger
from fiscal_kernel.models.tax_rule import TaxRule
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.base import BaseService

logger = get_logger("services.catalog")

_REGIME_FIELDS = ("code", "name", "description", "effective_from", "effective_to")
_TAX_TYPE_FIELDS = ("code", "name", "jurisdiction", "description")
_CLASSIFICATION_FIELDS = ("classification_type", "code", "description", "cest")
_OBLIGATION_KIND_FIELDS = ("code", "name", "description", "periodicity")


def _required_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("is required", field=field)
    return value.strip()


def _enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"must be one of: {allowed}", field=field)


def _check_window(effective_from: date | None, effective_to: date | None) -> None:
    if effective_from and effective_to and effective_to < effective_from:
        raise ValidationError("must not be before effective_from", field="effective_to")


class CatalogService(BaseService[TaxRegime]):
    """
    Reference data writes.

    Non-goals:
        - Does NOT delete catalog rows.
    """

    def __init__(self, session: Session, auditor: AuditorService):
        super().__init__(session)
        self._auditor = auditor

    # -------------------------------------------------------------------------
    # Shared plumbing
    # -------------------------------------------------------------------------

    def _ensure_unique(self, model_cls, exclude_id: UUID | None = None, **keys) -> None:
        stmt = select(model_cls.id).filter_by(**keys)
        existing = self.session.execute(stmt).scalars().first()
        if existing is not None and existing != exclude_id:
            raise ValidationError(
                f"{model_cls.__name__} with {keys} already exists",
                field="code",
            )

    def _load(self, model_cls, entity_id: UUID):
        model = self.session.get(model_cls, entity_id)
        if model is None:
            raise NotFoundError(model_cls.__name__, str(entity_id))
        return model

    def _insert(self, model, info_cls, actor: AuditActor, audit: bool = True):
        model.created_by = actor.user_id
        self.session.add(model)
        self.session.flush()
        info = info_cls.from_model(model)
        if audit:
            self._auditor.record(
                model.__tablename__, model.id, AuditOperation.INSERT,
                None, info, actor,
            )
        logger.info(
            "catalog_entry_created",
            extra={"table_name": model.__tablename__, "code": model.code},
        )
        return info

    def _update(self, model, info_cls, patch: Mapping[str, Any], actor: AuditActor):
        old = info_cls.from_model(model)
        for key, value in patch.items():
            setattr(model, key, value)
        model.updated_by = actor.user_id
        self.session.flush()
        new = info_cls.from_model(model)
        self._auditor.record(
            model.__tablename__, model.id, AuditOperation.UPDATE,
            old, new, actor,
        )
        logger.info(
            "catalog_entry_updated",
            extra={"table_name": model.__tablename__, "fields": sorted(patch)},
        )
        return new

    def _delete(self, model, info_cls, references: Mapping[str, Any], actor: AuditActor) -> None:
        """
        Delete a catalog row that nothing references.

        Raises:
            CatalogEntryReferencedError: some table still points at the row;
                nothing is deleted.
        """
        used = {}
        for table, column in references.items():
            count = self.session.execute(
                select(func.count()).select_from(column.class_).where(column == model.id)
            ).scalar_one()
            if count:
                used[table] = count
        if used:
            logger.warning(
                "referenced_catalog_delete_rejected",
                extra={"table_name": model.__tablename__, "code": model.code, "references": used},
            )
            raise CatalogEntryReferencedError(type(model).__name__, str(model.id), used)

        old = info_cls.from_model(model)
        entity_id = model.id
        self.session.delete(model)
        self.session.flush()
        self._auditor.record(
            model.__tablename__, entity_id, AuditOperation.DELETE,
            old, {"deleted": True, "id": entity_id}, actor,
        )
        logger.info(
            "catalog_entry_deleted",
            extra={"table_name": model.__tablename__, "code": old.code},
        )

    # -------------------------------------------------------------------------
    # Regimes
    # -------------------------------------------------------------------------

    def _regime(self, code, name, description=None, effective_from=None, effective_to=None) -> TaxRegime:
        _check_window(effective_from, effective_to)
        return TaxRegime(
            code=_required_text(code, "code"),
            name=_required_text(name, "name"),
            description=description,
            effective_from=effective_from,
            effective_to=effective_to,
        )

    def create_regime(
        self,
        code: str,
        name: str,
        actor: AuditActor,
        description: str | None = None,
        effective_from: date | None = None,
        effective_to: date | None = None,
    ) -> TaxRegimeInfo:
        model = self._regime(code, name, description, effective_from, effective_to)
        self._ensure_unique(TaxRegime, code=model.code)
        return self._insert(model, TaxRegimeInfo, actor)

    def update_regime(self, regime_id: UUID, patch: Mapping[str, Any], actor: AuditActor) -> TaxRegimeInfo:
        self._check_patch(patch, _REGIME_FIELDS)
        model = self._load(TaxRegime, regime_id)
        patch = dict(patch)
        for key in ("code", "name"):
            if key in patch:
                patch[key] = _required_text(patch[key], key)
        if "code" in patch:
            self._ensure_unique(TaxRegime, exclude_id=model.id, code=patch["code"])
        _check_window(
            patch.get("effective_from", model.effective_from),
            patch.get("effective_to", model.effective_to),
        )
        return self._update(model, TaxRegimeInfo, patch, actor)

    def delete_regime(self, regime_id: UUID, actor: AuditActor) -> None:
        model = self._load(TaxRegime, regime_id)
        self._delete(
            model,
            TaxRegimeInfo,
            {
                TaxRule.__tablename__: TaxRule.regime_id,
                CompanyFiscalSetting.__tablename__: CompanyFiscalSetting.regime_id,
                TaxLedger.__tablename__: TaxLedger.regime_id,
                TaxCalculationRecord.__tablename__: TaxCalculationRecord.regime_id,
            },
            actor,
        )

    # -------------------------------------------------------------------------
    # Tax types
    # -------------------------------------------------------------------------

    def _tax_type(self, code, name, jurisdiction, description=None) -> TaxType:
        return TaxType(
            code=_required_text(code, "code").upper(),
            name=_required_text(name, "name"),
            jurisdiction=_enum(Jurisdiction, jurisdiction, "jurisdiction"),
            description=description,
        )

    def create_tax_type(
        self,
        code: str,
        name: str,
        jurisdiction: Jurisdiction | str,
        actor: AuditActor,
        description: str | None = None,
    ) -> TaxTypeInfo:
        model = self._tax_type(code, name, jurisdiction, description)
        self._ensure_unique(TaxType, code=model.code)
        return self._insert(model, TaxTypeInfo, actor)

    def update_tax_type(self, tax_type_id: UUID, patch: Mapping[str, Any], actor: AuditActor) -> TaxTypeInfo:
        self._check_patch(patch, _TAX_TYPE_FIELDS)
        model = self._load(TaxType, tax_type_id)
        patch = dict(patch)
        if "code" in patch:
            patch["code"] = _required_text(patch["code"], "code").upper()
            self._ensure_unique(TaxType, exclude_id=model.id, code=patch["code"])
        if "name" in patch:
            patch["name"] = _required_text(patch["name"], "name")
        if "jurisdiction" in patch:
            patch["jurisdiction"] = _enum(Jurisdiction, patch["jurisdiction"], "jurisdiction")
        return self._update(model, TaxTypeInfo, patch, actor)

    def delete_tax_type(self, tax_type_id: UUID, actor: AuditActor) -> None:
        model = self._load(TaxType, tax_type_id)
        self._delete(
            model,
            TaxTypeInfo,
            {
                TaxRule.__tablename__: TaxRule.tax_type_id,
                TaxLedger.__tablename__: TaxLedger.tax_type_id,
            },
            actor,
        )

    # -------------------------------------------------------------------------
    # Classifications
    # -------------------------------------------------------------------------

    def create_classification(
        self,
        classification_type: ClassificationType | str,
        code: str,
        description: str,
        actor: AuditActor,
        cest: str | None = None,
    ) -> FiscalClassificationInfo:
        model = FiscalClassification(
            classification_type=_enum(ClassificationType, classification_type, "classification_type"),
            code=_required_text(code, "code"),
            description=_required_text(description, "description"),
            cest=cest,
        )
        self._ensure_unique(
            FiscalClassification,
            classification_type=model.classification_type.value,
            code=model.code,
        )
        return self._insert(model, FiscalClassificationInfo, actor)

    def update_classification(
        self, classification_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> FiscalClassificationInfo:
        self._check_patch(patch, _CLASSIFICATION_FIELDS)
        model = self._load(FiscalClassification, classification_id)
        patch = dict(patch)
        if "classification_type" in patch:
            patch["classification_type"] = _enum(
                ClassificationType, patch["classification_type"], "classification_type"
            )
        for key in ("code", "description"):
            if key in patch:
                patch[key] = _required_text(patch[key], key)
        if "code" in patch or "classification_type" in patch:
            self._ensure_unique(
                FiscalClassification,
                exclude_id=model.id,
                classification_type=ClassificationType(
                    patch.get("classification_type", model.classification_type)
                ).value,
                code=patch.get("code", model.code),
            )
        return self._update(model, FiscalClassificationInfo, patch, actor)

    # -------------------------------------------------------------------------
    # Obligation kinds
    # -------------------------------------------------------------------------

    def _obligation_kind(self, code, name, periodicity, description=None) -> ObligationKind:
        return ObligationKind(
            code=_required_text(code, "code").upper(),
            name=_required_text(name, "name"),
            periodicity=_enum(Periodicity, periodicity, "periodicity"),
            description=description,
        )

    def create_obligation_kind(
        self,
        code: str,
        name: str,
        periodicity: Periodicity | str,
        actor: AuditActor,
        description: str | None = None,
    ) -> ObligationKindInfo:
        model = self._obligation_kind(code, name, periodicity, description)
        self._ensure_unique(ObligationKind, code=model.code)
        return self._insert(model, ObligationKindInfo, actor)

    def update_obligation_kind(
        self, kind_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> ObligationKindInfo:
        self._check_patch(patch, _OBLIGATION_KIND_FIELDS)
        model = self._load(ObligationKind, kind_id)
        patch = dict(patch)
        if "code" in patch:
            patch["code"] = _required_text(patch["code"], "code").upper()
            self._ensure_unique(ObligationKind, exclude_id=model.id, code=patch["code"])
        if "name" in patch:
            patch["name"] = _required_text(patch["name"], "name")
        if "periodicity" in patch:
            patch["periodicity"] = _enum(Periodicity, patch["periodicity"], "periodicity")
        return self._update(model, ObligationKindInfo, patch, actor)

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def seed(
        self,
        regimes: Iterable[Mapping[str, Any]],
        tax_types: Iterable[Mapping[str, Any]],
        obligation_kinds: Iterable[Mapping[str, Any]],
        actor: AuditActor,
    ) -> dict[str, list[str]]:
        """
        Insert catalog entries whose code does not exist yet.

        Existing entries are left untouched, so seeding is repeatable.  All
        inserts of one call share a single audit entry.

        Returns:
            Codes created, per table.
        """
        created: dict[str, list[str]] = {"tax_regimes": [], "tax_types": [], "obligation_kinds": []}

        plan = (
            ("tax_regimes", TaxRegime, TaxRegimeInfo, self._regime, regimes),
            ("tax_types", TaxType, TaxTypeInfo, self._tax_type, tax_types),
            ("obligation_kinds", ObligationKind, ObligationKindInfo, self._obligation_kind, obligation_kinds),
        )
        for table, model_cls, info_cls, build, entries in plan:
            for entry in entries:
                model = build(**entry)
                exists = self.session.execute(
                    select(model_cls.id).where(model_cls.code == model.code)
                ).scalars().first()
                if exists is not None:
                    continue
                self._insert(model, info_cls, actor, audit=False)
                created[table].append(model.code)

        if any(created.values()):
            self._auditor.record(
                "reference_catalog", "seed", AuditOperation.INSERT,
                None, created, actor,
            )
        logger.info(
            "catalog_seeded",
            extra={table: len(codes) for table, codes in created.items()},
        )
        return created
