"""
RuleService -- lifecycle of tax rules.

Responsibility:
    Create, update, deactivate and delete tax rules of an organization.
    Validates the calc-method-dependent fields of every write through
    ``fiscal_kernel.domain.rules.build_recipe``.

Architecture position:
    Kernel > Services -- imperative shell.  Reads (list, resolution
    candidates) live in ``fiscal_kernel.selectors.rule_selector``.

Invariants enforced:
    - percentual needs a rate, valor_fixo needs a fixed amount, a formula
      must parse under the restricted grammar.
    - A rule referenced by ledger postings is never physically deleted and
      only ``is_active`` / ``valid_to`` may change on it.  The ORM
      listeners in db/immutability.py enforce the same rule for writes
      that bypass this service.
    - valid_to, when set, is not before valid_from (window is inclusive).

Failure modes:
    - ValidationError: malformed input, unknown patch field.
    - RuleReferencedError: delete, or calculation change, of a referenced
      rule.
    - NotFoundError: unknown rule, regime, tax type or classification.

Audit relevance:
    Every successful call writes exactly one audit entry.  Deletions record
    the removed row in ``old_values``.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import TaxRuleInfo, TaxRuleInput
from fiscal_kernel.domain.rules import CalcRecipe, build_recipe
from fiscal_kernel.domain.values import (
    AuditActor,
    AuditOperation,
    Operation,
    normalize_uf,
    to_decimal,
)
from fiscal_kernel.exceptions import NotFoundError, RuleReferencedError, ValidationError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.catalog import FiscalClassification, TaxRegime, TaxType
from fiscal_kernel.models.ledger import TaxLedgerPosting
from fiscal_kernel.models.tax_rule import CALCULATION_FIELDS, TaxRule
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.base import BaseService

logger = get_logger("services.rule")

UPDATABLE_FIELDS = CALCULATION_FIELDS + ("is_active", "valid_to")

# Fields a referenced rule may still change
LIFECYCLE_FIELDS = frozenset({"is_active", "valid_to"})

_DECIMAL_FIELDS = ("rate", "base_reduction", "fixed_amount")


def _operation(value: Any) -> Operation:
    try:
        return Operation(value)
    except ValueError:
        raise ValidationError(f"unknown operation '{value}'", field="operation")


class RuleService(BaseService[TaxRule]):
    """Writes to tax rules."""

    def __init__(self, session: Session, auditor: AuditorService, clock: Clock | None = None):
        super().__init__(session)
        self._auditor = auditor
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def posting_count(self, rule_id: UUID) -> int:
        return self.session.execute(
            select(func.count(TaxLedgerPosting.id)).where(TaxLedgerPosting.rule_id == rule_id)
        ).scalar_one()

    def _load(self, org_id: UUID, rule_id: UUID) -> TaxRule:
        rule = self.session.get(TaxRule, rule_id)
        if rule is None or rule.org_id != org_id:
            raise NotFoundError("TaxRule", str(rule_id))
        return rule

    def _check_references(self, values: Mapping[str, Any]) -> None:
        if "regime_id" in values and self.session.get(TaxRegime, values["regime_id"]) is None:
            raise NotFoundError("TaxRegime", str(values["regime_id"]))
        if "tax_type_id" in values and self.session.get(TaxType, values["tax_type_id"]) is None:
            raise NotFoundError("TaxType", str(values["tax_type_id"]))
        classification_id = values.get("classification_id")
        if classification_id is not None and self.session.get(FiscalClassification, classification_id) is None:
            raise NotFoundError("FiscalClassification", str(classification_id))

    @staticmethod
    def _normalize(values: Mapping[str, Any]) -> dict[str, Any]:
        """Coerce raw field values to their stored types."""
        out = dict(values)
        if "operation" in out:
            out["operation"] = _operation(out["operation"])
        for key in ("origin_uf", "destination_uf"):
            if key in out:
                out[key] = normalize_uf(out[key], key)
        for key in _DECIMAL_FIELDS:
            if out.get(key) is not None:
                out[key] = to_decimal(out[key], key)
        if "formula" in out and out["formula"] is not None:
            out["formula"] = out["formula"].strip() or None
        if "priority" in out:
            if isinstance(out["priority"], bool) or not isinstance(out["priority"], int):
                raise ValidationError("must be an integer", field="priority")
        if "valid_from" in out and out["valid_from"] is None:
            raise ValidationError("is required", field="valid_from")
        if "is_active" in out and not isinstance(out["is_active"], bool):
            raise ValidationError("must be a boolean", field="is_active")
        return out

    @staticmethod
    def _validate(values: Mapping[str, Any]) -> CalcRecipe:
        """Cross-field checks over the complete (merged) rule."""
        recipe = build_recipe(
            values["calc_method"],
            rate=values.get("rate"),
            base_reduction=values.get("base_reduction"),
            fixed_amount=values.get("fixed_amount"),
            formula=values.get("formula"),
        )
        valid_to: date | None = values.get("valid_to")
        if valid_to is not None and valid_to < values["valid_from"]:
            raise ValidationError("must not be before valid_from", field="valid_to")
        return recipe

    @staticmethod
    def _current(rule: TaxRule) -> dict[str, Any]:
        return {f: getattr(rule, f) for f in UPDATABLE_FIELDS}

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create(self, org_id: UUID, data: TaxRuleInput, actor: AuditActor) -> TaxRuleInfo:
        """
        Create a rule.

        ``valid_from`` defaults to today (from the clock).
        """
        values = self._normalize({
            "regime_id": data.regime_id,
            "tax_type_id": data.tax_type_id,
            "operation": data.operation,
            "origin_uf": data.origin_uf,
            "destination_uf": data.destination_uf,
            "classification_id": data.classification_id,
            "calc_method": data.calc_method,
            "rate": data.rate,
            "base_reduction": data.base_reduction,
            "fixed_amount": data.fixed_amount,
            "formula": data.formula,
            "priority": data.priority,
            "valid_from": data.valid_from or self._clock.today(),
            "valid_to": data.valid_to,
            "is_active": data.is_active,
        })
        recipe = self._validate(values)
        values["calc_method"] = recipe.method
        self._check_references(values)

        rule = TaxRule(org_id=org_id, created_by=actor.user_id, **values)
        self.session.add(rule)
        self.session.flush()

        info = TaxRuleInfo.from_model(rule)
        self._auditor.record(
            TaxRule.__tablename__, rule.id, AuditOperation.INSERT,
            None, info, actor, org_id=org_id,
        )
        logger.info(
            "rule_created",
            extra={
                "rule_id": str(rule.id),
                "tax_type_id": str(rule.tax_type_id),
                "calc_method": recipe.method.value,
                "priority": rule.priority,
            },
        )
        return info

    def update(
        self,
        org_id: UUID,
        rule_id: UUID,
        patch: Mapping[str, Any],
        actor: AuditActor,
    ) -> TaxRuleInfo:
        """
        Apply a partial update.

        The merged rule is validated as a whole, so switching to
        ``percentual`` without a rate fails even if the patch itself only
        names ``calc_method``.

        Raises:
            RuleReferencedError: the rule is referenced by postings and the
                patch changes a calculation-defining field.
        """
        self._check_patch(patch, UPDATABLE_FIELDS)
        rule = self._load(org_id, rule_id)
        changes = self._normalize(patch)

        current = self._current(rule)
        changed = sorted(k for k, v in changes.items() if current[k] != v)
        frozen = [k for k in changed if k not in LIFECYCLE_FIELDS]
        if frozen:
            count = self.posting_count(rule.id)
            if count:
                logger.warning(
                    "referenced_rule_update_rejected",
                    extra={"rule_id": str(rule.id), "fields": frozen, "posting_count": count},
                )
                raise RuleReferencedError(str(rule.id), count, f"modify {', '.join(frozen)} of")

        merged = {**current, **changes}
        recipe = self._validate(merged)
        if "calc_method" in changes:
            changes["calc_method"] = recipe.method
        self._check_references(changes)

        old = TaxRuleInfo.from_model(rule)
        for key, value in changes.items():
            setattr(rule, key, value)
        rule.updated_by = actor.user_id
        self.session.flush()

        info = TaxRuleInfo.from_model(rule)
        self._auditor.record(
            TaxRule.__tablename__, rule.id, AuditOperation.UPDATE,
            old, info, actor, org_id=org_id,
        )
        logger.info("rule_updated", extra={"rule_id": str(rule.id), "fields": changed})
        return info

    def deactivate(self, org_id: UUID, rule_id: UUID, actor: AuditActor) -> TaxRuleInfo:
        """Set is_active=False.  Always allowed, referenced or not."""
        rule = self._load(org_id, rule_id)
        old = TaxRuleInfo.from_model(rule)
        rule.is_active = False
        rule.updated_by = actor.user_id
        self.session.flush()

        info = TaxRuleInfo.from_model(rule)
        self._auditor.record(
            TaxRule.__tablename__, rule.id, AuditOperation.UPDATE,
            old, info, actor, org_id=org_id,
        )
        logger.info("rule_deactivated", extra={"rule_id": str(rule.id)})
        return info

    def delete(self, org_id: UUID, rule_id: UUID, actor: AuditActor) -> None:
        """
        Physically delete a rule that no posting references.

        Raises:
            RuleReferencedError: postings reference the rule; nothing is
                deleted.
        """
        rule = self._load(org_id, rule_id)
        count = self.posting_count(rule.id)
        if count:
            logger.warning(
                "referenced_rule_delete_rejected",
                extra={"rule_id": str(rule.id), "posting_count": count},
            )
            raise RuleReferencedError(str(rule.id), count, "delete")

        old = TaxRuleInfo.from_model(rule)
        self.session.delete(rule)
        self.session.flush()

        self._auditor.record(
            TaxRule.__tablename__, rule_id, AuditOperation.DELETE,
            old, {"deleted": True, "id": rule_id}, actor, org_id=org_id,
        )
        logger.info("rule_deleted", extra={"rule_id": str(rule_id)})
