"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that cross the engine boundary:
    the calculation request and result, the read models of every stored
    entity (``*Info``), write inputs, list filters and the result shapes of
    period actions, summaries and audit queries.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods exist as boundary converters but are only
    invoked from the service and selector layers (never from domain logic).

Invariants enforced:
    - A calculation request amount is > 0 with at most 2 decimal places.
    - A calculation result always satisfies
      ``total_tax == sum(line.amount)`` and
      ``net_amount == total_amount - total_tax`` (checked on construction,
      so a tampered result handed back for posting is rejected).
    - Every DTO is frozen; services never hand ORM rows to callers.

Failure modes:
    - ValidationError on malformed request or inconsistent result.

Data flow:
    TaxCalculationRequest -> (resolver, calculator) -> TaxCalculationResult
    -> post -> TaxCalculationRecordInfo / TaxLedgerInfo
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping
from uuid import UUID

from fiscal_kernel.domain.values import (
    CENT,
    AuditOperation,
    CalcMethod,
    ClassificationType,
    Jurisdiction,
    LedgerStatus,
    ObligationStatus,
    Operation,
    Periodicity,
    TaxPeriod,
    normalize_uf,
    to_decimal,
)
from fiscal_kernel.exceptions import ValidationError

if TYPE_CHECKING:
    from fiscal_kernel.models.audit_log import FiscalAuditLogEntry as AuditLogModel
    from fiscal_kernel.models.calculation import TaxCalculationRecord as CalculationModel
    from fiscal_kernel.models.catalog import (
        FiscalClassification as ClassificationModel,
    )
    from fiscal_kernel.models.catalog import ObligationKind as ObligationKindModel
    from fiscal_kernel.models.catalog import TaxRegime as TaxRegimeModel
    from fiscal_kernel.models.catalog import TaxType as TaxTypeModel
    from fiscal_kernel.models.company_setting import (
        CompanyFiscalSetting as CompanySettingModel,
    )
    from fiscal_kernel.models.ledger import TaxLedger as TaxLedgerModel
    from fiscal_kernel.models.obligation import Obligation as ObligationModel
    from fiscal_kernel.models.tax_rule import TaxRule as TaxRuleModel


def _enum_or_validation(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"invalid value '{value}'", field=field_name)


# =============================================================================
# Calculation
# =============================================================================


@dataclass(frozen=True)
class TaxCalculationRequest:
    """
    Input of a tax calculation.  Ephemeral, never persisted on its own.

    ``regime_id`` may be omitted; the engine then uses the regime of the
    organization's fiscal setting effective on ``effective_date``.
    ``effective_date`` defaults to today (from the engine's clock).
    """

    org_id: UUID
    operation: Operation
    amount: Decimal
    regime_id: UUID | None = None
    classification_id: UUID | None = None
    origin_uf: str | None = None
    destination_uf: str | None = None
    effective_date: date | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.org_id is None:
            raise ValidationError("org_id is required", field="org_id")
        object.__setattr__(
            self, "operation", _enum_or_validation(Operation, self.operation, "operation")
        )
        amount = to_decimal(self.amount, "amount")
        if amount <= 0:
            raise ValidationError("must be greater than zero", field="amount")
        if amount != amount.quantize(CENT):
            raise ValidationError("must have at most 2 decimal places", field="amount")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "origin_uf", normalize_uf(self.origin_uf, "origin_uf"))
        object.__setattr__(
            self, "destination_uf", normalize_uf(self.destination_uf, "destination_uf")
        )


@dataclass(frozen=True)
class TaxLine:
    """One tax type's share of a calculation, produced by exactly one rule."""

    tax_type_id: UUID
    tax_type_code: str
    tax_type: str
    rule_id: UUID
    calc_method: CalcMethod
    base: Decimal
    rate: Decimal | None
    base_reduction: Decimal | None
    amount: Decimal
    formula: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tax_type_id": str(self.tax_type_id),
            "tax_type_code": self.tax_type_code,
            "tax_type": self.tax_type,
            "rule_id": str(self.rule_id),
            "calc_method": self.calc_method.value,
            "base": str(self.base),
            "rate": str(self.rate) if self.rate is not None else None,
            "base_reduction": str(self.base_reduction) if self.base_reduction is not None else None,
            "amount": str(self.amount),
            "formula": self.formula,
        }


@dataclass(frozen=True)
class TaxCalculationResult:
    """
    Output of a tax calculation.

    One line per tax type with a resolved rule, ordered by tax type code.
    """

    org_id: UUID
    regime_id: UUID
    operation: Operation
    effective_date: date
    total_amount: Decimal
    total_tax: Decimal
    net_amount: Decimal
    taxes: tuple[TaxLine, ...]
    calculated_at: datetime
    classification_id: UUID | None = None
    origin_uf: str | None = None
    destination_uf: str | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        line_sum = sum((line.amount for line in self.taxes), Decimal("0"))
        if self.total_tax != line_sum:
            raise ValidationError(
                f"total_tax {self.total_tax} != sum of lines {line_sum}",
                field="total_tax",
            )
        if self.net_amount != self.total_amount - self.total_tax:
            raise ValidationError(
                "net_amount must equal total_amount - total_tax",
                field="net_amount",
            )

    @property
    def tax_by_code(self) -> dict[str, TaxLine]:
        return {line.tax_type_code: line for line in self.taxes}

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation, stored with the calculation record."""
        return {
            "org_id": str(self.org_id),
            "regime_id": str(self.regime_id),
            "operation": self.operation.value,
            "effective_date": self.effective_date.isoformat(),
            "classification_id": str(self.classification_id) if self.classification_id else None,
            "origin_uf": self.origin_uf,
            "destination_uf": self.destination_uf,
            "total_amount": str(self.total_amount),
            "total_tax": str(self.total_tax),
            "net_amount": str(self.net_amount),
            "taxes": [line.to_dict() for line in self.taxes],
            "calculated_at": self.calculated_at.isoformat(),
            "notes": self.notes,
        }


# =============================================================================
# Catalog
# =============================================================================


@dataclass(frozen=True)
class TaxRegimeInfo:
    id: UUID
    code: str
    name: str
    description: str | None = None
    effective_from: date | None = None
    effective_to: date | None = None

    @classmethod
    def from_model(cls, model: TaxRegimeModel) -> TaxRegimeInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            description=model.description,
            effective_from=model.effective_from,
            effective_to=model.effective_to,
        )


@dataclass(frozen=True)
class TaxTypeInfo:
    id: UUID
    code: str
    name: str
    jurisdiction: Jurisdiction
    description: str | None = None

    @classmethod
    def from_model(cls, model: TaxTypeModel) -> TaxTypeInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            jurisdiction=Jurisdiction(model.jurisdiction),
            description=model.description,
        )


@dataclass(frozen=True)
class FiscalClassificationInfo:
    id: UUID
    classification_type: ClassificationType
    code: str
    description: str
    cest: str | None = None

    @classmethod
    def from_model(cls, model: ClassificationModel) -> FiscalClassificationInfo:
        return cls(
            id=model.id,
            classification_type=ClassificationType(model.classification_type),
            code=model.code,
            description=model.description,
            cest=model.cest,
        )


@dataclass(frozen=True)
class ObligationKindInfo:
    id: UUID
    code: str
    name: str
    periodicity: Periodicity
    description: str | None = None

    @classmethod
    def from_model(cls, model: ObligationKindModel) -> ObligationKindInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            periodicity=Periodicity(model.periodicity),
            description=model.description,
        )


# =============================================================================
# Company fiscal settings
# =============================================================================


@dataclass(frozen=True)
class CompanyFiscalSettingInput:
    """New company fiscal setting.  ``effective_to`` is exclusive."""

    org_name: str
    regime_id: UUID
    effective_from: date
    effective_to: date | None = None
    tax_id: str | None = None
    state: str | None = None
    municipality_code: str | None = None


@dataclass(frozen=True)
class CompanyFiscalSettingInfo:
    id: UUID
    org_id: UUID
    org_name: str
    regime_id: UUID
    effective_from: date
    effective_to: date | None
    tax_id: str | None = None
    state: str | None = None
    municipality_code: str | None = None

    @classmethod
    def from_model(cls, model: CompanySettingModel) -> CompanyFiscalSettingInfo:
        return cls(
            id=model.id,
            org_id=model.org_id,
            org_name=model.org_name,
            regime_id=model.regime_id,
            effective_from=model.effective_from,
            effective_to=model.effective_to,
            tax_id=model.tax_id,
            state=model.state,
            municipality_code=model.municipality_code,
        )


# =============================================================================
# Rules
# =============================================================================


@dataclass(frozen=True)
class TaxRuleInput:
    """
    New tax rule.

    Unset ``origin_uf``/``destination_uf``/``classification_id`` are
    wildcards.  ``valid_from`` defaults to today when omitted.
    """

    regime_id: UUID
    tax_type_id: UUID
    operation: Operation | str
    calc_method: CalcMethod | str
    rate: Decimal | None = None
    base_reduction: Decimal | None = None
    fixed_amount: Decimal | None = None
    formula: str | None = None
    origin_uf: str | None = None
    destination_uf: str | None = None
    classification_id: UUID | None = None
    priority: int = 0
    valid_from: date | None = None
    valid_to: date | None = None
    is_active: bool = True


@dataclass(frozen=True)
class TaxRuleInfo:
    id: UUID
    org_id: UUID
    regime_id: UUID
    tax_type_id: UUID
    operation: Operation
    calc_method: CalcMethod
    rate: Decimal | None
    base_reduction: Decimal | None
    fixed_amount: Decimal | None
    formula: str | None
    origin_uf: str | None
    destination_uf: str | None
    classification_id: UUID | None
    priority: int
    valid_from: date
    valid_to: date | None
    is_active: bool

    @classmethod
    def from_model(cls, model: TaxRuleModel) -> TaxRuleInfo:
        return cls(
            id=model.id,
            org_id=model.org_id,
            regime_id=model.regime_id,
            tax_type_id=model.tax_type_id,
            operation=Operation(model.operation),
            calc_method=CalcMethod(model.calc_method),
            rate=model.rate,
            base_reduction=model.base_reduction,
            fixed_amount=model.fixed_amount,
            formula=model.formula,
            origin_uf=model.origin_uf,
            destination_uf=model.destination_uf,
            classification_id=model.classification_id,
            priority=model.priority,
            valid_from=model.valid_from,
            valid_to=model.valid_to,
            is_active=model.is_active,
        )


@dataclass(frozen=True)
class RuleFilter:
    regime_id: UUID | None = None
    tax_type_id: UUID | None = None
    operation: Operation | None = None
    is_active: bool | None = None
    valid_on: date | None = None


# =============================================================================
# Ledgers
# =============================================================================


@dataclass(frozen=True)
class TaxLedgerInfo:
    id: UUID
    org_id: UUID
    tax_type_id: UUID
    regime_id: UUID
    period_month: int
    period_year: int
    total_debits: Decimal
    total_credits: Decimal
    balance_due: Decimal
    status: LedgerStatus
    version: int
    tax_type_code: str | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None

    @property
    def period(self) -> TaxPeriod:
        return TaxPeriod(self.period_year, self.period_month)

    @property
    def is_closed(self) -> bool:
        return self.status == LedgerStatus.FECHADO

    @classmethod
    def from_model(cls, model: TaxLedgerModel, tax_type_code: str | None = None) -> TaxLedgerInfo:
        return cls(
            id=model.id,
            org_id=model.org_id,
            tax_type_id=model.tax_type_id,
            regime_id=model.regime_id,
            period_month=model.period_month,
            period_year=model.period_year,
            total_debits=model.total_debits,
            total_credits=model.total_credits,
            balance_due=model.balance_due,
            status=LedgerStatus(model.status),
            version=model.version,
            tax_type_code=tax_type_code,
            closed_at=model.closed_at,
            closed_by=model.closed_by,
        )


@dataclass(frozen=True)
class LedgerFilter:
    tax_type_id: UUID | None = None
    regime_id: UUID | None = None
    status: LedgerStatus | None = None


@dataclass(frozen=True)
class PeriodActionResult:
    """Outcome of close/reopen.  Typed errors become ``error``/``error_code``."""

    success: bool
    period: str
    error: str | None = None
    error_code: str | None = None
    ledgers_affected: int = 0


@dataclass(frozen=True)
class TaxCalculationRecordInfo:
    id: UUID
    org_id: UUID
    period_month: int
    period_year: int
    regime_id: UUID
    operation: Operation
    total_amount: Decimal
    total_tax: Decimal
    net_amount: Decimal
    effective_date: date
    calculated_at: datetime
    result: Mapping[str, Any]
    classification_id: UUID | None = None
    origin_uf: str | None = None
    destination_uf: str | None = None
    notes: str | None = None

    @classmethod
    def from_model(cls, model: CalculationModel) -> TaxCalculationRecordInfo:
        return cls(
            id=model.id,
            org_id=model.org_id,
            period_month=model.period_month,
            period_year=model.period_year,
            regime_id=model.regime_id,
            operation=Operation(model.operation),
            total_amount=model.total_amount,
            total_tax=model.total_tax,
            net_amount=model.net_amount,
            effective_date=model.effective_date,
            calculated_at=model.calculated_at,
            result=dict(model.result or {}),
            classification_id=model.classification_id,
            origin_uf=model.origin_uf,
            destination_uf=model.destination_uf,
            notes=model.notes,
        )


@dataclass(frozen=True)
class TaxBreakdownItem:
    operations: int
    total: Decimal


@dataclass(frozen=True)
class TaxCalculationsSummary:
    """
    Period roll-up of posted calculations.

    ``tax_breakdown`` is keyed by tax type code.  ``operations`` counts the
    calculations that produced a line for that tax type.
    """

    period: str
    total_operations: int
    total_amount: Decimal
    total_taxes: Decimal
    tax_breakdown: Mapping[str, TaxBreakdownItem] = field(default_factory=dict)


# =============================================================================
# Obligations
# =============================================================================


@dataclass(frozen=True)
class ObligationInfo:
    id: UUID
    org_id: UUID
    obligation_kind_id: UUID
    period_month: int
    period_year: int
    status: ObligationStatus
    protocol: str | None = None
    generated_file_path: str | None = None
    message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def period(self) -> TaxPeriod:
        return TaxPeriod(self.period_year, self.period_month)

    @classmethod
    def from_model(cls, model: ObligationModel) -> ObligationInfo:
        return cls(
            id=model.id,
            org_id=model.org_id,
            obligation_kind_id=model.obligation_kind_id,
            period_month=model.period_month,
            period_year=model.period_year,
            status=ObligationStatus(model.status),
            protocol=model.protocol,
            generated_file_path=model.generated_file_path,
            message=model.message,
            started_at=model.started_at,
            finished_at=model.finished_at,
        )


@dataclass(frozen=True)
class ObligationFilter:
    period: TaxPeriod | None = None
    status: ObligationStatus | None = None
    obligation_kind_id: UUID | None = None


# =============================================================================
# Audit log
# =============================================================================


@dataclass(frozen=True)
class AuditLogEntryInfo:
    id: UUID
    seq: int
    org_id: UUID | None
    table_name: str
    record_id: str
    operation: AuditOperation
    old_values: Mapping[str, Any] | None
    new_values: Mapping[str, Any] | None
    user_id: str
    timestamp: datetime
    ip_address: str | None
    user_agent: str | None
    hash: str

    @classmethod
    def from_model(cls, model: AuditLogModel) -> AuditLogEntryInfo:
        return cls(
            id=model.id,
            seq=model.seq,
            org_id=model.org_id,
            table_name=model.table_name,
            record_id=model.record_id,
            operation=AuditOperation(model.operation),
            old_values=model.old_values,
            new_values=model.new_values,
            user_id=model.user_id,
            timestamp=model.timestamp,
            ip_address=model.ip_address,
            user_agent=model.user_agent,
            hash=model.hash,
        )


@dataclass(frozen=True)
class AuditLogFilter:
    """
    Audit query filter.

    ``search`` matches table name, record id or user id (case-insensitive
    substring).  ``since``/``until`` bound the entry timestamp, inclusive.
    ``limit=None`` means the configured default page size.
    """

    table_name: str | None = None
    operation: AuditOperation | None = None
    record_id: str | None = None
    user_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class AuditLogPage:
    entries: tuple[AuditLogEntryInfo, ...]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total
