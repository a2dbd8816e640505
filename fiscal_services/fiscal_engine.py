"""
fiscal_services.fiscal_engine -- FiscalEngine facade.

Responsibility:
    The single entry point of the fiscal engine.  Wires the kernel services,
    selectors and pure engines together and runs every call in its own unit
    of work: lock, transaction, audit, commit or rollback.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  The only
    layer that owns sessions and transactions.

Invariants enforced:
    - Explicit organization: every call takes ``org_id``; there is no
      ambient tenant state.
    - Every mutating call runs in one transaction together with its audit
      entry.  Any error rolls the whole call back.
    - Posts and closes of one ``(org_id, month, year)`` hold that period's
      lock for the whole transaction, so they never interleave.
    - ``calculate_tax`` never writes.

Failure modes:
    - Typed ``FiscalEngineError`` subclasses propagate to the caller, except
      from close/reopen, which report them in ``PeriodActionResult``.
    - IntegrityFaultError (logged CRITICAL) when the rollback after a
      failure itself fails.
    - LockTimeoutError when a local period lock cannot be acquired.

Usage:
    engine = FiscalEngine.from_settings(get_active_settings(), create_schema=True)
    engine.seed_reference_data(actor)

    result = engine.calculate_tax(TaxCalculationRequest(
        org_id=org_id, operation=Operation.VENDA, amount=Decimal("100.00"),
    ))
    engine.post_calculation(org_id, result, TaxPeriod(2024, 1), actor)
    engine.close_tax_period(org_id, TaxPeriod(2024, 1), actor)
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import date
from typing import Any, Generator, Hashable, Iterable, Mapping
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fiscal_config import EngineSettings, ReferenceCatalog
from fiscal_engines.rule_resolver import RuleResolver
from fiscal_engines.tax import TaxCalculator
from fiscal_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
)
from fiscal_kernel.db.immutability import register_immutability_listeners
from fiscal_kernel.db.locks import LocalLockRegistry, LockBackend, PostgresAdvisoryLocks
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import (
    AuditLogFilter,
    AuditLogPage,
    CompanyFiscalSettingInfo,
    CompanyFiscalSettingInput,
    FiscalClassificationInfo,
    LedgerFilter,
    ObligationFilter,
    ObligationInfo,
    ObligationKindInfo,
    PeriodActionResult,
    RuleFilter,
    TaxCalculationRecordInfo,
    TaxCalculationRequest,
    TaxCalculationResult,
    TaxCalculationsSummary,
    TaxLedgerInfo,
    TaxRegimeInfo,
    TaxRuleInfo,
    TaxRuleInput,
    TaxTypeInfo,
)
from fiscal_kernel.domain.rules import RuleScope
from fiscal_kernel.domain.values import (
    AuditActor,
    ClassificationType,
    Jurisdiction,
    ObligationStatus,
    Periodicity,
    TaxPeriod,
)
from fiscal_kernel.exceptions import (
    FiscalEngineError,
    IntegrityFaultError,
    NotFoundError,
)
from fiscal_kernel.logging_config import LogContext, configure_logging, get_logger
from fiscal_kernel.models.catalog import TaxRegime
from fiscal_kernel.selectors import (
    AuditSelector,
    CatalogSelector,
    LedgerSelector,
    ObligationSelector,
    RuleSelector,
    SettingSelector,
)
from fiscal_kernel.services import (
    AuditorService,
    CatalogService,
    CompanySettingService,
    LedgerService,
    ObligationService,
    RuleService,
)

logger = get_logger("services.fiscal_engine")


def period_lock_key(org_id: UUID, period: TaxPeriod) -> tuple:
    return ("period", str(org_id), period.month, period.year)


def _settings_lock_key(org_id: UUID) -> tuple:
    return ("settings", str(org_id))


def _obligation_lock_key(org_id: UUID, kind_id: UUID, period: TaxPeriod) -> tuple:
    return ("obligation", str(org_id), str(kind_id), period.month, period.year)


_CATALOG_LOCK_KEY = ("catalog",)


class _Services:
    """Kernel services and selectors bound to one session."""

    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.auditor = AuditorService(session, clock)
        self.catalog = CatalogService(session, self.auditor)
        self.settings = CompanySettingService(session, self.auditor)
        self.rules = RuleService(session, self.auditor, clock)
        self.ledgers = LedgerService(session, self.auditor, clock)
        self.obligations = ObligationService(session, self.auditor, clock)

        self.catalog_selector = CatalogSelector(session)
        self.setting_selector = SettingSelector(session)
        self.rule_selector = RuleSelector(session)
        self.ledger_selector = LedgerSelector(session)
        self.obligation_selector = ObligationSelector(session)
        self.audit_selector = AuditSelector(session)


class FiscalEngine:
    """
    Facade over the fiscal kernel.

    Contract:
        Receives a session factory and optional settings, clock and lock
        backend.  Each public method opens its own session and transaction;
        callers never see sessions or ORM rows, only frozen DTOs.

    Non-goals:
        - Does NOT authenticate; the AuditActor is recorded as given.
        - Does NOT render exports; it returns the stored records.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        locks: LockBackend | None = None,
    ):
        self._session_factory = session_factory
        self.settings = settings or EngineSettings()
        self._clock = clock or SystemClock()
        self._resolver = RuleResolver()
        self._calculator = TaxCalculator()

        if locks is None:
            bind = session_factory.kw.get("bind")
            if bind is not None and is_postgres(bind):
                locks = PostgresAdvisoryLocks()
            else:
                # SQLite has a single writer
                locks = LocalLockRegistry(
                    timeout_seconds=self.settings.lock_timeout_seconds,
                    serialize_writes=True,
                )
        self._locks = locks

        register_immutability_listeners()

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        clock: Clock | None = None,
        create_schema: bool = False,
    ) -> FiscalEngine:
        """Initialize the database engine and logging from settings."""
        configure_logging(level=settings.log_level)
        init_engine_from_url(
            settings.database_url,
            echo=settings.echo,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
        )
        if create_schema:
            create_tables()
        return cls(get_session_factory(), settings=settings, clock=clock)

    # =========================================================================
    # Unit of work
    # =========================================================================

    @contextmanager
    def _unit_of_work(
        self,
        operation: str,
        lock_keys: Iterable[Hashable] = (),
        write: bool = True,
    ) -> Generator[_Services, None, None]:
        """
        One transaction: locks, services, then commit (write) or rollback
        (read).  Any exception rolls back and propagates.

        Raises:
            IntegrityFaultError: the rollback itself failed.
        """
        keys = list(lock_keys)
        t0 = time.monotonic()
        with self._locks.hold(keys, write=write):
            session = self._session_factory()
            try:
                self._locks.acquire_in_transaction(session, keys)
                yield _Services(session, self._clock)
                if write:
                    session.commit()
                else:
                    session.rollback()
            except Exception as exc:
                try:
                    session.rollback()
                except SQLAlchemyError as rollback_exc:
                    logger.critical(
                        "rollback_failed",
                        extra={"operation": operation, "error": str(rollback_exc)},
                    )
                    raise IntegrityFaultError(operation, str(rollback_exc)) from exc
                logger.warning(
                    "transaction_rolled_back",
                    extra={
                        "operation": operation,
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                    },
                )
                raise
            finally:
                session.close()

        if write:
            logger.info(
                "fiscal_operation_committed",
                extra={
                    "operation": operation,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )

    @staticmethod
    def _context(org_id: UUID | None = None, actor: AuditActor | None = None, period: TaxPeriod | None = None):
        return LogContext.bind(
            correlation_id=str(uuid4()),
            org_id=str(org_id) if org_id else None,
            actor_id=actor.user_id if actor else None,
            period=period.code if period else None,
        )

    # =========================================================================
    # Calculation
    # =========================================================================

    def calculate_tax(self, request: TaxCalculationRequest) -> TaxCalculationResult:
        """
        Resolve the applicable rules and compute the taxes of a request.

        Pure with respect to the store: nothing is written.  The regime is
        the request's, or the one of the organization's setting effective
        on the request date.

        Raises:
            NotFoundError: no regime given and no effective setting.
            RuleConflictError: ambiguous resolution for a tax type.
            FormulaEvaluationError: a formula rule failed; no result.
        """
        effective_date = request.effective_date or self._clock.today()
        with self._context(request.org_id):
            with self._unit_of_work("calculate_tax", write=False) as svc:
                regime_id = request.regime_id
                if regime_id is None:
                    setting = svc.setting_selector.effective(request.org_id, effective_date)
                    if setting is None:
                        raise NotFoundError(
                            "CompanyFiscalSetting",
                            f"{request.org_id}@{effective_date.isoformat()}",
                        )
                    regime_id = setting.regime_id
                elif svc.session.get(TaxRegime, regime_id) is None:
                    raise NotFoundError("TaxRegime", str(regime_id))

                candidates = svc.rule_selector.candidates(
                    request.org_id, regime_id, request.operation
                )

            resolved = self._resolver.resolve(
                candidates,
                regime_id=regime_id,
                operation=request.operation,
                scope=RuleScope(
                    origin_uf=request.origin_uf,
                    destination_uf=request.destination_uf,
                    classification_id=request.classification_id,
                ),
                on=effective_date,
            )
            return self._calculator.calculate(
                request,
                regime_id=regime_id,
                effective_date=effective_date,
                resolved=resolved,
                calculated_at=self._clock.now(),
            )

    # =========================================================================
    # Ledgers
    # =========================================================================

    def post_calculation(
        self,
        org_id: UUID,
        result: TaxCalculationResult,
        period: TaxPeriod,
        actor: AuditActor,
    ) -> TaxCalculationRecordInfo:
        """
        Persist a calculation into the ledgers of ``period``.

        Raises:
            LedgerClosedError: the period has a closed ledger; nothing is
                written.
        """
        with self._context(org_id, actor, period):
            with self._unit_of_work("post_calculation", [period_lock_key(org_id, period)]) as svc:
                return svc.ledgers.post(org_id, result, period, actor)

    def get_ledgers(
        self,
        org_id: UUID,
        period: TaxPeriod,
        filters: LedgerFilter | None = None,
    ) -> list[TaxLedgerInfo]:
        with self._unit_of_work("get_ledgers", write=False) as svc:
            return svc.ledger_selector.get_ledgers(org_id, period, filters)

    def _period_action(self, action: str, org_id: UUID, period: TaxPeriod, actor: AuditActor) -> PeriodActionResult:
        with self._context(org_id, actor, period):
            try:
                with self._unit_of_work(f"{action}_tax_period", [period_lock_key(org_id, period)]) as svc:
                    ledgers = getattr(svc.ledgers, action)(org_id, period, actor)
            except IntegrityFaultError:
                raise
            except FiscalEngineError as exc:
                return PeriodActionResult(
                    success=False,
                    period=period.code,
                    error=str(exc),
                    error_code=exc.code,
                )
            return PeriodActionResult(
                success=True,
                period=period.code,
                ledgers_affected=len(ledgers),
            )

    def close_tax_period(self, org_id: UUID, period: TaxPeriod, actor: AuditActor) -> PeriodActionResult:
        """Close every ledger of the period, all-or-nothing."""
        return self._period_action("close", org_id, period, actor)

    def reopen_tax_period(self, org_id: UUID, period: TaxPeriod, actor: AuditActor) -> PeriodActionResult:
        """Reopen the closed ledgers of the period.  Always audited."""
        return self._period_action("reopen", org_id, period, actor)

    def get_tax_calculations_summary(self, org_id: UUID, period: TaxPeriod) -> TaxCalculationsSummary:
        with self._unit_of_work("get_tax_calculations_summary", write=False) as svc:
            return svc.ledger_selector.summary(org_id, period)

    def get_tax_calculations(self, org_id: UUID, period: TaxPeriod) -> list[TaxCalculationRecordInfo]:
        """Posted calculation records of the period (export source)."""
        with self._unit_of_work("get_tax_calculations", write=False) as svc:
            return svc.ledger_selector.calculations(org_id, period)

    # =========================================================================
    # Rules
    # =========================================================================

    def list_rules(self, org_id: UUID, filters: RuleFilter | None = None) -> list[TaxRuleInfo]:
        with self._unit_of_work("list_rules", write=False) as svc:
            return svc.rule_selector.list(org_id, filters)

    def create_rule(self, org_id: UUID, data: TaxRuleInput, actor: AuditActor) -> TaxRuleInfo:
        with self._context(org_id, actor):
            with self._unit_of_work("create_rule") as svc:
                return svc.rules.create(org_id, data, actor)

    def update_rule(
        self, org_id: UUID, rule_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> TaxRuleInfo:
        with self._context(org_id, actor):
            with self._unit_of_work("update_rule") as svc:
                return svc.rules.update(org_id, rule_id, patch, actor)

    def deactivate_rule(self, org_id: UUID, rule_id: UUID, actor: AuditActor) -> TaxRuleInfo:
        with self._context(org_id, actor):
            with self._unit_of_work("deactivate_rule") as svc:
                return svc.rules.deactivate(org_id, rule_id, actor)

    def delete_rule(self, org_id: UUID, rule_id: UUID, actor: AuditActor) -> None:
        """
        Raises:
            RuleReferencedError: postings reference the rule.
        """
        with self._context(org_id, actor):
            with self._unit_of_work("delete_rule") as svc:
                svc.rules.delete(org_id, rule_id, actor)

    # =========================================================================
    # Company fiscal settings
    # =========================================================================

    def get_company_fiscal_settings(self, org_id: UUID) -> list[CompanyFiscalSettingInfo]:
        with self._unit_of_work("get_company_fiscal_settings", write=False) as svc:
            return svc.setting_selector.list(org_id)

    def get_effective_setting(self, org_id: UUID, on: date | None = None) -> CompanyFiscalSettingInfo | None:
        on = on or self._clock.today()
        with self._unit_of_work("get_effective_setting", write=False) as svc:
            return svc.setting_selector.effective(org_id, on)

    def create_company_fiscal_setting(
        self, org_id: UUID, data: CompanyFiscalSettingInput, actor: AuditActor
    ) -> CompanyFiscalSettingInfo:
        """
        Raises:
            OverlapError: the window overlaps an existing setting.
        """
        with self._context(org_id, actor):
            with self._unit_of_work("create_company_fiscal_setting", [_settings_lock_key(org_id)]) as svc:
                return svc.settings.create(org_id, data, actor)

    def update_company_fiscal_setting(
        self, org_id: UUID, setting_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> CompanyFiscalSettingInfo:
        with self._context(org_id, actor):
            with self._unit_of_work("update_company_fiscal_setting", [_settings_lock_key(org_id)]) as svc:
                return svc.settings.update(org_id, setting_id, patch, actor)

    # =========================================================================
    # Obligations
    # =========================================================================

    def list_obligations(self, org_id: UUID, filters: ObligationFilter | None = None) -> list[ObligationInfo]:
        with self._unit_of_work("list_obligations", write=False) as svc:
            return svc.obligation_selector.list(org_id, filters)

    def create_obligation(
        self, org_id: UUID, obligation_kind_id: UUID, period: TaxPeriod, actor: AuditActor
    ) -> ObligationInfo:
        """Create, or return the existing, obligation of a kind for a period."""
        key = _obligation_lock_key(org_id, obligation_kind_id, period)
        with self._context(org_id, actor, period):
            with self._unit_of_work("create_obligation", [key]) as svc:
                info, _created = svc.obligations.create(org_id, obligation_kind_id, period, actor)
                return info

    def advance_obligation(
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
        Raises:
            InvalidTransitionError: transition not allowed or gate not met.
        """
        with self._context(org_id, actor):
            with self._unit_of_work("advance_obligation") as svc:
                return svc.obligations.advance(
                    org_id,
                    obligation_id,
                    target,
                    actor,
                    protocol=protocol,
                    message=message,
                    generated_file_path=generated_file_path,
                )

    # =========================================================================
    # Catalog
    # =========================================================================

    def list_regimes(self) -> list[TaxRegimeInfo]:
        with self._unit_of_work("list_regimes", write=False) as svc:
            return svc.catalog_selector.list_regimes()

    def create_regime(self, code: str, name: str, actor: AuditActor, **fields: Any) -> TaxRegimeInfo:
        with self._context(actor=actor):
            with self._unit_of_work("create_regime", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.create_regime(code, name, actor, **fields)

    def update_regime(self, regime_id: UUID, patch: Mapping[str, Any], actor: AuditActor) -> TaxRegimeInfo:
        with self._context(actor=actor):
            with self._unit_of_work("update_regime", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.update_regime(regime_id, patch, actor)

    def delete_regime(self, regime_id: UUID, actor: AuditActor) -> None:
        """Delete a regime no rule, setting, ledger or calculation uses."""
        with self._context(actor=actor):
            with self._unit_of_work("delete_regime", [_CATALOG_LOCK_KEY]) as svc:
                svc.catalog.delete_regime(regime_id, actor)

    def list_tax_types(self) -> list[TaxTypeInfo]:
        with self._unit_of_work("list_tax_types", write=False) as svc:
            return svc.catalog_selector.list_tax_types()

    def create_tax_type(
        self,
        code: str,
        name: str,
        jurisdiction: Jurisdiction | str,
        actor: AuditActor,
        description: str | None = None,
    ) -> TaxTypeInfo:
        with self._context(actor=actor):
            with self._unit_of_work("create_tax_type", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.create_tax_type(code, name, jurisdiction, actor, description)

    def update_tax_type(self, tax_type_id: UUID, patch: Mapping[str, Any], actor: AuditActor) -> TaxTypeInfo:
        with self._context(actor=actor):
            with self._unit_of_work("update_tax_type", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.update_tax_type(tax_type_id, patch, actor)

    def delete_tax_type(self, tax_type_id: UUID, actor: AuditActor) -> None:
        """Delete a tax type no rule or ledger uses."""
        with self._context(actor=actor):
            with self._unit_of_work("delete_tax_type", [_CATALOG_LOCK_KEY]) as svc:
                svc.catalog.delete_tax_type(tax_type_id, actor)

    def list_classifications(
        self, classification_type: ClassificationType | str | None = None
    ) -> list[FiscalClassificationInfo]:
        with self._unit_of_work("list_classifications", write=False) as svc:
            return svc.catalog_selector.list_classifications(classification_type)

    def create_classification(
        self,
        classification_type: ClassificationType | str,
        code: str,
        description: str,
        actor: AuditActor,
        cest: str | None = None,
    ) -> FiscalClassificationInfo:
        with self._context(actor=actor):
            with self._unit_of_work("create_classification", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.create_classification(classification_type, code, description, actor, cest)

    def update_classification(
        self, classification_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> FiscalClassificationInfo:
        with self._context(actor=actor):
            with self._unit_of_work("update_classification", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.update_classification(classification_id, patch, actor)

    def list_obligation_kinds(self) -> list[ObligationKindInfo]:
        with self._unit_of_work("list_obligation_kinds", write=False) as svc:
            return svc.catalog_selector.list_obligation_kinds()

    def create_obligation_kind(
        self,
        code: str,
        name: str,
        periodicity: Periodicity | str,
        actor: AuditActor,
        description: str | None = None,
    ) -> ObligationKindInfo:
        with self._context(actor=actor):
            with self._unit_of_work("create_obligation_kind", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.create_obligation_kind(code, name, periodicity, actor, description)

    def update_obligation_kind(
        self, kind_id: UUID, patch: Mapping[str, Any], actor: AuditActor
    ) -> ObligationKindInfo:
        with self._context(actor=actor):
            with self._unit_of_work("update_obligation_kind", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.update_obligation_kind(kind_id, patch, actor)

    def seed_reference_data(
        self, actor: AuditActor, catalog: ReferenceCatalog | None = None
    ) -> dict[str, list[str]]:
        """
        Create the configured regimes, tax types and obligation kinds that
        do not exist yet.

        Returns:
            Codes created, per table.
        """
        catalog = catalog or self.settings.catalog
        with self._context(actor=actor):
            with self._unit_of_work("seed_reference_data", [_CATALOG_LOCK_KEY]) as svc:
                return svc.catalog.seed(
                    regimes=[
                        {"code": r.code, "name": r.name, "description": r.description}
                        for r in catalog.regimes
                    ],
                    tax_types=[
                        {
                            "code": t.code,
                            "name": t.name,
                            "jurisdiction": t.jurisdiction,
                            "description": t.description,
                        }
                        for t in catalog.tax_types
                    ],
                    obligation_kinds=[
                        {
                            "code": k.code,
                            "name": k.name,
                            "periodicity": k.periodicity,
                            "description": k.description,
                        }
                        for k in catalog.obligation_kinds
                    ],
                    actor=actor,
                )

    # =========================================================================
    # Audit
    # =========================================================================

    def query_audit_log(self, org_id: UUID | None, filters: AuditLogFilter | None = None) -> AuditLogPage:
        """
        Audit entries of an organization, newest first.  ``org_id=None``
        returns the global catalog entries.
        """
        with self._unit_of_work("query_audit_log", write=False) as svc:
            return svc.audit_selector.query(
                org_id,
                filters,
                default_limit=self.settings.audit_page_size,
                max_limit=self.settings.audit_max_page_size,
            )

    def validate_audit_chain(self) -> bool:
        """
        Raises:
            AuditChainBrokenError: the chain does not verify.
        """
        with self._unit_of_work("validate_audit_chain", write=False) as svc:
            return svc.auditor.validate_chain()
