"""
Typed exception hierarchy for the fiscal engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A tax engine must tell its caller precisely what went wrong: which rule,
which tax type, which period, which date range.  Callers catch by TYPE and
read structured attributes; they never parse message strings.

Every exception:
  1. Has a class-level machine-readable ``code`` (API-safe).
  2. Stores its context as attributes (survives logging and serialization).
  3. Derives from ``FiscalEngineError`` so the boundary can catch the family.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FiscalEngineError (base)
    |
    +-- ValidationError
    |   +-- RuleReferencedError
    |   +-- CatalogEntryReferencedError
    |   +-- InvalidTransitionError
    |
    +-- RuleConflictError
    +-- FormulaEvaluationError
    +-- LedgerClosedError
    +-- OverlapError
    +-- NotFoundError
    +-- ImmutabilityViolationError
    +-- AuditChainBrokenError
    +-- IntegrityFaultError
    +-- LockTimeoutError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                          | When Raised
------------------------------|-----------------------------------------------
VALIDATION_ERROR              | Malformed rule/setting/request input
RULE_REFERENCED               | Rule has ledger postings; cannot delete/alter
CATALOG_REFERENCED            | Regime or tax type still in use; cannot delete
INVALID_OBLIGATION_TRANSITION | Obligation status change not allowed
RULE_CONFLICT                 | Two equally ranked rules for one tax type
FORMULA_EVALUATION            | Formula cannot be parsed or evaluated
LEDGER_CLOSED                 | Post/close against a frozen period
SETTING_OVERLAP               | Company fiscal settings overlap in time
NOT_FOUND                     | Referenced entity does not exist
IMMUTABILITY_VIOLATION        | Update/delete of an append-only record
AUDIT_CHAIN_BROKEN            | Audit hash chain validation failed
INTEGRITY_FAULT               | Rollback after a failed mutation also failed
LOCK_TIMEOUT                  | Period or writer lock not acquired in time

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        engine.post_calculation(org_id, result, period, actor)
    except LedgerClosedError as e:
        notify_user(f"Period {e.period} is {e.status}")

IntegrityFaultError is the only error that is NOT recoverable at the call
boundary: it means the store may hold an unaudited mutation and an operator
must intervene.
"""


class FiscalEngineError(Exception):
    """
    Base exception for all fiscal engine errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "FISCAL_ENGINE_ERROR"


class ValidationError(FiscalEngineError):
    """Input rejected before any write."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}" if field else message)


class RuleReferencedError(ValidationError):
    """
    Rule is referenced by ledger postings.

    Referenced rules may only be deactivated (or have their validity window
    ended); their calculation-defining fields are frozen and they cannot be
    physically deleted.
    """

    code: str = "RULE_REFERENCED"

    def __init__(self, rule_id: str, posting_count: int, operation: str):
        self.rule_id = rule_id
        self.posting_count = posting_count
        self.operation = operation
        super().__init__(
            f"Cannot {operation} rule {rule_id}: referenced by "
            f"{posting_count} ledger posting(s); deactivate it instead",
            field="id",
        )


class CatalogEntryReferencedError(ValidationError):
    """
    A regime or tax type is still used by rules, settings, ledgers or
    calculations and cannot be deleted.
    """

    code: str = "CATALOG_REFERENCED"

    def __init__(self, entity_type: str, entity_id: str, references: dict[str, int]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.references = references
        used_by = ", ".join(f"{count} {table}" for table, count in sorted(references.items()))
        super().__init__(
            f"Cannot delete {entity_type} {entity_id}: referenced by {used_by}",
            field="id",
        )


class InvalidTransitionError(ValidationError):
    """Obligation status transition is not allowed."""

    code: str = "INVALID_OBLIGATION_TRANSITION"

    def __init__(self, obligation_id: str, current_status: str, target_status: str, reason: str = ""):
        self.obligation_id = obligation_id
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Obligation {obligation_id} cannot move from "
            f"{current_status} to {target_status}{detail}",
            field="status",
        )


class RuleConflictError(FiscalEngineError):
    """
    Two or more rules are equally specific, equally prioritized and
    equally recent for the same tax type.

    Never auto-resolved: silent non-determinism is unacceptable.
    """

    code: str = "RULE_CONFLICT"

    def __init__(self, tax_type_id: str, tax_type_code: str, rule_ids: list[str]):
        self.tax_type_id = tax_type_id
        self.tax_type_code = tax_type_code
        self.rule_ids = rule_ids
        super().__init__(
            f"Ambiguous rules for tax type {tax_type_code}: "
            f"{', '.join(rule_ids)} share specificity, priority and valid_from"
        )


class FormulaEvaluationError(FiscalEngineError):
    """Formula could not be parsed or evaluated; the calculation is aborted."""

    code: str = "FORMULA_EVALUATION"

    def __init__(self, formula: str, reason: str, tax_type: str | None = None, rule_id: str | None = None):
        self.formula = formula
        self.reason = reason
        self.tax_type = tax_type
        self.rule_id = rule_id
        where = ""
        if tax_type or rule_id:
            where = f" (tax type {tax_type}, rule {rule_id})"
        super().__init__(f"Formula '{formula}' failed{where}: {reason}")

    def with_context(self, tax_type: str, rule_id: str) -> "FormulaEvaluationError":
        """Return a copy of this error naming the tax type and rule."""
        return FormulaEvaluationError(self.formula, self.reason, tax_type, rule_id)


class LedgerClosedError(FiscalEngineError):
    """Attempted post or close against a frozen (fechado) ledger."""

    code: str = "LEDGER_CLOSED"

    def __init__(self, period: str, status: str, tax_type_code: str | None = None):
        self.period = period
        self.status = status
        self.tax_type_code = tax_type_code
        scope = f" for tax type {tax_type_code}" if tax_type_code else ""
        super().__init__(f"Ledger{scope} in period {period} is {status}")


class OverlapError(FiscalEngineError):
    """Company fiscal setting validity windows overlap."""

    code: str = "SETTING_OVERLAP"

    def __init__(self, existing_setting_id: str, existing_from: str, existing_to: str | None):
        self.existing_setting_id = existing_setting_id
        self.existing_from = existing_from
        self.existing_to = existing_to
        super().__init__(
            f"Fiscal setting overlaps existing setting {existing_setting_id} "
            f"({existing_from} to {existing_to or 'open'})"
        )


class NotFoundError(FiscalEngineError):
    """Referenced entity does not exist (or belongs to another organization)."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class ImmutabilityViolationError(FiscalEngineError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(FiscalEngineError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_entry_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


class IntegrityFaultError(FiscalEngineError):
    """
    Rolling back a failed mutation also failed.

    Unrecoverable: requires operator intervention.
    """

    code: str = "INTEGRITY_FAULT"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Integrity fault during {operation}: rollback failed ({reason})"
        )


class LockTimeoutError(FiscalEngineError):
    """A period (or writer) lock could not be acquired in time."""

    code: str = "LOCK_TIMEOUT"

    def __init__(self, lock_key: str, timeout_seconds: float):
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Could not acquire lock {lock_key} within {timeout_seconds}s"
        )
