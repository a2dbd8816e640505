"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Posted tax figures must be tamper-proof.  Once a calculation is posted and
its period closed, the numbers that were filed must stay reproducible.  The
services already refuse such writes; these listeners catch the same writes
when they come from any other Python code path (a script, a shell session,
a future service that forgets the check).

SQLAlchemy fires mapper events before UPDATE/DELETE reach the database:

    session.flush()
         |
         v
    [before_update / before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

If a check fails the flush raises and the unit of work rolls back.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | When Immutable                     | Reason
----------------------|------------------------------------|------------------------------
FiscalAuditLogEntry   | ALWAYS                             | Audit trail is append-only
TaxLedgerPosting      | ALWAYS                             | Postings are the ledger history
TaxCalculationRecord  | ALWAYS                             | What was posted stays posted
TaxLedger             | Totals while FECHADO; never deleted| Closed figures are frozen
TaxRule               | Calc fields once referenced;       | Historical recomputation
                      | never deleted once referenced      |
CompanyFiscalSetting  | Never deleted                      | Regime history is retained

===============================================================================
USAGE
===============================================================================

    from fiscal_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent, called by FiscalEngine

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, func, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from fiscal_kernel.domain.values import LedgerStatus
from fiscal_kernel.exceptions import ImmutabilityViolationError, RuleReferencedError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Ledger fields that may change while (or when) a ledger leaves FECHADO
_LEDGER_STATUS_FIELDS = frozenset({
    "status",
    "version",
    "closed_at",
    "closed_by",
    "updated_at",
    "updated_by",
})


def _blocked(entity_type: str, entity_id, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# Append-only records
# =============================================================================


def _check_audit_entry_update(mapper, connection, target):
    _blocked("FiscalAuditLogEntry", target.id, "UPDATE", "Audit entries are immutable")


def _check_audit_entry_delete(mapper, connection, target):
    _blocked("FiscalAuditLogEntry", target.id, "DELETE", "Audit entries cannot be deleted")


def _check_posting_update(mapper, connection, target):
    _blocked("TaxLedgerPosting", target.id, "UPDATE", "Ledger postings are immutable")


def _check_posting_delete(mapper, connection, target):
    _blocked("TaxLedgerPosting", target.id, "DELETE", "Ledger postings cannot be deleted")


def _check_calculation_update(mapper, connection, target):
    _blocked("TaxCalculationRecord", target.id, "UPDATE", "Posted calculations are immutable")


def _check_calculation_delete(mapper, connection, target):
    _blocked("TaxCalculationRecord", target.id, "DELETE", "Posted calculations cannot be deleted")


def _check_setting_delete(mapper, connection, target):
    _blocked(
        "CompanyFiscalSetting",
        target.id,
        "DELETE",
        "Fiscal settings are retained forever; end their window instead",
    )


# =============================================================================
# Ledgers
# =============================================================================


def _check_ledger_immutability(mapper, connection, target):
    """
    Block totals changes on a ledger that was FECHADO before this flush.

    Allowed: FECHADO -> ABERTO (reopen) with its bookkeeping fields, and
    ABERTO -> FECHADO (close).  Posting into a reopened ledger happens in a
    later flush, after the status change is persisted.
    """
    status_history = get_history(target, "status")
    if status_history.deleted:
        was_closed = status_history.deleted[0] == LedgerStatus.FECHADO
    else:
        was_closed = target.status == LedgerStatus.FECHADO

    if not was_closed:
        return

    for attr in inspect(target).mapper.column_attrs:
        if attr.key in _LEDGER_STATUS_FIELDS:
            continue
        if get_history(target, attr.key).has_changes():
            _blocked(
                "TaxLedger",
                target.id,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on closed ledger",
                field=attr.key,
            )


def _check_ledger_delete(mapper, connection, target):
    _blocked("TaxLedger", target.id, "DELETE", "Ledgers cannot be deleted")


# =============================================================================
# Rules
# =============================================================================


def _rule_posting_count(connection, rule_id) -> int:
    from fiscal_kernel.models.ledger import TaxLedgerPosting

    return connection.execute(
        select(func.count(TaxLedgerPosting.id)).where(TaxLedgerPosting.rule_id == rule_id)
    ).scalar_one()


def _check_rule_deletion_before_flush(session, flush_context, instances):
    """
    Refuse deletion of rules referenced by ledger postings.

    Runs in SessionEvents.before_flush, before the flush plan is finalized.
    """
    from fiscal_kernel.models.tax_rule import TaxRule

    for obj in list(session.deleted):
        if not isinstance(obj, TaxRule):
            continue
        with session.no_autoflush:
            count = _rule_posting_count(session.connection(), obj.id)
        if count:
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": "TaxRule",
                    "entity_id": str(obj.id),
                    "operation": "DELETE",
                    "posting_count": count,
                },
            )
            raise RuleReferencedError(str(obj.id), count, "delete")


def _check_rule_calculation_fields(mapper, connection, target):
    """Calculation-defining fields are frozen once a posting references the rule."""
    from fiscal_kernel.models.tax_rule import CALCULATION_FIELDS

    changed = [f for f in CALCULATION_FIELDS if get_history(target, f).has_changes()]
    if not changed:
        return

    count = _rule_posting_count(connection, target.id)
    if count:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "TaxRule",
                "entity_id": str(target.id),
                "operation": "UPDATE",
                "fields": changed,
            },
        )
        raise RuleReferencedError(str(target.id), count, f"modify {', '.join(changed)} of")


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from fiscal_kernel.models import (
        CompanyFiscalSetting,
        FiscalAuditLogEntry,
        TaxCalculationRecord,
        TaxLedger,
        TaxLedgerPosting,
        TaxRule,
    )

    return [
        (Session, "before_flush", _check_rule_deletion_before_flush),
        (FiscalAuditLogEntry, "before_update", _check_audit_entry_update),
        (FiscalAuditLogEntry, "before_delete", _check_audit_entry_delete),
        (TaxLedgerPosting, "before_update", _check_posting_update),
        (TaxLedgerPosting, "before_delete", _check_posting_delete),
        (TaxCalculationRecord, "before_update", _check_calculation_update),
        (TaxCalculationRecord, "before_delete", _check_calculation_delete),
        (TaxLedger, "before_update", _check_ledger_immutability),
        (TaxLedger, "before_delete", _check_ledger_delete),
        (TaxRule, "before_update", _check_rule_calculation_fields),
        (CompanyFiscalSetting, "before_delete", _check_setting_delete),
    ]


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
