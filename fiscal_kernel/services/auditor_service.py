"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit entries for every mutating engine
    call (one entry per call) and validates the chain for tamper detection.

Architecture position:
    Kernel > Services -- imperative shell, called by CatalogService,
    CompanySettingService, RuleService, LedgerService and ObligationService
    after their mutation has been flushed.

Invariants enforced:
    - seq and prev_hash come from the locked chain head (SequenceService),
      never from max(seq) + 1 or a latest-entry query.
    - Chain integrity: ``hash = H(seq | table | record | operation |
      payload_hash | prev_hash)``, where ``payload_hash`` covers the old and
      new values, the actor and the timestamp.
    - Append-only: entries are never modified or deleted (ORM listeners in
      db/immutability.py).

Failure modes:
    - AuditChainBrokenError: a recomputed hash does not match the stored
      hash, prev_hash does not match the predecessor's hash, or the
      newest entry is not the one the chain head names (tail removed).
    - IntegrityError: concurrent creation of the chain head row.
      The caller's transaction rolls back together with the mutation.

Audit relevance:
    This IS the audit service.  A mutation and its entry are flushed in the
    same transaction, so neither commits without the other.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.values import AuditActor, AuditOperation
from fiscal_kernel.exceptions import AuditChainBrokenError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.audit_log import FiscalAuditLogEntry
from fiscal_kernel.services.sequence_service import SequenceService
from fiscal_kernel.utils.hashing import hash_audit_entry, hash_payload, to_jsonable

logger = get_logger("services.auditor")


def _timestamp_key(value: datetime) -> str:
    """UTC, tz-naive ISO form; stable across backends that drop the offset."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def _payload_of(entry: FiscalAuditLogEntry) -> dict[str, Any]:
    return {
        "table_name": entry.table_name,
        "record_id": entry.record_id,
        "operation": AuditOperation(entry.operation).value,
        "org_id": str(entry.org_id) if entry.org_id else None,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "user_id": entry.user_id,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "timestamp": _timestamp_key(entry.timestamp),
    }


class AuditorService:
    """
    Service for creating and validating tamper-evident audit entries.

    Guarantees:
        - Every entry's ``hash`` is a deterministic function of its
          identifying fields, its payload hash and its predecessor's hash.
          Tampering with any field is detectable by ``validate_chain()``.
        - ``seq`` and ``prev_hash`` are read from the locked chain head.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT authenticate the actor; it records what it is told.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def record(
        self,
        table_name: str,
        record_id: UUID | str,
        operation: AuditOperation,
        old_values: Any,
        new_values: Any,
        actor: AuditActor,
        org_id: UUID | None = None,
    ) -> FiscalAuditLogEntry:
        """
        Append one audit entry for a mutation already flushed in this
        session.

        Values (mappings or DTOs) are converted to plain JSON (Decimals as
        strings, scale preserved) before they are stored and hashed.

        Postconditions:
            - A new entry is flushed with ``seq`` greater than every
              committed entry and ``prev_hash`` equal to the hash of the
              entry before it.
        """
        seq, prev_hash = self._sequence_service.reserve()

        entry = FiscalAuditLogEntry(
            seq=seq,
            org_id=org_id,
            table_name=table_name,
            record_id=str(record_id),
            operation=operation,
            old_values=to_jsonable(old_values) if old_values is not None else None,
            new_values=to_jsonable(new_values) if new_values is not None else None,
            user_id=actor.user_id,
            timestamp=self._clock.now(),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
        )
        entry.payload_hash = hash_payload(_payload_of(entry))
        entry.prev_hash = prev_hash
        entry.hash = hash_audit_entry(
            seq=seq,
            table_name=table_name,
            record_id=entry.record_id,
            operation=operation.value,
            payload_hash=entry.payload_hash,
            prev_hash=prev_hash,
        )

        self._session.add(entry)
        self._session.flush()
        self._sequence_service.advance(seq, entry.hash)

        logger.info(
            "audit_entry_created",
            extra={
                "table_name": table_name,
                "record_id": entry.record_id,
                "audit_operation": operation.value,
                "seq": seq,
            },
        )
        return entry

    def validate_chain(self) -> bool:
        """
        Validate the whole audit chain in sequence order.

        Returns:
            True if the chain is intact.

        Raises:
            AuditChainBrokenError: on the first entry whose payload hash,
                hash or predecessor link does not verify, or when the
                newest entry is not the one the chain head names.
        """
        entries = self._session.execute(
            select(FiscalAuditLogEntry).order_by(FiscalAuditLogEntry.seq)
        ).scalars().all()

        prev_hash: str | None = None
        for entry in entries:
            expected_payload = hash_payload(_payload_of(entry))
            if expected_payload != entry.payload_hash:
                logger.error(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "payload_hash"},
                )
                raise AuditChainBrokenError(str(entry.id), expected_payload, entry.payload_hash)

            if entry.prev_hash != prev_hash:
                logger.error(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "prev_hash"},
                )
                raise AuditChainBrokenError(str(entry.id), prev_hash or "GENESIS", entry.prev_hash or "GENESIS")

            expected_hash = hash_audit_entry(
                seq=entry.seq,
                table_name=entry.table_name,
                record_id=entry.record_id,
                operation=AuditOperation(entry.operation).value,
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if expected_hash != entry.hash:
                logger.error(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "hash"},
                )
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            prev_hash = entry.hash

        head = self._sequence_service.head()
        head_hash = head[1] if head is not None else None
        if head_hash != prev_hash:
            last_id = str(entries[-1].id) if entries else "GENESIS"
            logger.error(
                "audit_chain_broken",
                extra={"seq": entries[-1].seq if entries else 0, "check": "head"},
            )
            raise AuditChainBrokenError(last_id, head_hash or "GENESIS", prev_hash or "GENESIS")

        logger.info("audit_chain_validated", extra={"entry_count": len(entries)})
        return True
