"""
Module: fiscal_kernel.models.audit_log
Responsibility: ORM persistence for the fiscal audit log -- one row per
    mutating engine call, hash-chained for tamper evidence.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - seq is strictly increasing, allocated by SequenceService.
    - hash = H(seq | table_name | record_id | operation | payload_hash |
      prev_hash), validated by AuditorService.validate_chain().

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a mismatch.

Audit relevance:
    This IS the audit trail.  Rule, setting, catalog, ledger and obligation
    mutations each produce exactly one entry in the same transaction as the
    mutation itself.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import Base, UTCDateTime, UUIDString
from fiscal_kernel.domain.values import AuditOperation


class FiscalAuditLogEntry(Base):
    """Audit entry with hash chain linkage."""

    __tablename__ = "fiscal_audit_log"

    __table_args__ = (
        Index("idx_fiscal_audit_org_seq", "org_id", "seq"),
        Index("idx_fiscal_audit_record", "table_name", "record_id"),
        Index("idx_fiscal_audit_timestamp", "timestamp"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # NULL for global (catalog) mutations
    org_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    table_name: Mapped[str] = mapped_column(String(50), nullable=False)

    # UUID of the row, or the period code for period-wide actions
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)

    operation: Mapped[AuditOperation] = mapped_column(String(10), nullable=False)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # NULL only for the first entry
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<FiscalAuditLogEntry #{self.seq} {self.operation} {self.table_name}:{self.record_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
