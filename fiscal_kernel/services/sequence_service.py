"""
SequenceService -- the audit chain head: next seq and previous hash.

Responsibility:
    Keeps one head row per hash chain holding the last allocated ``seq``
    and the hash of the entry that took it.  ``reserve`` hands the next
    entry both values from a single ``SELECT ... FOR UPDATE``; ``advance``
    moves the head once the entry is hashed.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService only.

Invariants enforced:
    - The locked head row is the sole source of the next seq and of
      prev_hash; neither ``max(seq) + 1`` nor a "latest entry" query is
      used, so two writers can never chain onto the same predecessor.
    - The head moves in the caller's transaction; a rollback rolls it back
      with the entry, so seq stays gapless.
    - The head always names the newest entry.  A chain whose tail was
      removed no longer matches its head (see AuditorService.validate_chain).

Failure modes:
    - IntegrityError: two transactions creating the head row at once.
      Handled with a savepoint and a re-read of the winner's row.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from fiscal_kernel.db.base import Base
from fiscal_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class AuditChainHead(Base):
    """Last allocated seq and hash of one audit chain."""

    __tablename__ = "fiscal_audit_chain_head"

    chain: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    last_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    last_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)


class SequenceService:
    """
    Allocates audit sequence numbers from the chain head.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_LOG = "fiscal_audit_log"

    def __init__(self, session: Session, chain: str = AUDIT_LOG):
        self._session = session
        self._chain = chain
        self._held: AuditChainHead | None = None

    def _locked_head(self) -> AuditChainHead | None:
        return self._session.execute(
            select(AuditChainHead)
            .where(AuditChainHead.chain == self._chain)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create_head(self) -> AuditChainHead:
        savepoint = self._session.begin_nested()
        try:
            head = AuditChainHead(chain=self._chain, last_seq=0, last_hash=None)
            self._session.add(head)
            self._session.flush()
            savepoint.commit()
            logger.info("audit_chain_started", extra={"chain": self._chain})
            return head
        except IntegrityError:
            savepoint.rollback()
            logger.debug("audit_chain_head_race", extra={"chain": self._chain})
            head = self._locked_head()
            if head is None:
                raise
            return head

    def reserve(self) -> tuple[int, str | None]:
        """
        Lock the head and return ``(next_seq, prev_hash)`` for a new entry.

        The first entry of a chain gets ``(1, None)``.
        """
        head = self._locked_head() or self._create_head()
        self._held = head
        return head.last_seq + 1, head.last_hash

    def advance(self, seq: int, entry_hash: str) -> None:
        """Move the reserved head to the entry just written."""
        head = self._held
        if head is None or seq != head.last_seq + 1:
            raise RuntimeError(f"audit seq {seq} was not reserved on chain {self._chain}")
        head.last_seq = seq
        head.last_hash = entry_hash
        self._held = None
        self._session.flush()
        logger.debug("sequence_allocated", extra={"chain": self._chain, "seq": seq})

    def head(self) -> tuple[int, str | None] | None:
        """``(last_seq, last_hash)`` without locking, or None for an unused chain."""
        row = self._session.execute(
            select(AuditChainHead).where(AuditChainHead.chain == self._chain)
        ).scalar_one_or_none()
        return (row.last_seq, row.last_hash) if row is not None else None
