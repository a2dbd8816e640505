"""
Module: fiscal_kernel.db.locks
Responsibility: Short-lived keyed locks that serialize ledger posting and
    period close for one ``(org_id, period_month, period_year)``.
Architecture position: Kernel > DB.  Used by the FiscalEngine unit of work;
    services never take locks themselves.

Invariants enforced:
    - A post and a close on the same org+period never interleave.
    - Two posts on the same org+period never interleave, so ledger totals
      cannot lose an update.
    - Keys are always acquired in sorted order (no lock-order deadlocks).

Backends:
    PostgresAdvisoryLocks -- ``pg_advisory_xact_lock``.  Taken inside the
        transaction and released by PostgreSQL at COMMIT/ROLLBACK.
    LocalLockRegistry -- process-local ``threading.Lock`` per key, held
        around the whole transaction (acquired before BEGIN, released after
        COMMIT).  With ``serialize_writes=True`` every write unit of work
        also takes a single writer lock (SQLite allows one writer).

Failure modes:
    - LockTimeoutError if a local lock is not acquired within the timeout.
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import AbstractContextManager, contextmanager
from typing import Generator, Hashable, Iterable, Protocol

from sqlalchemy import text
from sqlalchemy.orm import Session

from fiscal_kernel.exceptions import LockTimeoutError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("db.locks")

_WRITER_KEY = ("__writer__",)


def lock_key_to_int(key: Hashable) -> int:
    """Map a lock key to a signed 64-bit integer (PostgreSQL bigint)."""
    digest = hashlib.sha256(repr(key).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class LockBackend(Protocol):
    """Keyed lock backend used by the unit of work."""

    def hold(self, keys: Iterable[Hashable], write: bool = True) -> AbstractContextManager[None]:
        """Held around the whole transaction."""
        ...

    def acquire_in_transaction(self, session: Session, keys: Iterable[Hashable]) -> None:
        """Called right after the transaction begins."""
        ...


class LocalLockRegistry:
    """
    Process-local keyed locks.

    Contract:
        ``hold(keys)`` blocks until every key is owned by the caller, then
        yields; keys are released when the block exits.

    Non-goals:
        - Does NOT coordinate between processes.  Multi-process deployments
          must run on PostgreSQL.
    """

    def __init__(self, timeout_seconds: float = 30.0, serialize_writes: bool = False):
        self._timeout = timeout_seconds
        self._serialize_writes = serialize_writes
        self._locks: dict[Hashable, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[Hashable], write: bool = True) -> Generator[None, None, None]:
        ordered = sorted(set(keys), key=repr)
        if write and self._serialize_writes:
            ordered.append(_WRITER_KEY)

        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self._timeout):
                    logger.warning(
                        "lock_timeout",
                        extra={"lock_key": repr(key), "timeout": self._timeout},
                    )
                    raise LockTimeoutError(repr(key), self._timeout)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def acquire_in_transaction(self, session: Session, keys: Iterable[Hashable]) -> None:
        return None


class PostgresAdvisoryLocks:
    """
    Transaction-scoped PostgreSQL advisory locks.

    Contract:
        ``acquire_in_transaction`` issues ``pg_advisory_xact_lock`` for each
        key; PostgreSQL releases them when the transaction ends, so
        ``hold`` has nothing to do.
    """

    @contextmanager
    def hold(self, keys: Iterable[Hashable], write: bool = True) -> Generator[None, None, None]:
        yield

    def acquire_in_transaction(self, session: Session, keys: Iterable[Hashable]) -> None:
        for key in sorted(set(keys), key=repr):
            session.execute(
                text("SELECT pg_advisory_xact_lock(:k)"),
                {"k": lock_key_to_int(key)},
            )
            logger.debug("advisory_lock_acquired", extra={"lock_key": repr(key)})
