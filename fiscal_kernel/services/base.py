"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel layer.  All concrete services inherit
    from BaseService, receiving a SQLAlchemy ``Session`` that they use
    via ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or rollback themselves.  The
      FiscalEngine unit of work (or the test harness) owns commit/rollback,
      so a mutation and its audit entry commit together or not at all.
    - Patches only touch whitelisted fields.
"""

from abc import ABC
from typing import Any, Generic, Iterable, Mapping, TypeVar

from sqlalchemy.orm import Session

from fiscal_kernel.db.base import Base
from fiscal_kernel.exceptions import ValidationError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide list/query methods -- those belong in
          ``fiscal_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _check_patch(patch: Mapping[str, Any], allowed: Iterable[str]) -> None:
        """Reject empty patches and unknown fields."""
        if not patch:
            raise ValidationError("patch is empty", field="patch")
        unknown = sorted(set(patch) - set(allowed))
        if unknown:
            raise ValidationError(
                f"cannot update field(s): {', '.join(unknown)}",
                field=unknown[0],
            )
