"""
Structured JSON logging for the fiscal engine.

Every record is one JSON line.  Request-scoped fields (organization, actor,
period, calculation) are held in a single context variable, so they follow
the call across threads started by the caller and across ``asyncio`` tasks
without being passed through every function.

    configure_logging(level="INFO")
    with LogContext.bind(org_id=org_id, period="2024-01"):
        logger.info("period_closed", extra={"ledger_count": 3})
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

LOGGER_NAMESPACE = "fiscal_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "org_id",
    "actor_id",
    "period",
    "calculation_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})

_context: ContextVar[Mapping[str, str]] = ContextVar("fiscal_log_context", default=_EMPTY)


def _known(fields: Mapping[str, Any], strict: bool) -> dict[str, str]:
    merged: dict[str, str] = {}
    for name, value in fields.items():
        if name not in CONTEXT_FIELDS:
            if strict:
                raise KeyError(f"Unknown log context field: {name}")
            continue
        if value is not None:
            merged[name] = str(value)
    return merged


class LogContext:
    """Request-scoped log fields, stored as one immutable mapping per context."""

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set fields in the current context. None leaves a field untouched."""
        updates = _known(fields, strict=True)
        _context.set(MappingProxyType({**_context.get(), **updates}))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set(_EMPTY)

    @classmethod
    def bind(cls, **fields: Any) -> "_Binding":
        """Overlay fields for the duration of a ``with`` block."""
        return _Binding(_known(fields, strict=False))


class _Binding:

    def __init__(self, updates: dict[str, str]):
        self._updates = updates
        self._token = None

    def __enter__(self) -> type[LogContext]:
        self._token = _context.set(MappingProxyType({**_context.get(), **self._updates}))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _context.reset(self._token)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # FiscalEngineError subclasses carry their details as public attributes
    for name, value in vars(exc).items():
        if not name.startswith("_") and name not in ("args", "code"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and key not in payload
        )

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` under the fiscal_kernel namespace."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_setup_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the JSON handler on the namespace logger. Later calls are no-ops."""
    global _installed_handler
    with _setup_lock:
        if _installed_handler is not None:
            return
        _installed_handler = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)

    _installed_handler.setFormatter(StructuredFormatter())
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.setLevel(level)
    namespace.propagate = False
    namespace.addHandler(_installed_handler)


def reset_logging() -> None:
    """Remove the installed handler so configure_logging can run again. Tests only."""
    global _installed_handler
    with _setup_lock:
        _installed_handler = None
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.handlers.clear()
    namespace.setLevel(logging.WARNING)
