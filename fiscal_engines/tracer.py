"""
fiscal_engines.tracer -- FISCAL_ENGINE_TRACE records for engine calls.

Responsibility:
    ``@traced_engine`` wraps a pure engine method and logs one record per
    call: engine name and version, an input fingerprint over selected
    keyword arguments, the duration, and whether the call raised.

Architecture position:
    Engines -- support for the pure calculation layer.  Only logs; inputs
    and outputs pass through untouched and exceptions propagate.

Invariants enforced:
    - The fingerprint depends on values only.  Dataclasses (rule snapshots,
      scopes, recipes) are flattened field by field with their type name,
      mapping keys are sorted and Decimals are normalized, so 1.50 and 1.5
      fingerprint alike.

Audit relevance:
    Replaying a calculation with the same rules and request logs the same
    fingerprint as the original resolution.

Usage:
    @traced_engine("rule_resolver", "1.0", fingerprint_fields=("regime_id", "on"))
    def resolve(self, rules, *, regime_id, operation, scope, on):
        ...
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import time
from collections.abc import Callable, Mapping
from typing import Any

from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.utils.hashing import canonicalize_json

_logger = get_logger("engines.tracer")

FINGERPRINT_LENGTH = 16


def _flatten(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        flat = {f.name: _flatten(getattr(value, f.name)) for f in dataclasses.fields(value)}
        flat["__type__"] = type(value).__name__
        return flat
    if isinstance(value, Mapping):
        return {str(k): _flatten(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_flatten(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_flatten(v) for v in value)
    return value


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: Mapping[str, Any],
) -> str:
    """SHA-256 prefix over the named keyword arguments; absent ones count as null."""
    selected = {name: _flatten(kwargs.get(name)) for name in fingerprint_fields}
    digest = hashlib.sha256(canonicalize_json(selected).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator emitting FISCAL_ENGINE_TRACE around a pure engine method."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = (
                compute_input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""
            )
            started = time.monotonic()
            outcome = "error"
            try:
                result = func(*args, **kwargs)
                outcome = "ok"
                return result
            finally:
                _logger.info(
                    "FISCAL_ENGINE_TRACE",
                    extra={
                        "trace_type": "FISCAL_ENGINE_TRACE",
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "input_fingerprint": fingerprint,
                        "duration_ms": round((time.monotonic() - started) * 1000, 2),
                        "outcome": outcome,
                        "function": func.__qualname__,
                    },
                )

        return wrapper

    return decorator
