"""
fee_engines.tracer -- Engine invocation tracer emitting FEE_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps an engine entry point and, after it returns,
    emits one structured log record carrying engine_name, engine_version,
    input_fingerprint (SHA-256 prefix of the selected arguments)
    and duration_ms.

Architecture position:
    Engines -- support for the pure calculation layer.  Emits a log record
    only; the wrapped function's result is returned unchanged.

Invariants enforced:
    - Fingerprints are deterministic: mapping keys are sorted, sequences
      keep their order, Decimals use their exact string form.
    - The decorator never mutates inputs.

Failure modes:
    - Arguments are bound to the engine signature with defaults applied, so
      positional and keyword calls fingerprint alike.
    - A call that does not match the signature raises TypeError before the
      engine runs, as the engine itself would.
    - Exceptions raised by the engine propagate; no trace record is emitted
      for a failed call.

Usage:
    from fee_engines.tracer import traced_engine

    @traced_engine("fee_breakdown", "1.0", fingerprint_fields=("transaction",))
    def derive_fee_breakdown_state(transaction, ...):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any

from fee_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _canonicalize(value: Any) -> str:
    """Produce a stable string representation of a value for fingerprinting.

    Unknown types fall back to ``str(value)``.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return _canonicalize(value.value)
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """Deterministic 16-hex-char SHA-256 prefix of the selected arguments."""
    parts: list[str] = []
    for name in fingerprint_fields:
        parts.append(f"{name}={_canonicalize(arguments.get(name))}")
    canonical = "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits FEE_ENGINE_TRACE for engine invocations.

    Args:
        engine_name: Engine identifier (e.g., "fee_breakdown").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Parameter names hashed into the input
            fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                bound = signature.bind(*args, **kwargs)
                bound.apply_defaults()
                fp = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.info(
                "FEE_ENGINE_TRACE",
                extra={
                    "trace_type": "FEE_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
