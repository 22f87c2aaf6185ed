"""
Structured JSON logging for the fee engines.

Every record is written as one JSON line: the envelope (``ts``, ``level``,
``logger``, ``message``), the fee context bound for the current call, the
record's ``extra`` fields and, for exceptions, the error's ``code`` plus the
structured attributes of FeeKernelError subclasses as ``exc_*`` keys.

The fee context names the ledger, segment, package and transaction an engine
is working on.  Entry points bind it with ``fee_log_context``; every record
emitted beneath them carries those fields, including the FEE_ENGINE_TRACE
records of nested engines.

Usage:
    from fee_kernel.logging_config import fee_log_context, get_logger

    logger = get_logger("engines.example")

    with fee_log_context(ledger_id=ledger_id, package_id=package_id):
        logger.info("fee_example_done", extra={"fee_count": 2})
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "configure_logging",
    "current_fee_context",
    "fee_log_context",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

CONTEXT_FIELDS = ("ledger_id", "segment_id", "package_id", "transaction_id")

_fee_context: ContextVar[Mapping[str, str] | None] = ContextVar(
    "fee_log_context", default=None
)


def current_fee_context() -> dict[str, str]:
    """Fee context fields bound for the current call."""
    return dict(_fee_context.get() or {})


@contextmanager
def fee_log_context(**fields: str | None) -> Iterator[dict[str, str]]:
    """
    Bind fee context fields for the duration of a ``with`` block.

    Empty values leave an outer binding in place; the previous context is
    restored on exit.

    Raises:
        TypeError: a field is not one of ``CONTEXT_FIELDS``.
    """
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise TypeError(f"Unknown fee log context fields: {unknown}")
    merged = current_fee_context()
    merged.update({k: str(v) for k, v in fields.items() if v})
    token = _fee_context.set(merged)
    try:
        yield dict(merged)
    finally:
        _fee_context.reset(token)


# Attributes every LogRecord has; anything else on a record came from extra.
_RECORD_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(current_fee_context())
        payload.update(
            (key, val) for key, val in vars(record).items()
            if key not in _RECORD_KEYS and key not in payload
        )

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                payload["exc_code"] = code
            for key, val in vars(exc).items():
                if not key.startswith("_") and key != "code":
                    payload[f"exc_{key}"] = val
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


_LOGGER_PREFIX = "fee_kernel"


def get_logger(name: str) -> logging.Logger:
    """Logger under the fee_kernel namespace, e.g. ``fee_kernel.engines.x``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a structured handler to the fee_kernel logger (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False
    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Drop handlers and allow configure_logging to run again. Tests only."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
