"""
Pytest fixtures for the fee kernel test suite.

Provides:
- Structured logging configured for the session
- A deterministic clock
- Log capture as parsed JSON records
"""

import json
import logging
from io import StringIO

import pytest

from fee_kernel.domain.clock import DeterministicClock
from fee_kernel.logging_config import StructuredFormatter, configure_logging, reset_logging


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture
def captured_logs():
    """
    Capture fee_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            derive_fee_breakdown_state(payload)
            logs = captured_logs()
            assert any(r["message"] == "fee_breakdown_derived" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fee_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Clock fixed at 2024-01-01 12:00 UTC."""
    return DeterministicClock()
