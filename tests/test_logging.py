"""
Tests for structured fee engine logging (fee_kernel/logging_config.py).

Covers:
- JSON records emitted by real engine calls
- Fee context bound by engine entry points
- Exception fields for fee kernel errors
- fee_log_context nesting rules
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fee_engines.fee_breakdown import derive_fee_breakdown_state
from fee_engines.response_reconciliation import validate_and_filter_fee_response
from fee_engines.runtime_validation import validate_fee_calculation
from fee_engines.transformers import FeeEngineTransformer
from fee_kernel.domain.fee_types import AppliedFee, FeeCalculationState
from fee_kernel.exceptions import MissingSegmentError
from fee_kernel.logging_config import (
    configure_logging,
    current_fee_context,
    fee_log_context,
    get_logger,
    reset_logging,
)


def _messages(records: list[dict], message: str) -> list[dict]:
    return [r for r in records if r["message"] == message]


def _amount(alias: str, value: str, **extra) -> dict:
    return {"accountAlias": alias, "amount": {"asset": "USD", "value": value}, **extra}


def _state(package_id: str | None = None) -> FeeCalculationState:
    return FeeCalculationState.from_applied_fees(
        original_amount=Decimal("100"),
        original_currency="USD",
        source_account="@customer",
        destination_account="@merchant",
        applied_fees=[AppliedFee(
            fee_id="f1",
            fee_label="Processing",
            calculated_amount=Decimal("2"),
            is_deductible_from=True,
            credit_account="@fees",
            priority=1,
        )],
        calculated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        package_id=package_id,
    )


class TestEngineRecords:
    """Records written by engine calls are single JSON objects."""

    def test_breakdown_records(self, captured_logs):
        derive_fee_breakdown_state({
            "asset": "USD",
            "amount": "100",
            "source": [{"accountAlias": "@customer", "value": "100"}],
            "destination": [
                {"accountAlias": "@merchant", "value": "90"},
                {"accountAlias": "@fee_collector", "value": "10"},
            ],
        })
        records = captured_logs()

        derived = _messages(records, "fee_breakdown_derived")[0]
        assert derived["logger"] == "fee_kernel.engines.fee_breakdown"
        assert derived["level"] == "INFO"
        assert derived["total_fees"] == "10"
        assert derived["is_deductible_from"] is True
        assert "ts" in derived

        trace = _messages(records, "FEE_ENGINE_TRACE")[0]
        assert trace["logger"] == "fee_kernel.engines.tracer"
        assert trace["engine_name"] == "fee_breakdown"
        assert trace["function"] == "derive_fee_breakdown_state"

    def test_failed_validation_logged_as_warning(self, captured_logs):
        state = _state()
        broken = replace(state, total_fees=Decimal("9"))
        validate_fee_calculation(broken)
        completed = _messages(captured_logs(), "fee_validation_completed")[0]
        assert completed["level"] == "WARNING"
        assert completed["is_valid"] is False
        assert completed["error_count"] >= 1


class TestFeeContext:
    """Entry points bind the ledger, segment and package they work on."""

    def test_validation_carries_package(self, captured_logs):
        validate_fee_calculation(_state(package_id="pkg-9"))
        completed = _messages(captured_logs(), "fee_validation_completed")[0]
        assert completed["package_id"] == "pkg-9"
        assert current_fee_context() == {}

    def test_reconciliation_context_reaches_nested_engines(self, captured_logs):
        request = {
            "ledgerId": "ledger-main",
            "segmentId": "segment-retail",
            "transaction": {
                "asset": "USD",
                "value": "100",
                "source": [{"accountAlias": "@a", "value": "100"}],
                "destination": [{"accountAlias": "@b", "value": "100"}],
            },
        }
        response = {"transaction": {
            "packageAppliedID": "pkg-7",
            "feeRules": [{
                "feeId": "f1",
                "feeLabel": "Processing",
                "priority": 1,
                "referenceAmount": "originalAmount",
                "creditAccount": "@fees",
                "isDeductibleFrom": False,
            }],
            "send": {
                "asset": "USD",
                "value": "105",
                "source": {"from": [_amount("@a", "105")]},
                "distribute": {"to": [
                    _amount("@b", "100"),
                    _amount("@fees", "5", metadata={"source": "@a"}),
                ]},
            },
        }}
        validate_and_filter_fee_response(response, request)

        traces = _messages(captured_logs(), "FEE_ENGINE_TRACE")
        engines = {t["engine_name"]: t for t in traces}
        for name in ("runtime_validation", "response_reconciliation"):
            assert engines[name]["ledger_id"] == "ledger-main"
            assert engines[name]["segment_id"] == "segment-retail"
            assert engines[name]["package_id"] == "pkg-7"

    def test_missing_segment_error_fields(self, captured_logs):
        request = {"transaction": {"asset": "USD", "value": "10", "metadata": {}}}
        try:
            FeeEngineTransformer().transform_console_to_fee_engine(request, "ledger-main")
        except MissingSegmentError:
            get_logger("bff").exception("fee_request_rejected")

        records = captured_logs()
        warning = _messages(records, "fee_engine_request_missing_segment")[0]
        assert warning["ledger_id"] == "ledger-main"
        assert "segment_id" not in warning

        rejected = _messages(records, "fee_request_rejected")[0]
        assert rejected["exc_type"] == "MissingSegmentError"
        assert rejected["exc_code"] == "MISSING_SEGMENT_ID"
        assert rejected["exc_ledger_id"] == "ledger-main"
        assert rejected["exc_message"] == "Segment ID is required for fee calculation"
        assert "traceback" in rejected


class TestFeeLogContext:
    def test_nesting_restores_outer_binding(self):
        with fee_log_context(ledger_id="ledger-1"):
            with fee_log_context(package_id="pkg-1"):
                assert current_fee_context() == {"ledger_id": "ledger-1", "package_id": "pkg-1"}
            assert current_fee_context() == {"ledger_id": "ledger-1"}
        assert current_fee_context() == {}

    def test_empty_values_keep_outer_binding(self):
        with fee_log_context(segment_id="segment-retail"):
            with fee_log_context(segment_id=None, package_id=""):
                assert current_fee_context() == {"segment_id": "segment-retail"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="correlation_id"):
            with fee_log_context(correlation_id="abc"):
                pass


class TestConfigureLogging:
    @pytest.fixture
    def _fresh_logging(self):
        reset_logging()
        yield
        reset_logging()
        configure_logging(level=logging.DEBUG)

    def test_idempotent(self, _fresh_logging):
        configure_logging(handler=logging.NullHandler())
        configure_logging(handler=logging.NullHandler())
        assert len(logging.getLogger("fee_kernel").handlers) == 1
