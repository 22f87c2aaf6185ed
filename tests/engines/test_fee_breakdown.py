"""
Tests for the fee breakdown deriver.

Covers:
- Fee totals always split exactly into deductible and non-deductible parts
- Zero-fee suppression
- Deductible and additive (non-deductible) arithmetic
- Per-fee deductibility from package rules in fee service responses
- Receipt line labels
- Conversion to the validator-facing FeeCalculationState
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fee_engines.fee_breakdown import (
    BreakdownLineKind,
    build_fee_breakdown,
    build_fee_calculation_state,
    derive_fee_breakdown_state,
)
from fee_engines.runtime_validation import validate_fee_calculation


def _plain(destinations: list[dict], amount: str = "100", source_value: str = "100") -> dict:
    return {
        "asset": "USD",
        "amount": amount,
        "source": [{"accountAlias": "@customer", "value": source_value}],
        "destination": destinations,
    }


def _fee_response(
    destinations: list[dict],
    fee_rules: list[dict] | None = None,
    is_deductible_from: bool | None = None,
    value: str = "100",
) -> dict:
    transaction = {
        "packageAppliedID": "pkg-1",
        "send": {
            "asset": "USD",
            "value": value,
            "source": {"from": [
                {"accountAlias": "@customer", "amount": {"asset": "USD", "value": value}},
            ]},
            "distribute": {"to": destinations},
        },
    }
    if fee_rules is not None:
        transaction["feeRules"] = fee_rules
    if is_deductible_from is not None:
        transaction["isDeductibleFrom"] = is_deductible_from
    return {"transaction": transaction}


def _leg(alias: str, value: str, **extra) -> dict:
    return {"accountAlias": alias, "amount": {"asset": "USD", "value": value}, **extra}


class TestFeeSplitInvariant:
    """deductible + non-deductible always equals the total."""

    @pytest.mark.parametrize("payload", [
        _plain([
            {"accountAlias": "@merchant", "value": "90"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ]),
        _plain([
            {"accountAlias": "@merchant", "value": "100"},
            {"accountAlias": "@fee_collector", "value": "3.33"},
            {"accountAlias": "@platform", "value": "1.67", "description": "Platform fee"},
        ], source_value="105"),
        _fee_response(
            [
                _leg("@merchant", "95"),
                _leg("@fees", "5", metadata={"source": "@customer"}),
                _leg("@tax", "2.50", metadata={"source": "@customer"}),
            ],
            fee_rules=[
                {"feeId": "f1", "feeLabel": "Fee", "priority": 1, "creditAccount": "fees",
                 "isDeductibleFrom": True},
                {"feeId": "f2", "feeLabel": "Tax", "priority": 2, "creditAccount": "@tax",
                 "isDeductibleFrom": False},
            ],
        ),
    ])
    def test_split_matches_total(self, payload):
        state = derive_fee_breakdown_state(payload)
        assert state.deductible_fees + state.non_deductible_fees == state.total_fees

    def test_built_calculation_state_rounds_consistently(self, deterministic_clock):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "96.667"},
            {"accountAlias": "@fee_collector", "value": "3.333"},
        ])
        state = build_fee_calculation_state(payload, clock=deterministic_clock)
        rounded = (state.deductible_fees + state.non_deductible_fees).quantize(Decimal("0.01"))
        assert rounded == state.total_fees.quantize(Decimal("0.01"))


class TestZeroFeeSuppression:
    """No breakdown is produced without fees."""

    def test_no_fee_destinations(self):
        payload = _plain([{"accountAlias": "@merchant", "value": "100"}])
        assert build_fee_breakdown(payload) is None

    def test_null_input(self):
        assert build_fee_breakdown(None) is None
        assert derive_fee_breakdown_state(None) is None

    def test_missing_arrays_yield_zero_state(self):
        state = derive_fee_breakdown_state({"asset": "USD", "amount": "10"})
        assert state.total_fees == Decimal("0")
        assert state.applied_fees == ()

    def test_zero_valued_fee_leg(self):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "100"},
            {"accountAlias": "@fee_collector", "value": "0"},
        ])
        assert build_fee_breakdown(payload) is None


class TestDeductibleArithmetic:
    """Fees deducted from what the destination receives."""

    def test_destination_receives_less(self):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "90"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ])
        state = derive_fee_breakdown_state(payload)
        assert state.is_deductible_from is True
        assert state.destination_receives_amount == Decimal("90")
        assert state.source_pays_amount == Decimal("100")
        assert state.fee_collector == "@fee_collector"

    def test_note_line_present(self):
        breakdown = build_fee_breakdown(_plain([
            {"accountAlias": "@merchant", "value": "90"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ]))
        assert breakdown.line(BreakdownLineKind.FEE_TOTAL).label == "Fee deducted from transaction"
        assert breakdown.line(BreakdownLineKind.SENDER).label == "Sender sends (original amount)"
        assert breakdown.line(BreakdownLineKind.RECIPIENT).label == (
            "Destination receives (reduced amount)"
        )
        assert breakdown.line(BreakdownLineKind.NOTE).text == (
            "Fee was deducted from the transaction amount"
        )


class TestNonDeductibleArithmetic:
    """Fees added on top of what the sender pays."""

    def test_sender_pays_more(self):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "100"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ], source_value="110")
        state = derive_fee_breakdown_state(payload)
        assert state.is_deductible_from is False
        assert state.source_pays_amount == Decimal("110")
        assert state.destination_receives_amount == Decimal("100")

    def test_lines(self):
        breakdown = build_fee_breakdown(_plain([
            {"accountAlias": "@merchant", "value": "100"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ], source_value="110"))
        assert breakdown.line(BreakdownLineKind.FEE_TOTAL).label == "Fee added to total cost"
        assert breakdown.line(BreakdownLineKind.FEE_TOTAL).text == "USD 10.00"
        assert breakdown.line(BreakdownLineKind.FEE_ITEM).text == "+ USD 10.00"
        sender = breakdown.line(BreakdownLineKind.SENDER)
        assert sender.label == "Sender pays (including fees)"
        assert sender.text == "USD 110.00"
        assert breakdown.line(BreakdownLineKind.NOTE) is None

    def test_amount_override(self):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "100"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ], amount="", source_value="110")
        state = derive_fee_breakdown_state(payload, original_amount=Decimal("100"))
        assert state.source_pays_amount == Decimal("110")


class TestFeeServiceResponses:
    """Fee legs tagged by the fee service."""

    def test_mixed_deductibility_from_rules(self):
        payload = _fee_response(
            [
                _leg("@merchant", "95"),
                _leg("@fees", "5", metadata={"source": "@customer"}),
                _leg("@tax", "2", metadata={"source": "@customer"}),
            ],
            fee_rules=[
                {"feeId": "f1", "feeLabel": "Processing", "priority": 1,
                 "creditAccount": "fees", "isDeductibleFrom": True},
                {"feeId": "f2", "feeLabel": "Tax", "priority": 2,
                 "creditAccount": "@tax", "isDeductibleFrom": False},
            ],
        )
        state = derive_fee_breakdown_state(payload)
        assert state.deductible_fees == Decimal("5")
        assert state.non_deductible_fees == Decimal("2")
        assert state.source_pays_amount == Decimal("102")
        assert state.destination_receives_amount == Decimal("95")
        assert [f.fee_id for f in state.applied_fees] == ["f1", "f2"]
        assert state.package_id == "pkg-1"

    def test_untagged_fee_keyword_is_not_a_fee(self):
        """Fee service responses never use the keyword heuristic."""
        payload = _fee_response([
            _leg("@merchant", "90"),
            _leg("@fee_revenue", "10"),
        ])
        assert build_fee_breakdown(payload) is None

    def test_response_flag_used_without_rules(self):
        payload = _fee_response(
            [_leg("@merchant", "100"), _leg("@fees", "4", metadata={"source": "@customer"})],
            is_deductible_from=True,
        )
        state = derive_fee_breakdown_state(payload)
        assert state.is_deductible_from is True
        assert state.deductible_fees == Decimal("4")

    def test_legacy_distribution_spelling(self):
        payload = _fee_response([
            _leg("@merchant", "90"),
            _leg("@fees", "10", metadata={"source": "@customer"}),
        ])
        send = payload["transaction"]["send"]
        send["distribuite"] = send.pop("distribute")
        state = derive_fee_breakdown_state(payload)
        assert state.total_fees == Decimal("10")

    def test_fee_collected_by_source_account(self):
        payload = _fee_response(
            [_leg("@merchant", "100"), _leg("@customer", "3", metadata={"source": "@customer"})],
            is_deductible_from=False,
        )
        breakdown = build_fee_breakdown(payload)
        assert breakdown.line(BreakdownLineKind.FEE_TOTAL).label == "Fee paid by sender"


class TestBuildFeeCalculationState:
    """Conversion into the validator-facing state."""

    def test_generated_ids_and_timestamp(self, deterministic_clock):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "90"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ])
        state = build_fee_calculation_state(payload, clock=deterministic_clock)
        assert state.applied_fees[0].fee_id == "fee-1"
        assert state.applied_fees[0].priority == 1
        assert state.calculated_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_derived_state_passes_validation(self, deterministic_clock):
        payload = _plain([
            {"accountAlias": "@merchant", "value": "90"},
            {"accountAlias": "@fee_collector", "value": "10"},
        ])
        state = build_fee_calculation_state(payload, clock=deterministic_clock)
        result = validate_fee_calculation(state)
        assert result.is_valid, result.errors

    def test_logs_derivation(self, captured_logs):
        derive_fee_breakdown_state(_plain([{"accountAlias": "@merchant", "value": "100"}]))
        logs = captured_logs()
        derived = [r for r in logs if r["message"] == "fee_breakdown_derived"]
        assert derived and derived[0]["shape"] == "plain_transaction"
        assert any(r["message"] == "FEE_ENGINE_TRACE" for r in logs)


class TestLargeAmounts:
    """Amounts beyond the default 28-digit decimal context still render."""

    def test_breakdown_lines(self):
        breakdown = build_fee_breakdown(_plain(
            [
                {"accountAlias": "@merchant", "value": "999999999999999999999999990"},
                {"accountAlias": "@fee_collector", "value": "10"},
            ],
            amount="1000000000000000000000000000",
            source_value="1000000000000000000000000000",
        ))
        assert breakdown.line(BreakdownLineKind.FEE_TOTAL).text == "USD 10.00"
        assert breakdown.line(BreakdownLineKind.SENDER).text == (
            "USD 1000000000000000000000000000.00"
        )
        assert breakdown.line(BreakdownLineKind.RECIPIENT).text == (
            "USD 999999999999999999999999990.00"
        )
