"""
Tests for fee service response reconciliation.

Covers:
- Path selection between structured and legacy reconciliation
- Filtering of fee legs that do not belong to the transaction
- Balance and missing-source checks
- Runtime validation with the response's package rules
- Legacy merging, source deduplication and rescaling
- Payloads are never mutated
"""

import copy
from decimal import Decimal

import pytest

from fee_engines.response_reconciliation import (
    extract_fee_calculation_state,
    filter_valid_fee_operations,
    reconcile_fee_response,
    should_use_structured_validation,
    validate_and_filter_fee_response,
)
from fee_kernel.exceptions import FeeResponseValidationError, NegativeSourceAmountError


def _leg(alias: str, value: str, **extra) -> dict:
    return {"accountAlias": alias, "amount": {"asset": "USD", "value": value}, **extra}


def _fee(alias: str, value: str, source: str = "@a") -> dict:
    return _leg(alias, value, metadata={"source": source})


def _response(sources: list[dict], destinations: list[dict], value: str = "100", **transaction) -> dict:
    return {
        "transaction": {
            "send": {
                "asset": "USD",
                "value": value,
                "source": {"from": sources},
                "distribute": {"to": destinations},
            },
            **transaction,
        }
    }


def _request(sources: list[tuple[str, str]], destinations: list[tuple[str, str]], value: str = "100") -> dict:
    return {
        "transaction": {
            "asset": "USD",
            "value": value,
            "source": [{"accountAlias": a, "value": v} for a, v in sources],
            "destination": [{"accountAlias": a, "value": v} for a, v in destinations],
        }
    }


REQUEST = _request([("@a", "100")], [("@b", "100")])

PRIORITY_ONE_AFTER_FEES = [{
    "feeId": "f1",
    "feeLabel": "Processing",
    "priority": 1,
    "referenceAmount": "afterFeesAmount",
    "creditAccount": "@fees",
    "isDeductibleFrom": False,
}]


class TestPathSelection:
    """Tests for should_use_structured_validation."""

    def test_plain_one_to_one_is_legacy(self):
        assert not should_use_structured_validation(_response([_leg("@a", "100")], [_leg("@b", "100")]))

    def test_fee_leg_is_structured(self):
        assert should_use_structured_validation(
            _response([_leg("@a", "105")], [_leg("@b", "100"), _fee("@fees", "5")])
        )

    def test_multiple_sources_is_structured(self):
        assert should_use_structured_validation(
            _response([_leg("@a", "50"), _leg("@c", "50")], [_leg("@b", "100")])
        )

    def test_duplicate_sources_is_structured(self):
        assert should_use_structured_validation(
            _response([_leg("@a", "50"), _leg("@a", "50")], [_leg("@b", "100")])
        )

    def test_missing_transaction(self):
        assert not should_use_structured_validation({"message": "no fees"})


class TestFeeLegFiltering:
    def test_valid_sources(self):
        accounts = {"@a", "@b"}
        ops = [
            _fee("@fees", "5", source="@a"),
            _fee("@fees", "5", source="fee"),
            _fee("@fees", "5", source="@stranger"),
            _fee("@fees", "0", source="@a"),
            _fee("", "5", source="@a"),
        ]
        assert len(filter_valid_fee_operations(ops, accounts)) == 2


class TestStructuredReconciliation:
    """Tests for reconcile_fee_response."""

    def test_balanced_response_is_valid(self):
        response = _response([_leg("@a", "105")], [_leg("@b", "100"), _fee("@fees", "5")], value="105")
        result = reconcile_fee_response(response, REQUEST)
        assert result.is_valid
        to = result.validated_response["transaction"]["send"]["distribute"]["to"]
        assert [op["operationType"] for op in to] == ["destination", "fee"]
        assert [op["operationIndex"] for op in to] == [0, 1]
        assert result.preserved_structure.fees[0]["accountAlias"] == "@fees"

    def test_invalid_fee_filtered_with_warning(self):
        response = _response(
            [_leg("@a", "100")], [_leg("@b", "100"), _fee("@x", "5", source="@stranger")]
        )
        result = reconcile_fee_response(response, REQUEST)
        assert result.is_valid
        assert "1 invalid fee operations were filtered out" in result.warnings
        to = result.validated_response["transaction"]["send"]["distribute"]["to"]
        assert [op["accountAlias"] for op in to] == ["@b"]

    def test_unbalanced_response(self):
        response = _response([_leg("@a", "100")], [_leg("@b", "100"), _fee("@fees", "5")])
        result = reconcile_fee_response(response, REQUEST)
        assert not result.is_valid
        assert result.errors == (
            "Transaction is unbalanced: source total (100.00) != destination total (105.00)",
        )

    def test_missing_source(self):
        request = _request([("@a", "50"), ("@c", "50")], [("@b", "100")])
        response = _response([_leg("@a", "100")], [_leg("@b", "95"), _fee("@fees", "5")])
        result = reconcile_fee_response(response, request)
        assert "Source account @c is missing from response" in result.errors

    def test_overlap_warning(self):
        request = _request([("@a", "100")], [("@a", "95")])
        response = _response([_leg("@a", "100")], [_leg("@a", "95"), _fee("@fees", "5")])
        result = reconcile_fee_response(response, request)
        assert "Accounts appear in both source and destination: @a" in result.warnings

    def test_package_rules_validated(self):
        response = _response(
            [_leg("@a", "105")], [_leg("@b", "100"), _fee("@fees", "5")], value="105",
            feeRules=PRIORITY_ONE_AFTER_FEES,
        )
        result = reconcile_fee_response(response, REQUEST)
        assert not result.is_valid
        assert any('"Processing" has priority 1' in e for e in result.errors)

    def test_fee_api_request_shape(self):
        request = _response([_leg("@a", "100")], [_leg("@b", "100")])
        response = _response([_leg("@a", "105")], [_leg("@b", "100"), _fee("@fees", "5")], value="105")
        assert reconcile_fee_response(response, request).is_valid

    def test_payload_not_mutated(self):
        response = _response([_leg("@a", "105")], [_leg("@b", "100"), _fee("@fees", "5")], value="105")
        snapshot = copy.deepcopy(response)
        reconcile_fee_response(response, REQUEST)
        assert response == snapshot


class TestDispatcher:
    """Tests for validate_and_filter_fee_response."""

    def test_structured_failure_raises(self):
        response = _response([_leg("@a", "100")], [_leg("@b", "100"), _fee("@fees", "5")])
        with pytest.raises(FeeResponseValidationError) as exc_info:
            validate_and_filter_fee_response(response, REQUEST)
        assert exc_info.value.code == "FEE_RESPONSE_VALIDATION_FAILED"
        assert exc_info.value.stage == "transaction"
        assert str(exc_info.value).startswith("Transaction validation failed:")

    def test_plain_response_passes_through(self):
        response = _response([_leg("@a", "100")], [_leg("@b", "100")])
        assert validate_and_filter_fee_response(response, REQUEST) == response

    def test_no_transaction_returns_copy(self):
        payload = {"feesApplied": [], "message": "No fees applied"}
        result = validate_and_filter_fee_response(payload, REQUEST)
        assert result == payload
        assert result is not payload


class TestLegacyPath:
    """Legacy reconciliation: merge, deduplicate, rescale."""

    def test_fee_merged_into_destination(self):
        response = _response([_leg("@a", "100")], [_leg("@b", "95"), _fee("@b", "5")])
        result = validate_and_filter_fee_response(response, REQUEST, structured=False)
        to = result["transaction"]["send"]["distribute"]["to"]
        assert len(to) == 1
        assert to[0]["amount"]["value"] == "100.00"
        assert to[0]["metadata"]["isMerged"] is True
        assert to[0]["metadata"]["mergedFeeAmount"] == "5.00"
        assert result["transaction"]["send"]["value"] == "100.00"

    def test_duplicate_sources_summed(self):
        response = _response([_leg("@a", "50"), _leg("@a", "50")], [_leg("@b", "100")])
        result = validate_and_filter_fee_response(response, REQUEST, structured=False)
        sources = result["transaction"]["send"]["source"]["from"]
        assert len(sources) == 1
        assert sources[0]["amount"]["value"] == "100.00"

    def test_sources_rescaled_after_filtering(self):
        request = _request([("@a", "60"), ("@c", "45")], [("@b", "100")], value="105")
        response = _response(
            [_leg("@a", "60"), _leg("@c", "45")],
            [_leg("@b", "100"), _fee("@x", "5", source="@stranger")],
            value="105",
        )
        result = validate_and_filter_fee_response(response, request, structured=False)
        send = result["transaction"]["send"]
        assert send["value"] == "100.00"
        assert [op["amount"]["value"] for op in send["source"]["from"]] == ["57.14", "42.86"]

    def test_negative_source_raises(self):
        request = _request([("@a", "150"), ("@c", "-50")], [("@b", "90")])
        response = _response(
            [_leg("@a", "150"), _leg("@c", "-50")],
            [_leg("@b", "90"), _fee("@x", "5", source="@stranger")],
        )
        with pytest.raises(NegativeSourceAmountError) as exc_info:
            validate_and_filter_fee_response(response, request, structured=False)
        assert exc_info.value.account_alias == "@c"

    def test_fee_rule_failure_raises_fee_stage(self):
        response = _response(
            [_leg("@a", "100")], [_leg("@b", "95"), _fee("@fees", "5")],
            feeRules=PRIORITY_ONE_AFTER_FEES,
        )
        with pytest.raises(FeeResponseValidationError) as exc_info:
            validate_and_filter_fee_response(response, REQUEST, structured=False)
        assert exc_info.value.stage == "fee"
        assert str(exc_info.value).startswith("Fee validation failed:")


class TestExtractFeeCalculationState:
    def test_state_from_response(self, deterministic_clock):
        response = _response(
            [_leg("@a", "102")],
            [_leg("@b", "95"), _fee("@fees", "5"), _fee("@tax", "2")],
            value="102",
            packageAppliedID="pkg-9",
            feeRules=[
                {"feeId": "f1", "feeLabel": "Processing", "priority": 1,
                 "creditAccount": "@fees", "isDeductibleFrom": True},
            ],
        )
        state = extract_fee_calculation_state(response, REQUEST, clock=deterministic_clock)
        assert state.original_amount == Decimal("100")
        assert state.deductible_fees == Decimal("5")
        assert state.non_deductible_fees == Decimal("2")
        assert state.source_pays_amount == Decimal("102")
        assert state.destination_receives_amount == Decimal("95")
        assert state.destination_account == "@b"
        assert [f.fee_id for f in state.applied_fees] == ["f1", "fee-2"]
        assert state.package_id == "pkg-9"
