"""
Module: fee_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the fee engine
    sub-modules.  This is the canonical import surface for callers (console
    handlers, API adapters, tests).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel (and sibling engine modules).
    MUST NOT import fee_config; callers pass FeePolicy and package rules in.

Invariants enforced:
    - Purity: engines never read the wall clock directly.  Timestamps come
      from an injected Clock.
    - Decimal-only arithmetic: floats in payloads are converted on entry.
    - Inputs are never mutated; responses are deep-copied before editing.

Failure modes:
    - Typed FeeKernelError subclasses for configuration and request errors.
    - Business-rule violations are returned as errors / warnings, not raised.

Audit relevance:
    Engine entry points are wrapped in ``@traced_engine`` (see
    ``fee_engines.tracer``), emitting FEE_ENGINE_TRACE log records with the
    engine name, version, input fingerprint and duration.

Usage:
    from fee_engines import derive_fee_breakdown_state, build_fee_breakdown
    from fee_engines import transaction_display_mapper
    from fee_engines import validate_and_filter_fee_response
"""

from fee_kernel.logging_config import get_logger

logger = get_logger("engines")

from fee_engines.display_mapper import (
    TransactionDisplayMapper,
    transaction_display_mapper,
)
from fee_engines.fee_breakdown import (
    BreakdownFee,
    BreakdownLine,
    BreakdownLineKind,
    FeeBreakdown,
    FeeBreakdownState,
    build_fee_breakdown,
    build_fee_calculation_state,
    derive_fee_breakdown_state,
)
from fee_engines.request_validation import (
    IssueSeverity,
    RequestRuleCode,
    RequestValidationIssue,
    RequestValidationResult,
    calculate_max_between_types,
    validate_calculation_request,
    validate_deductible_fees,
    validate_fee_rules,
)
from fee_engines.response_reconciliation import (
    FeeResponseReconciliation,
    PreservedStructure,
    extract_fee_calculation_state,
    filter_valid_fee_operations,
    reconcile_fee_response,
    should_use_structured_validation,
    validate_and_filter_fee_response,
)
from fee_engines.runtime_validation import (
    FeeRuntimeValidator,
    calculate_expected_reference_amount,
    validate_fee_calculation,
    validate_fee_priority_order,
    validate_individual_fee_calculation,
)
from fee_engines.tracer import compute_input_fingerprint, traced_engine
from fee_engines.transformers import (
    FeeEngineTransformer,
    convert_console_to_fee_engine,
    enrich_with_package_details,
    extract_package_id,
    fee_api_transaction_to_console,
)

__all__ = [
    # Transformers
    "FeeEngineTransformer",
    "convert_console_to_fee_engine",
    "enrich_with_package_details",
    "extract_package_id",
    "fee_api_transaction_to_console",
    # Fee breakdown
    "BreakdownFee",
    "BreakdownLine",
    "BreakdownLineKind",
    "FeeBreakdown",
    "FeeBreakdownState",
    "build_fee_breakdown",
    "build_fee_calculation_state",
    "derive_fee_breakdown_state",
    # Runtime validation
    "FeeRuntimeValidator",
    "calculate_expected_reference_amount",
    "validate_fee_calculation",
    "validate_fee_priority_order",
    "validate_individual_fee_calculation",
    # Display mapping
    "TransactionDisplayMapper",
    "transaction_display_mapper",
    # Response reconciliation
    "FeeResponseReconciliation",
    "PreservedStructure",
    "extract_fee_calculation_state",
    "filter_valid_fee_operations",
    "reconcile_fee_response",
    "should_use_structured_validation",
    "validate_and_filter_fee_response",
    # Request validation
    "IssueSeverity",
    "RequestRuleCode",
    "RequestValidationIssue",
    "RequestValidationResult",
    "calculate_max_between_types",
    "validate_calculation_request",
    "validate_deductible_fees",
    "validate_fee_rules",
    # Tracing
    "compute_input_fingerprint",
    "traced_engine",
]
