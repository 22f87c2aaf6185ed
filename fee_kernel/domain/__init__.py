"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- Configuration files
- Time/clock (except through the injected Clock)
- I/O

All domain objects are immutable and deterministic.
"""

from fee_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from fee_kernel.domain.display_types import (
    DisplayAppliedFee,
    DisplayMode,
    EnhancedOperation,
    FeeCalculationBlock,
    FeeType,
    OperationType,
    TransactionDisplayData,
    TransactionFlow,
    TransactionSummary,
)
from fee_kernel.domain.fee_types import (
    AppliedFee,
    ApplicationRule,
    CalculationModel,
    CalculationType,
    FeeCalculationEntry,
    FeeCalculationState,
    FeePackageRule,
    FeeValidationResult,
    IndividualFeeCheck,
    ReferenceAmount,
    match_fee_rule,
    normalize_alias,
)
from fee_kernel.domain.operations import (
    FeeApiDialect,
    FeeServiceResponse,
    Operation,
    PlainTransaction,
    TransactionInput,
    distribution_operations,
    is_fee_operation,
    is_fee_service_payload,
    parse_transaction_input,
    source_operations,
)
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import (
    MonetaryAmount,
    format_amount,
    format_decimal,
    format_wire,
    parse_decimal,
    to_display,
)

__all__ = [
    # Value Objects
    "MonetaryAmount",
    "parse_decimal",
    "to_display",
    "format_decimal",
    "format_amount",
    "format_wire",
    # Operations
    "Operation",
    "FeeApiDialect",
    "FeeServiceResponse",
    "PlainTransaction",
    "TransactionInput",
    "distribution_operations",
    "source_operations",
    "is_fee_operation",
    "is_fee_service_payload",
    "parse_transaction_input",
    # Fee types
    "ReferenceAmount",
    "ApplicationRule",
    "CalculationType",
    "FeeCalculationEntry",
    "CalculationModel",
    "FeePackageRule",
    "AppliedFee",
    "FeeCalculationState",
    "FeeValidationResult",
    "IndividualFeeCheck",
    "match_fee_rule",
    "normalize_alias",
    # Display types
    "OperationType",
    "FeeType",
    "DisplayMode",
    "EnhancedOperation",
    "TransactionFlow",
    "TransactionSummary",
    "DisplayAppliedFee",
    "FeeCalculationBlock",
    "TransactionDisplayData",
    # Policy
    "FeePolicy",
    "DEFAULT_FEE_POLICY",
    # Clock
    "Clock",
    "SystemClock",
    "DeterministicClock",
]
