"""
Display types -- the normalized projection rendered by transaction views.

TransactionDisplayData is created fresh for every render and never
persisted.  Identifiers (``flow_id``, ``operation_id``) are random per call;
only the numeric content is stable across calls on the same input.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from fee_kernel.domain.values import ZERO


class OperationType(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"
    FEE = "fee"


class FeeType(str, Enum):
    DEDUCTIBLE = "deductible"
    NON_DEDUCTIBLE = "non-deductible"


class DisplayMode(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


@dataclass(frozen=True)
class EnhancedOperation:
    """An operation annotated with its role in the transaction."""

    operation_id: str
    operation_type: OperationType
    account_alias: str
    asset: str
    amount: Decimal
    original_amount: Decimal
    description: str | None = None
    chart_of_accounts: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    is_fee: bool = False
    fee_type: FeeType | None = None
    source_account_alias: str | None = None

    @property
    def is_merged(self) -> bool:
        return bool(self.metadata.get("isMerged"))


@dataclass(frozen=True)
class TransactionFlow:
    """
    One source account's contribution to its destinations and fees.

    ``is_simple_flow`` holds when the transaction has exactly one source and
    one non-fee destination.
    """

    flow_id: str
    source_operation: EnhancedOperation
    destination_operations: tuple[EnhancedOperation, ...]
    fee_operations: tuple[EnhancedOperation, ...]
    source_amount: Decimal
    destination_total_amount: Decimal
    fee_total_amount: Decimal
    is_simple_flow: bool
    has_deductible_fees: bool = False
    has_non_deductible_fees: bool = False


@dataclass(frozen=True)
class TransactionSummary:
    total_source_amount: Decimal = ZERO
    total_destination_amount: Decimal = ZERO
    total_fee_amount: Decimal = ZERO
    total_deductible_fees: Decimal = ZERO
    total_non_deductible_fees: Decimal = ZERO
    unique_source_accounts: tuple[str, ...] = ()
    unique_destination_accounts: tuple[str, ...] = ()
    unique_fee_accounts: tuple[str, ...] = ()


@dataclass(frozen=True)
class DisplayAppliedFee:
    """A fee line of the fee calculation block."""

    fee_id: str
    fee_label: str
    amount: Decimal
    credit_account: str
    is_deductible_from: bool
    source_account: str | None = None


@dataclass(frozen=True)
class FeeCalculationBlock:
    package_id: str | None
    package_label: str | None
    is_deductible_from: bool
    applied_fees: tuple[DisplayAppliedFee, ...] = ()


@dataclass(frozen=True)
class TransactionDisplayData:
    """Top-level display projection of one transaction."""

    asset: str
    original_amount: Decimal
    flows: tuple[TransactionFlow, ...]
    summary: TransactionSummary
    display_mode: DisplayMode
    warnings: tuple[str, ...] = ()
    description: str | None = None
    chart_of_accounts_group_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    fee_calculation: FeeCalculationBlock | None = None
    transaction_id: str | None = None

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)
