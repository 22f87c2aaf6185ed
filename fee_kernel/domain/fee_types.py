"""
Fee types -- package rules, applied fees and calculation state.

Responsibility:
    Immutable DTOs exchanged between the fee engines: the package rule
    definitions supplied by the fee package service, the fees actually
    applied to a transaction, the aggregate FeeCalculationState checked by
    the runtime validator, and the validator's result objects.

Architecture position:
    Kernel > Domain -- pure data, zero I/O.

Invariants enforced:
    None at construction.  The state invariants (sums, sender/recipient
    arithmetic) are checked by ``fee_engines.runtime_validation`` so that a
    broken state coming from an upstream service can still be represented
    and reported instead of failing to construct.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from fee_kernel.domain.values import ZERO, parse_decimal


class ReferenceAmount(str, Enum):
    """Amount base a fee is calculated on."""

    ORIGINAL_AMOUNT = "originalAmount"
    AFTER_FEES_AMOUNT = "afterFeesAmount"


class ApplicationRule(str, Enum):
    """How a rule's calculations combine into one fee."""

    FLAT_FEE = "flatFee"
    PERCENTUAL = "percentual"
    MAX_BETWEEN_TYPES = "maxBetweenTypes"


class CalculationType(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


def _coerce_enum(enum_cls: type[Enum], value: Any) -> Any:
    """Return the enum member for ``value``, or the raw value if unknown.

    Unknown values are kept so the engines can raise their typed
    configuration errors at the point of use.
    """
    try:
        return enum_cls(value)
    except ValueError:
        return value


def normalize_alias(alias: str | None) -> str:
    """Account alias without its leading ``@`` marker."""
    return (alias or "").lstrip("@")


@dataclass(frozen=True)
class FeeCalculationEntry:
    """One calculation of a model: a flat amount or a percentage."""

    type: CalculationType | str
    value: Decimal


@dataclass(frozen=True)
class CalculationModel:
    """Calculation model of a package rule."""

    application_rule: ApplicationRule | str
    calculations: tuple[FeeCalculationEntry, ...] = ()

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> CalculationModel:
        return cls(
            application_rule=_coerce_enum(
                ApplicationRule, data.get("applicationRule", ApplicationRule.PERCENTUAL.value)
            ),
            calculations=tuple(
                FeeCalculationEntry(
                    type=_coerce_enum(CalculationType, c.get("type")),
                    value=parse_decimal(c.get("value")),
                )
                for c in data.get("calculations") or ()
                if isinstance(c, dict)
            ),
        )


@dataclass(frozen=True)
class FeePackageRule:
    """
    A configured fee definition belonging to a fee package.

    Contract:
        Supplied by the fee package service (or the YAML loader) and never
        mutated.  ``priority`` is unique within a package; the validator
        reports violations.
    """

    fee_id: str
    fee_label: str
    priority: int
    reference_amount: ReferenceAmount | str = ReferenceAmount.ORIGINAL_AMOUNT
    is_deductible_from: bool = False
    credit_account: str = ""
    calculation_model: CalculationModel | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any], fee_id: str | None = None) -> FeePackageRule:
        """
        Build from a ``feeRules[]`` entry or a package ``fees`` mapping value.

        Accepts the calculation model either nested under
        ``calculationModel`` or flattened as ``applicationRule`` /
        ``calculations`` (the package details shape).
        """
        model_data = data.get("calculationModel")
        if model_data is None and data.get("applicationRule") is not None:
            model_data = {
                "applicationRule": data.get("applicationRule"),
                "calculations": data.get("calculations"),
            }
        return cls(
            fee_id=str(fee_id or data.get("feeId") or ""),
            fee_label=str(data.get("feeLabel") or ""),
            priority=int(data.get("priority") or 0),
            reference_amount=_coerce_enum(
                ReferenceAmount,
                data.get("referenceAmount") or ReferenceAmount.ORIGINAL_AMOUNT.value,
            ),
            is_deductible_from=bool(data.get("isDeductibleFrom", False)),
            credit_account=str(data.get("creditAccount") or ""),
            calculation_model=(
                CalculationModel.from_payload(model_data)
                if isinstance(model_data, dict)
                else None
            ),
        )

    def credits(self, account_alias: str | None) -> bool:
        """True when this rule credits ``account_alias`` (``@`` ignored)."""
        if not self.credit_account or not account_alias:
            return False
        return normalize_alias(self.credit_account) == normalize_alias(account_alias)


def match_fee_rule(
    rules: Iterable[FeePackageRule],
    account_alias: str | None,
) -> FeePackageRule | None:
    """First rule crediting ``account_alias``, or None."""
    for rule in rules:
        if rule.credits(account_alias):
            return rule
    return None


@dataclass(frozen=True)
class AppliedFee:
    """
    One fee line with its resolution.

    ``is_deductible_from`` True means the fee reduces what the recipient
    receives; False means it is added on top of what the sender pays.
    """

    fee_id: str
    fee_label: str
    calculated_amount: Decimal
    is_deductible_from: bool
    credit_account: str
    priority: int


@dataclass(frozen=True)
class FeeCalculationState:
    """Aggregate fee calculation of one transaction."""

    original_amount: Decimal
    original_currency: str
    source_account: str
    destination_account: str
    deductible_fees: Decimal
    non_deductible_fees: Decimal
    total_fees: Decimal
    applied_fees: tuple[AppliedFee, ...]
    source_pays_amount: Decimal
    destination_receives_amount: Decimal
    calculated_at: datetime
    package_id: str | None = None
    package_label: str | None = None

    @classmethod
    def from_applied_fees(
        cls,
        *,
        original_amount: Decimal,
        original_currency: str,
        source_account: str,
        destination_account: str,
        applied_fees: Iterable[AppliedFee],
        calculated_at: datetime,
        package_id: str | None = None,
        package_label: str | None = None,
    ) -> FeeCalculationState:
        """
        Derive the totals from the applied fees.

        Postconditions:
            - deductible + non-deductible == total (exactly).
            - source pays = original + non-deductible.
            - destination receives = original - deductible.
        """
        fees = tuple(applied_fees)
        deductible = sum(
            (f.calculated_amount for f in fees if f.is_deductible_from), ZERO
        )
        non_deductible = sum(
            (f.calculated_amount for f in fees if not f.is_deductible_from), ZERO
        )
        return cls(
            original_amount=original_amount,
            original_currency=original_currency,
            source_account=source_account,
            destination_account=destination_account,
            deductible_fees=deductible,
            non_deductible_fees=non_deductible,
            total_fees=deductible + non_deductible,
            applied_fees=fees,
            source_pays_amount=original_amount + non_deductible,
            destination_receives_amount=original_amount - deductible,
            calculated_at=calculated_at,
            package_id=package_id,
            package_label=package_label,
        )


@dataclass(frozen=True)
class FeeValidationResult:
    """Outcome of a runtime validation: blocking errors and advisories."""

    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class IndividualFeeCheck:
    """Outcome of recomputing one fee from its calculation model."""

    is_valid: bool
    expected_amount: Decimal | None = None
    error: str | None = None


