"""
Module: fee_engines.runtime_validation
Responsibility:
    Check a FeeCalculationState against the fee invariants and, when the
    package rules are known, against package-level consistency rules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel.

Invariants checked (errors):
    - Original amount positive, currency present, both accounts present.
    - deductible + non-deductible == total; individual fees sum to total;
      per-kind sums match their totals.
    - sender pays original + non-deductible; destination receives
      original - deductible, and never a negative amount.
    - Total fees never exceed the transaction amount.
    - Package rules: priority-1 rules use originalAmount; priorities are
      unique; every applied fee has a credit account; fee ids are unique.

Advisories (warnings):
    - High fee percentage.
    - Applied fees out of priority order.
    - afterFeesAmount fees whose reference may have shifted.

Failure modes:
    - Invariant violations are returned, never raised.
    - UnknownReferenceAmountError / UnknownApplicationRuleError for package
      data the engine cannot interpret.

Usage:
    from fee_engines.runtime_validation import validate_fee_calculation

    result = validate_fee_calculation(state, package_rules)
    if not result.is_valid:
        ...
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from fee_engines.tracer import traced_engine
from fee_kernel.domain.fee_types import (
    AppliedFee,
    ApplicationRule,
    CalculationType,
    FeeCalculationState,
    FeePackageRule,
    FeeValidationResult,
    IndividualFeeCheck,
    ReferenceAmount,
)
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import HUNDRED, ZERO, format_decimal, sum_decimals
from fee_kernel.exceptions import (
    UnknownApplicationRuleError,
    UnknownReferenceAmountError,
)
from fee_kernel.logging_config import fee_log_context, get_logger

logger = get_logger("engines.runtime_validation")


class FeeRuntimeValidator:
    """
    Validate fee calculation states.

    Contract:
        Static, pure methods.  Inputs are never mutated.
    """

    @staticmethod
    @traced_engine("runtime_validation", "1.0", fingerprint_fields=("state",))
    def validate_fee_calculation(
        state: FeeCalculationState,
        package_rules: Sequence[FeePackageRule] | None = None,
        policy: FeePolicy | None = None,
    ) -> FeeValidationResult:
        """
        Validate ``state`` and, if given, its package rules.

        Returns:
            FeeValidationResult; ``is_valid`` is True iff no errors.
        """
        with fee_log_context(package_id=state.package_id):
            return FeeRuntimeValidator._check_state(
                state, package_rules, policy or DEFAULT_FEE_POLICY
            )

    @staticmethod
    def _check_state(
        state: FeeCalculationState,
        package_rules: Sequence[FeePackageRule] | None,
        policy: FeePolicy,
    ) -> FeeValidationResult:
        tolerance = policy.amount_tolerance
        errors: list[str] = []
        warnings: list[str] = []

        if state.original_amount <= ZERO:
            errors.append("Original amount must be a positive number")
        if not state.original_currency:
            errors.append("Currency must be specified")
        if not state.source_account or not state.destination_account:
            errors.append("Both source and destination accounts must be specified")

        calculated_total = state.deductible_fees + state.non_deductible_fees
        if abs(calculated_total - state.total_fees) > tolerance:
            errors.append(
                f"Fee totals mismatch: deductible ({format_decimal(state.deductible_fees)}) "
                f"+ non-deductible ({format_decimal(state.non_deductible_fees)}) "
                f"!= total ({format_decimal(state.total_fees)})"
            )

        individual_sum = sum_decimals(f.calculated_amount for f in state.applied_fees)
        if abs(individual_sum - state.total_fees) > tolerance:
            errors.append(
                f"Individual fees sum ({format_decimal(individual_sum)}) does not match "
                f"total fees ({format_decimal(state.total_fees)})"
            )

        sum_deductible = sum_decimals(
            f.calculated_amount for f in state.applied_fees if f.is_deductible_from
        )
        sum_non_deductible = sum_decimals(
            f.calculated_amount for f in state.applied_fees if not f.is_deductible_from
        )
        if abs(sum_deductible - state.deductible_fees) > tolerance:
            errors.append(
                f"Deductible fees mismatch: sum of individual ({format_decimal(sum_deductible)}) "
                f"!= total deductible ({format_decimal(state.deductible_fees)})"
            )
        if abs(sum_non_deductible - state.non_deductible_fees) > tolerance:
            errors.append(
                f"Non-deductible fees mismatch: sum of individual "
                f"({format_decimal(sum_non_deductible)}) != total non-deductible "
                f"({format_decimal(state.non_deductible_fees)})"
            )

        expected_sender = state.original_amount + state.non_deductible_fees
        expected_recipient = state.original_amount - state.deductible_fees
        if abs(state.source_pays_amount - expected_sender) > tolerance:
            errors.append(
                f"Source amount calculation error: expected {format_decimal(expected_sender)}, "
                f"got {format_decimal(state.source_pays_amount)}"
            )
        if abs(state.destination_receives_amount - expected_recipient) > tolerance:
            errors.append(
                f"Destination amount calculation error: expected "
                f"{format_decimal(expected_recipient)}, "
                f"got {format_decimal(state.destination_receives_amount)}"
            )
        if state.destination_receives_amount < ZERO:
            errors.append("Destination cannot receive negative amount")

        if state.original_amount > ZERO:
            fee_percentage = state.total_fees / state.original_amount * HUNDRED
            if fee_percentage > policy.max_fee_percent:
                errors.append(
                    f"Total fees exceed transaction amount ({format_decimal(fee_percentage)}%)"
                )
            elif fee_percentage > policy.high_fee_warning_percent:
                warnings.append(
                    f"High fee percentage: {format_decimal(fee_percentage)}% of transaction"
                )

        if package_rules:
            rule_errors, rule_warnings = FeeRuntimeValidator._validate_against_package_rules(
                state, package_rules
            )
            errors.extend(rule_errors)
            warnings.extend(rule_warnings)

        result = FeeValidationResult(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        log = logger.info if result.is_valid else logger.warning
        log("fee_validation_completed", extra={
            "is_valid": result.is_valid,
            "error_count": len(result.errors),
            "warning_count": len(result.warnings),
            "package_id": state.package_id,
            "rule_count": len(package_rules or ()),
        })
        return result

    @staticmethod
    def _validate_against_package_rules(
        state: FeeCalculationState,
        package_rules: Sequence[FeePackageRule],
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []

        for rule in package_rules:
            if rule.priority == 1 and rule.reference_amount != ReferenceAmount.ORIGINAL_AMOUNT:
                reference = getattr(rule.reference_amount, "value", rule.reference_amount)
                errors.append(
                    f'Fee "{rule.fee_label}" has priority 1 but uses {reference} '
                    f"instead of originalAmount"
                )

        priorities = [rule.priority for rule in package_rules]
        if len(priorities) != len(set(priorities)):
            errors.append("All fees within a package must have unique priorities")

        expected_order = [r.fee_id for r in sorted(package_rules, key=lambda r: r.priority)]
        applied_ids = [fee.fee_id for fee in state.applied_fees]
        if any(a != e for a, e in zip(applied_ids, expected_order)):
            warnings.append(
                "Fees may not have been processed in priority order. Expected: "
                + ", ".join(expected_order)
                + ", Got: "
                + ", ".join(applied_ids)
            )

        rules_by_id = {rule.fee_id: rule for rule in package_rules}
        previous_deductible = ZERO
        for fee in state.applied_fees:
            rule = rules_by_id.get(fee.fee_id)
            if rule is not None and rule.reference_amount == ReferenceAmount.AFTER_FEES_AMOUNT:
                expected_reference = state.original_amount - previous_deductible
                if fee.is_deductible_from and fee.priority > 1:
                    warnings.append(
                        f'Fee "{fee.fee_label}" uses afterFeesAmount and may have been '
                        f"calculated on {format_decimal(expected_reference)} instead of "
                        f"{format_decimal(state.original_amount)}"
                    )
            if fee.is_deductible_from:
                previous_deductible += fee.calculated_amount

        for fee in state.applied_fees:
            if not fee.credit_account:
                errors.append(f'Fee "{fee.fee_label}" is missing credit account')

        fee_ids = [fee.fee_id for fee in state.applied_fees]
        if len(fee_ids) != len(set(fee_ids)):
            errors.append("Duplicate fee IDs detected in applied fees")

        return errors, warnings

    @staticmethod
    def validate_fee_priority_order(fees: Sequence[AppliedFee]) -> bool:
        """True when priorities never decrease along ``fees``."""
        return all(fees[i].priority >= fees[i - 1].priority for i in range(1, len(fees)))

    @staticmethod
    def calculate_expected_reference_amount(
        rule: FeePackageRule,
        original_amount: Decimal,
        previous_deductible_fees: Decimal,
    ) -> Decimal:
        """
        Amount base ``rule`` is calculated on.

        Raises:
            UnknownReferenceAmountError: ``rule.reference_amount`` is not a
                known reference amount.
        """
        match rule.reference_amount:
            case ReferenceAmount.ORIGINAL_AMOUNT:
                return original_amount
            case ReferenceAmount.AFTER_FEES_AMOUNT:
                return original_amount - previous_deductible_fees
            case _:
                logger.error("fee_unknown_reference_amount", extra={
                    "fee_id": rule.fee_id,
                    "reference_amount": str(rule.reference_amount),
                })
                raise UnknownReferenceAmountError(str(rule.reference_amount), rule.fee_id)

    @staticmethod
    def validate_individual_fee_calculation(
        fee: AppliedFee,
        rule: FeePackageRule,
        reference_amount: Decimal,
        policy: FeePolicy | None = None,
    ) -> IndividualFeeCheck:
        """
        Recompute ``fee`` from ``rule``'s calculation model.

        Without a calculation model the fee cannot be checked and is
        accepted.

        Raises:
            UnknownApplicationRuleError: the model's application rule is not
                a known rule.
        """
        if rule.calculation_model is None:
            return IndividualFeeCheck(is_valid=True)

        tolerance = (policy or DEFAULT_FEE_POLICY).amount_tolerance
        model = rule.calculation_model

        def _percent_of_reference(value: Decimal) -> Decimal:
            return value / HUNDRED * reference_amount

        expected = ZERO
        match model.application_rule:
            case ApplicationRule.FLAT_FEE:
                flat = next((c for c in model.calculations if c.type == CalculationType.FLAT), None)
                expected = flat.value if flat else ZERO
            case ApplicationRule.PERCENTUAL:
                pct = next(
                    (c for c in model.calculations if c.type == CalculationType.PERCENTAGE), None
                )
                expected = _percent_of_reference(pct.value) if pct else ZERO
            case ApplicationRule.MAX_BETWEEN_TYPES:
                for calculation in model.calculations:
                    if calculation.type == CalculationType.FLAT:
                        candidate = calculation.value
                    elif calculation.type == CalculationType.PERCENTAGE:
                        candidate = _percent_of_reference(calculation.value)
                    else:
                        continue
                    expected = max(expected, candidate)
            case _:
                logger.error("fee_unknown_application_rule", extra={
                    "fee_id": rule.fee_id,
                    "application_rule": str(model.application_rule),
                })
                raise UnknownApplicationRuleError(str(model.application_rule), rule.fee_id)

        is_valid = abs(fee.calculated_amount - expected) < tolerance
        return IndividualFeeCheck(
            is_valid=is_valid,
            expected_amount=expected,
            error=None if is_valid else (
                f"Expected {format_decimal(expected)}, got {format_decimal(fee.calculated_amount)}"
            ),
        )


validate_fee_calculation = FeeRuntimeValidator.validate_fee_calculation
validate_fee_priority_order = FeeRuntimeValidator.validate_fee_priority_order
calculate_expected_reference_amount = FeeRuntimeValidator.calculate_expected_reference_amount
validate_individual_fee_calculation = FeeRuntimeValidator.validate_individual_fee_calculation
