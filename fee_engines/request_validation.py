"""
Module: fee_engines.request_validation
Responsibility:
    Pre-flight business-rule checks of an outbound fee API calculation
    request and of fee package rule definitions, before anything is sent to
    the fee service.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel.

Invariants checked:
    - Request identity: segmentId, ledgerId, transaction and chart of
      accounts group are present.
    - Amounts: positive ``send.value``; every leg has an alias, a numeric
      amount and a chart of accounts; leg assets match ``send.asset``.
    - Distribution: source shares sum to 100; source and destination
      totals both equal ``send.value`` (within tolerance).
    - Rules: priority 1 references originalAmount, later priorities
      reference afterFeesAmount, maxBetweenTypes has both calculations.

Failure modes:
    None.  Every problem is returned as a RequestValidationIssue; warnings
    do not make a result invalid.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from fee_kernel.domain.fee_types import ApplicationRule, ReferenceAmount
from fee_kernel.domain.operations import FeeApiDialect
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import HUNDRED, ZERO, parse_decimal
from fee_kernel.logging_config import get_logger

logger = get_logger("engines.request_validation")


class RequestRuleCode(str, Enum):
    """Fee API error codes of request validation failures."""

    PRIORITY_1_REFERENCE = "0148"
    PRIORITY_GREATER_1_REFERENCE = "0149"
    MAX_BETWEEN_TYPES_RULE = "0150"
    INVALID_PERCENTAGE_SUM = "0151"
    INVALID_ASSET_CONSISTENCY = "0152"
    INVALID_AMOUNT_VALUE = "0153"
    MISSING_CHART_OF_ACCOUNTS = "0154"
    INVALID_DISTRIBUTION_SUM = "0155"
    DEDUCTIBLE_FEE_VALIDATION = "0156"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class RequestValidationIssue:
    code: str
    field: str
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR


@dataclass(frozen=True)
class RequestValidationResult:
    """``is_valid`` is False only when an issue has error severity."""

    is_valid: bool
    issues: tuple[RequestValidationIssue, ...] = ()

    @property
    def errors(self) -> tuple[RequestValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == IssueSeverity.ERROR)

    @property
    def warnings(self) -> tuple[RequestValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == IssueSeverity.WARNING)


def _result(issues: Sequence[RequestValidationIssue]) -> RequestValidationResult:
    return RequestValidationResult(
        is_valid=not any(i.severity == IssueSeverity.ERROR for i in issues),
        issues=tuple(issues),
    )


def _issue(code: RequestRuleCode, field: str, message: str,
           severity: IssueSeverity = IssueSeverity.ERROR) -> RequestValidationIssue:
    return RequestValidationIssue(code=code.value, field=field, message=message, severity=severity)


def _plain(value: Decimal) -> str:
    """Decimal without trailing zeros or exponent, e.g. ``1000`` or ``99.5``."""
    return format(value.normalize(), "f")


def _is_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    if isinstance(value, str):
        try:
            return Decimal(value.strip()).is_finite()
        except InvalidOperation:
            return False
    return False


def _legs(block: Any, key: str) -> list[Mapping[str, Any]]:
    if not isinstance(block, Mapping) or not isinstance(block.get(key), list):
        return []
    return [leg for leg in block[key] if isinstance(leg, Mapping)]


def _distribution(send: Mapping[str, Any]) -> tuple[str, list[Mapping[str, Any]]]:
    for dialect in FeeApiDialect:
        if isinstance(send.get(dialect.value), Mapping):
            return dialect.value, _legs(send[dialect.value], "to")
    return FeeApiDialect.DISTRIBUTE.value, []


def _validate_leg(leg: Mapping[str, Any], prefix: str, role: str) -> list[RequestValidationIssue]:
    issues: list[RequestValidationIssue] = []
    if not leg.get("account") and not leg.get("accountAlias"):
        issues.append(_issue(
            RequestRuleCode.MISSING_CHART_OF_ACCOUNTS, f"{prefix}.account",
            "Either account or accountAlias is required",
        ))
    if not _is_number((leg.get("amount") or {}).get("value")):
        issues.append(_issue(
            RequestRuleCode.INVALID_AMOUNT_VALUE, f"{prefix}.amount.value",
            "Valid amount value is required",
        ))
    if not leg.get("chartOfAccounts"):
        issues.append(_issue(
            RequestRuleCode.MISSING_CHART_OF_ACCOUNTS, f"{prefix}.chartOfAccounts",
            f"Chart of accounts is required for {role} account",
        ))
    share = leg.get("share")
    if isinstance(share, Mapping):
        for key, label in (
            ("percentage", "Percentage"),
            ("percentageOfPercentage", "Percentage of percentage"),
        ):
            if share.get(key) is not None:
                pct = parse_decimal(share[key])
                if pct < ZERO or pct > HUNDRED:
                    issues.append(_issue(
                        RequestRuleCode.INVALID_PERCENTAGE_SUM, f"{prefix}.share.{key}",
                        f"{label} must be between 0 and 100",
                    ))
    return issues


def _validate_send(
    send: Mapping[str, Any], policy: FeePolicy
) -> list[RequestValidationIssue]:
    issues: list[RequestValidationIssue] = []
    asset = send.get("asset")
    if not asset:
        issues.append(_issue(
            RequestRuleCode.INVALID_ASSET_CONSISTENCY, "transaction.send.asset",
            "Asset is required in send object",
        ))
    if not _is_number(send.get("value")) or parse_decimal(send.get("value")) <= ZERO:
        issues.append(_issue(
            RequestRuleCode.INVALID_AMOUNT_VALUE, "transaction.send.value",
            "Transaction value must be a positive number",
        ))

    sources = _legs(send.get("source"), "from")
    distribution_key, destinations = _distribution(send)
    source_prefix = "transaction.send.source.from"
    destination_prefix = f"transaction.send.{distribution_key}.to"

    for index, leg in enumerate(sources):
        issues.extend(_validate_leg(leg, f"{source_prefix}[{index}]", "source"))
    for index, leg in enumerate(destinations):
        issues.extend(_validate_leg(leg, f"{destination_prefix}[{index}]", "destination"))

    # asset consistency
    for prefix, legs in ((source_prefix, sources), (destination_prefix, destinations)):
        for index, leg in enumerate(legs):
            leg_asset = (leg.get("amount") or {}).get("asset")
            if leg_asset and leg_asset != asset:
                issues.append(_issue(
                    RequestRuleCode.INVALID_ASSET_CONSISTENCY,
                    f"{prefix}[{index}].amount.asset",
                    f"Asset must match transaction asset ({asset})",
                ))

    # distribution
    total_value = parse_decimal(send.get("value"))
    if sources:
        shares = [
            parse_decimal(leg["share"].get("percentage"))
            for leg in sources
            if isinstance(leg.get("share"), Mapping) and leg["share"].get("percentage") is not None
        ]
        if shares:
            total_pct = sum(shares, ZERO)
            if abs(total_pct - HUNDRED) > policy.amount_tolerance:
                issues.append(_issue(
                    RequestRuleCode.INVALID_PERCENTAGE_SUM, source_prefix,
                    f"Source account percentages must sum to 100% (current: {_plain(total_pct)}%)",
                ))
        source_total = sum((parse_decimal((leg.get("amount") or {}).get("value")) for leg in sources), ZERO)
        if abs(source_total - total_value) > policy.amount_tolerance:
            issues.append(_issue(
                RequestRuleCode.INVALID_DISTRIBUTION_SUM, source_prefix,
                f"Source amounts must sum to transaction value "
                f"(expected: {_plain(total_value)}, got: {_plain(source_total)})",
            ))
    if destinations:
        destination_total = sum(
            (parse_decimal((leg.get("amount") or {}).get("value")) for leg in destinations), ZERO
        )
        if abs(destination_total - total_value) > policy.amount_tolerance:
            issues.append(_issue(
                RequestRuleCode.INVALID_DISTRIBUTION_SUM, destination_prefix,
                f"Destination amounts must sum to transaction value "
                f"(expected: {_plain(total_value)}, got: {_plain(destination_total)})",
            ))
    return issues


def validate_calculation_request(
    request: Mapping[str, Any],
    policy: FeePolicy | None = None,
) -> RequestValidationResult:
    """Validate a fee API calculation request before it is sent."""
    policy = policy or DEFAULT_FEE_POLICY
    issues: list[RequestValidationIssue] = []

    if not request.get("segmentId"):
        issues.append(_issue(
            RequestRuleCode.MISSING_CHART_OF_ACCOUNTS, "segmentId",
            "Segment ID is required for fee calculation",
        ))
    if not request.get("ledgerId"):
        issues.append(_issue(
            RequestRuleCode.MISSING_CHART_OF_ACCOUNTS, "ledgerId",
            "Ledger ID is required for fee calculation",
        ))

    transaction = request.get("transaction")
    if not isinstance(transaction, Mapping) or not transaction:
        issues.append(_issue(
            RequestRuleCode.INVALID_AMOUNT_VALUE, "transaction",
            "Transaction object is required",
        ))
    else:
        if not transaction.get("chartOfAccountsGroupName"):
            issues.append(_issue(
                RequestRuleCode.MISSING_CHART_OF_ACCOUNTS,
                "transaction.chartOfAccountsGroupName",
                "Chart of accounts group name is required",
            ))
        send = transaction.get("send")
        if not isinstance(send, Mapping) or not send:
            issues.append(_issue(
                RequestRuleCode.INVALID_AMOUNT_VALUE, "transaction.send",
                "Transaction send object is required",
            ))
        else:
            issues.extend(_validate_send(send, policy))

    result = _result(issues)
    logger.info("fee_request_validated", extra={
        "is_valid": result.is_valid,
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
    })
    return result


def validate_fee_rules(rules: Sequence[Mapping[str, Any]]) -> RequestValidationResult:
    """
    Validate fee rule definitions.

    Rules use the request shape: ``priority``, ``referenceAmount``,
    ``applicationRule`` and ``calculations: {flatAmount, percentage}``.
    """
    issues: list[RequestValidationIssue] = []
    for index, rule in enumerate(rules):
        priority = int(rule.get("priority") or 0)
        reference = rule.get("referenceAmount")
        if priority == 1 and reference != ReferenceAmount.ORIGINAL_AMOUNT.value:
            issues.append(_issue(
                RequestRuleCode.PRIORITY_1_REFERENCE, f"feeRules[{index}].referenceAmount",
                "Priority 1 fees must reference originalAmount per RFC requirements",
            ))
        if priority > 1 and reference != ReferenceAmount.AFTER_FEES_AMOUNT.value:
            issues.append(_issue(
                RequestRuleCode.PRIORITY_GREATER_1_REFERENCE,
                f"feeRules[{index}].referenceAmount",
                "Priority greater than 1 fees must reference afterFeesAmount per RFC requirements",
            ))
        if rule.get("applicationRule") == ApplicationRule.MAX_BETWEEN_TYPES.value:
            calculations = rule.get("calculations") or {}
            if calculations.get("flatAmount") is None or calculations.get("percentage") is None:
                issues.append(_issue(
                    RequestRuleCode.MAX_BETWEEN_TYPES_RULE, f"feeRules[{index}].calculations",
                    "maxBetweenTypes rule requires both flatAmount and percentage calculations",
                ))
    return _result(issues)


def calculate_max_between_types(
    flat_amount: Decimal,
    percentage: Decimal,
    reference_amount: Decimal,
) -> Decimal:
    """Greater of the flat amount and ``percentage`` % of the reference."""
    return max(flat_amount, percentage / HUNDRED * reference_amount)


def validate_deductible_fees(rules: Sequence[Mapping[str, Any]]) -> RequestValidationResult:
    """Warn when deductible fees share a priority."""
    issues: list[RequestValidationIssue] = []
    priorities = [rule.get("priority") for rule in rules if rule.get("isDeductibleFrom")]
    if len(priorities) != len(set(priorities)):
        issues.append(_issue(
            RequestRuleCode.DEDUCTIBLE_FEE_VALIDATION, "feeRules",
            "Deductible fees must have unique priorities",
            severity=IssueSeverity.WARNING,
        ))
    return _result(issues)
