"""
Module: fee_engines.response_reconciliation
Responsibility:
    Check a fee service response against the request that produced it
    before the response reaches the display layer: drop fee legs that do not
    belong to the transaction, confirm the transaction still balances,
    confirm every requested source survived, and run the runtime validator
    over the fees using the response's package rules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel and sibling engine modules.

Two paths:
    - Structured (multi-party, fee-bearing or duplicate-source responses):
      every operation is kept as returned and tagged with
      ``operationIndex`` / ``operationType`` / ``isDuplicate``; problems are
      returned on a FeeResponseReconciliation.
    - Legacy (plain 1:1 responses): duplicate sources are summed, a fee leg
      crediting an existing destination is merged into it
      (``metadata.isMerged`` / ``metadata.mergedFeeAmount``), and sources
      are rescaled to the surviving destination total.

Invariants enforced:
    - The caller's payloads are never mutated; work happens on deep copies.
    - A fee leg is valid only when it carries ``metadata.source``, a
      non-empty alias and a positive amount, and its ``metadata.source`` is
      the literal "fee" or one of the request's accounts.

Failure modes:
    - FeeResponseValidationError from ``validate_and_filter_fee_response``
      when either path finds errors.
    - NegativeSourceAmountError when rescaling would drive a source below
      zero.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from fee_engines.runtime_validation import FeeRuntimeValidator
from fee_engines.tracer import traced_engine
from fee_kernel.domain.clock import Clock, SystemClock
from fee_kernel.domain.fee_types import (
    AppliedFee,
    FeeCalculationState,
    FeePackageRule,
    FeeValidationResult,
    match_fee_rule,
)
from fee_kernel.domain.operations import FeeApiDialect
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import ZERO, format_decimal, parse_decimal
from fee_kernel.exceptions import FeeResponseValidationError, NegativeSourceAmountError
from fee_kernel.logging_config import fee_log_context, get_logger

logger = get_logger("engines.response_reconciliation")

FEE_SOURCE_MARKER = "fee"


@dataclass(frozen=True)
class PreservedStructure:
    """Shape of the response as returned by the fee service."""

    has_multiple_sources: bool = False
    has_multiple_destinations: bool = False
    has_duplicate_accounts: bool = False
    source: tuple[dict[str, Any], ...] = ()
    destination: tuple[dict[str, Any], ...] = ()
    fees: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class FeeResponseReconciliation:
    is_valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    validated_response: Any
    preserved_structure: PreservedStructure = field(default_factory=PreservedStructure)


# ----------------------------------------------------------------------
# Payload access
# ----------------------------------------------------------------------


def _transaction(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    transaction = payload.get("transaction")
    return transaction if isinstance(transaction, dict) else None


def _distribution_key(send: Mapping[str, Any], policy: FeePolicy) -> str:
    for dialect in FeeApiDialect:
        if isinstance(send.get(dialect.value), Mapping):
            return dialect.value
    return policy.distribute_field


def _send_block(transaction: dict[str, Any], policy: FeePolicy) -> tuple[dict, list, list, str]:
    """Return (send, sources, destinations, distribution key) of a copied response."""
    send = transaction.setdefault("send", {})
    source_block = send.setdefault("source", {})
    key = _distribution_key(send, policy)
    distribution_block = send.setdefault(key, {})
    sources = [op for op in source_block.get("from") or [] if isinstance(op, dict)]
    destinations = [op for op in distribution_block.get("to") or [] if isinstance(op, dict)]
    return send, sources, destinations, key


def _amount(op: Mapping[str, Any]) -> Decimal:
    return parse_decimal((op.get("amount") or {}).get("value"))


def _total(ops: Sequence[Mapping[str, Any]]) -> Decimal:
    return sum((_amount(op) for op in ops), ZERO)


def _set_amount(op: dict[str, Any], value: Decimal) -> None:
    amount = dict(op.get("amount") or {})
    amount["value"] = format_decimal(value)
    op["amount"] = amount


def _is_fee_leg(op: Mapping[str, Any]) -> bool:
    return bool((op.get("metadata") or {}).get("source"))


def _request_legs(request: Any) -> tuple[list[Mapping[str, Any]], list[Mapping[str, Any]]]:
    """Source and destination legs of a request in either dialect."""
    transaction = _transaction(request) or {}
    send = transaction.get("send")
    if isinstance(send, Mapping):
        sources = (send.get("source") or {}).get("from") or []
        destinations = []
        for dialect in FeeApiDialect:
            block = send.get(dialect.value)
            if isinstance(block, Mapping):
                destinations = block.get("to") or []
                break
    else:
        sources = transaction.get("source") or []
        destinations = transaction.get("destination") or []
    return (
        [op for op in sources if isinstance(op, Mapping)],
        [op for op in destinations if isinstance(op, Mapping)],
    )


def _request_original_amount(request: Any) -> Decimal:
    transaction = _transaction(request) or {}
    send = transaction.get("send")
    if isinstance(send, Mapping):
        return parse_decimal(send.get("value"))
    return parse_decimal(transaction.get("value"))


def transaction_accounts(request: Any) -> set[str]:
    """Every account alias named by the request."""
    sources, destinations = _request_legs(request)
    return {op.get("accountAlias") for op in (*sources, *destinations) if op.get("accountAlias")}


def is_valid_fee_operation(op: Mapping[str, Any], accounts: set[str]) -> bool:
    fee_source = (op.get("metadata") or {}).get("source")
    if not fee_source or not op.get("accountAlias"):
        return False
    if _amount(op) <= ZERO:
        return False
    return fee_source == FEE_SOURCE_MARKER or fee_source in accounts


def filter_valid_fee_operations(
    operations: Sequence[Mapping[str, Any]], accounts: set[str]
) -> list[Mapping[str, Any]]:
    return [op for op in operations if is_valid_fee_operation(op, accounts)]


# ----------------------------------------------------------------------
# Fee calculation state
# ----------------------------------------------------------------------


def extract_fee_calculation_state(
    response: Mapping[str, Any],
    original_request: Mapping[str, Any],
    clock: Clock | None = None,
    policy: FeePolicy | None = None,
) -> FeeCalculationState:
    """
    Build the runtime validator's state from a fee service response.

    Fee legs are those tagged with ``metadata.source``.  Deductibility comes
    from the ``feeRules`` entry crediting the leg; untagged fees are
    additive.  The original amount is read from the request.
    """
    policy = policy or DEFAULT_FEE_POLICY
    transaction = _transaction(response) or {}
    send = transaction.get("send") or {}
    sources = [op for op in (send.get("source") or {}).get("from") or [] if isinstance(op, Mapping)]
    key = _distribution_key(send, policy)
    destinations = [
        op for op in (send.get(key) or {}).get("to") or [] if isinstance(op, Mapping)
    ]
    rules = package_rules_of(response)

    main_recipient = next((op for op in destinations if not _is_fee_leg(op)), None)
    applied: list[AppliedFee] = []
    for op in destinations:
        if not _is_fee_leg(op):
            continue
        alias = op.get("accountAlias") or ""
        rule = match_fee_rule(rules, alias)
        position = len(applied) + 1
        applied.append(AppliedFee(
            fee_id=rule.fee_id if rule and rule.fee_id else f"fee-{position}",
            fee_label=op.get("description") or (rule.fee_label if rule else "") or "Fee",
            calculated_amount=_amount(op),
            is_deductible_from=rule.is_deductible_from if rule else False,
            credit_account=alias,
            priority=rule.priority if rule and rule.priority else position,
        ))

    return FeeCalculationState.from_applied_fees(
        original_amount=_request_original_amount(original_request),
        original_currency=send.get("asset") or policy.default_asset,
        source_account=(sources[0].get("accountAlias") or "") if sources else "",
        destination_account=(main_recipient or {}).get("accountAlias") or "",
        applied_fees=applied,
        calculated_at=(clock or SystemClock()).now(),
        package_id=transaction.get("packageAppliedID"),
        package_label=transaction.get("packageLabel"),
    )


def package_rules_of(response: Mapping[str, Any]) -> tuple[FeePackageRule, ...]:
    rules = (_transaction(response) or {}).get("feeRules") or ()
    return tuple(FeePackageRule.from_payload(r) for r in rules if isinstance(r, Mapping))


def _run_fee_validation(
    response: Mapping[str, Any],
    original_request: Mapping[str, Any],
    clock: Clock | None,
    policy: FeePolicy,
) -> FeeValidationResult:
    state = extract_fee_calculation_state(response, original_request, clock, policy)
    return FeeRuntimeValidator.validate_fee_calculation(
        state, package_rules_of(response), policy
    )


# ----------------------------------------------------------------------
# Structured path
# ----------------------------------------------------------------------


def should_use_structured_validation(response: Any) -> bool:
    """True for multi-party, fee-bearing or duplicate-source responses."""
    transaction = _transaction(response)
    if transaction is None:
        return False
    send = transaction.get("send") or {}
    sources = [op for op in (send.get("source") or {}).get("from") or [] if isinstance(op, Mapping)]
    destinations = []
    for dialect in FeeApiDialect:
        block = send.get(dialect.value)
        if isinstance(block, Mapping):
            destinations = [op for op in block.get("to") or [] if isinstance(op, Mapping)]
            break

    source_accounts = [op.get("accountAlias") for op in sources]
    return (
        len(sources) > 1
        or len([op for op in destinations if not _is_fee_leg(op)]) > 1
        or any(_is_fee_leg(op) for op in destinations)
        or len(source_accounts) != len(set(source_accounts))
    )


@traced_engine("response_reconciliation", "1.0")
def reconcile_fee_response(
    response: Any,
    original_request: Mapping[str, Any],
    policy: FeePolicy | None = None,
    clock: Clock | None = None,
) -> FeeResponseReconciliation:
    """
    Reconcile a fee service response without merging any operation.

    Returns:
        FeeResponseReconciliation whose ``validated_response`` is a copy of
        ``response`` with filtered, tagged operations.  A response without a
        transaction is returned as a valid copy.
    """
    policy = policy or DEFAULT_FEE_POLICY
    validated = copy.deepcopy(response)
    transaction = _transaction(validated)
    if transaction is None:
        return FeeResponseReconciliation(
            is_valid=True, errors=(), warnings=(), validated_response=validated,
        )

    errors: list[str] = []
    warnings: list[str] = []
    send, sources, destinations, key = _send_block(transaction, policy)

    source_accounts = [op.get("accountAlias") for op in sources]
    destination_accounts = [op.get("accountAlias") for op in destinations]
    unique_destinations = set(destination_accounts)
    overlap = [a for a in dict.fromkeys(source_accounts) if a in unique_destinations]
    if overlap:
        warnings.append(f"Accounts appear in both source and destination: {', '.join(overlap)}")

    preserved_sources = [
        {**op, "operationIndex": index, "isDuplicate": source_accounts.count(op.get("accountAlias")) > 1}
        for index, op in enumerate(sources)
    ]

    fee_ops = [op for op in destinations if _is_fee_leg(op)]
    non_fee_ops = [op for op in destinations if not _is_fee_leg(op)]
    valid_fee_ops = filter_valid_fee_operations(fee_ops, transaction_accounts(original_request))
    invalid_count = len(fee_ops) - len(valid_fee_ops)
    if invalid_count > 0:
        warnings.append(f"{invalid_count} invalid fee operations were filtered out")

    preserved_destinations = [
        {
            **op,
            "operationIndex": index,
            "operationType": "destination",
            "isDuplicate": destination_accounts.count(op.get("accountAlias")) > 1,
        }
        for index, op in enumerate(non_fee_ops)
    ] + [
        {
            **op,
            "operationIndex": index + len(non_fee_ops),
            "operationType": "fee",
            "isDuplicate": False,
        }
        for index, op in enumerate(valid_fee_ops)
    ]
    send["source"]["from"] = preserved_sources
    send[key]["to"] = preserved_destinations

    source_total = _total(preserved_sources)
    destination_total = _total(preserved_destinations)
    if abs(source_total - destination_total) > policy.amount_tolerance:
        errors.append(
            f"Transaction is unbalanced: source total ({format_decimal(source_total)}) "
            f"!= destination total ({format_decimal(destination_total)})"
        )

    requested_sources, _ = _request_legs(original_request)
    present = set(source_accounts)
    for requested in requested_sources:
        alias = requested.get("accountAlias")
        if alias not in present:
            errors.append(f"Source account {alias} is missing from response")

    if transaction.get("feeRules") and valid_fee_ops:
        result = _run_fee_validation(validated, original_request, clock, policy)
        errors.extend(result.errors)
        warnings.extend(result.warnings)

    logger.info("fee_response_reconciled", extra={
        "path": "structured",
        "is_valid": not errors,
        "error_count": len(errors),
        "warning_count": len(warnings),
        "filtered_fee_count": invalid_count,
    })
    return FeeResponseReconciliation(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        validated_response=validated,
        preserved_structure=PreservedStructure(
            has_multiple_sources=len(sources) > 1,
            has_multiple_destinations=len(destinations) > 1,
            has_duplicate_accounts=(
                len(source_accounts) != len(set(source_accounts))
                or len(destination_accounts) != len(unique_destinations)
            ),
            source=tuple(preserved_sources),
            destination=tuple(non_fee_ops),
            fees=tuple(valid_fee_ops),
        ),
    )


# ----------------------------------------------------------------------
# Legacy path
# ----------------------------------------------------------------------


def _deduplicate_sources(sources: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    by_account: dict[str, dict[str, Any]] = {}
    for op in sources:
        alias = op.get("accountAlias")
        existing = by_account.get(alias)
        if existing is None:
            by_account[alias] = {**op, "amount": dict(op.get("amount") or {})}
        else:
            _set_amount(existing, _amount(existing) + _amount(op))
    return list(by_account.values())


def _merge_fee_legs(
    non_fee_ops: Sequence[dict[str, Any]],
    fee_ops: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    by_account: dict[str, dict[str, Any]] = {}
    for op in non_fee_ops:
        by_account[op.get("accountAlias")] = op
    for fee in fee_ops:
        alias = fee.get("accountAlias")
        existing = by_account.get(alias)
        if existing is None:
            by_account[alias] = dict(fee)
            continue
        fee_amount = _amount(fee)
        _set_amount(existing, _amount(existing) + fee_amount)
        existing["metadata"] = {
            **(existing.get("metadata") or {}),
            "isMerged": True,
            "mergedFeeAmount": format_decimal(fee_amount),
        }
    return list(by_account.values())


def _rescale_sources(sources: list[dict[str, Any]], new_total: Decimal) -> None:
    if len(sources) == 1:
        _set_amount(sources[0], new_total)
        return
    current_total = _total(sources)
    if current_total == ZERO:
        return
    ratio = new_total / current_total
    for source in sources:
        current = _amount(source)
        new_amount = current * ratio
        if new_amount < ZERO:
            logger.error("fee_response_negative_source", extra={
                "account_alias": source.get("accountAlias"),
                "current_amount": str(current),
                "new_amount": str(new_amount),
            })
            raise NegativeSourceAmountError(
                source.get("accountAlias") or "", str(current), str(new_amount)
            )
        _set_amount(source, new_amount)


def _legacy_validate_and_filter(
    response: Any,
    original_request: Mapping[str, Any],
    policy: FeePolicy,
    clock: Clock | None,
) -> Any:
    validated = copy.deepcopy(response)
    transaction = _transaction(validated)
    if transaction is None:
        return validated

    send, sources, destinations, key = _send_block(transaction, policy)
    source_accounts = [op.get("accountAlias") for op in sources]
    duplicates = sorted({a for a in source_accounts if source_accounts.count(a) > 1})
    if duplicates:
        logger.error("fee_response_duplicate_sources", extra={
            "sources": source_accounts,
            "duplicates": duplicates,
        })
        sources = _deduplicate_sources(sources)
        send["source"]["from"] = sources

    overlap = [a for a in dict.fromkeys(source_accounts) if a in {d.get("accountAlias") for d in destinations}]
    if overlap:
        logger.warning("fee_response_account_overlap", extra={"accounts": overlap})

    if not sources or not destinations:
        return validated

    fee_ops = [op for op in destinations if _is_fee_leg(op)]
    non_fee_ops = [op for op in destinations if not _is_fee_leg(op)]
    valid_fee_ops = filter_valid_fee_operations(fee_ops, transaction_accounts(original_request))

    merged = _merge_fee_legs(non_fee_ops, valid_fee_ops)
    send[key]["to"] = merged

    if len(valid_fee_ops) < len(fee_ops) or any(
        (op.get("metadata") or {}).get("isMerged") for op in merged
    ):
        new_total = _total(merged)
        send["value"] = format_decimal(new_total)
        _rescale_sources(sources, new_total)

    source_total = _total(sources)
    destination_total = _total(merged)
    if abs(source_total - destination_total) > policy.amount_tolerance:
        errors = [
            f"Transaction is unbalanced: source total ({format_decimal(source_total)}) "
            f"!= destination total ({format_decimal(destination_total)})"
        ]
        logger.error("fee_response_validation_failed", extra={
            "path": "legacy",
            "stage": "transaction",
            "errors": errors,
        })
        raise FeeResponseValidationError(errors, stage="transaction")

    if transaction.get("feeRules"):
        result = _run_fee_validation(validated, original_request, clock, policy)
        if not result.is_valid:
            logger.error("fee_response_validation_failed", extra={
                "path": "legacy",
                "stage": "fee",
                "errors": list(result.errors),
            })
            raise FeeResponseValidationError(result.errors, stage="fee")
        if result.warnings:
            logger.warning("fee_response_warnings", extra={
                "path": "legacy",
                "warnings": list(result.warnings),
            })

    logger.info("fee_response_reconciled", extra={
        "path": "legacy",
        "is_valid": True,
        "merged": any((op.get("metadata") or {}).get("isMerged") for op in merged),
    })
    return validated


def _context_fields(response: Any, original_request: Any) -> dict[str, Any]:
    request = original_request if isinstance(original_request, Mapping) else {}
    transaction = _transaction(response) or {}
    metadata = transaction.get("metadata") or {}
    return {
        "ledger_id": request.get("ledgerId"),
        "segment_id": request.get("segmentId"),
        "package_id": metadata.get("packageAppliedID") or transaction.get("packageAppliedID"),
    }


def _structured_validate(
    response: Any,
    original_request: Mapping[str, Any],
    policy: FeePolicy,
    clock: Clock | None,
) -> Any:
    result = reconcile_fee_response(response, original_request, policy, clock)
    if not result.is_valid:
        logger.error("fee_response_validation_failed", extra={
            "path": "structured",
            "stage": "transaction",
            "errors": list(result.errors),
        })
        raise FeeResponseValidationError(result.errors, stage="transaction")
    if result.warnings:
        logger.warning("fee_response_warnings", extra={
            "path": "structured",
            "warnings": list(result.warnings),
        })
    return result.validated_response


def validate_and_filter_fee_response(
    response: Any,
    original_request: Mapping[str, Any],
    policy: FeePolicy | None = None,
    clock: Clock | None = None,
    *,
    structured: bool | None = None,
) -> Any:
    """
    Reconcile a fee service response and return the cleaned copy.

    ``structured`` forces a path; by default the structured path is used
    whenever ``should_use_structured_validation`` says so.

    Raises:
        FeeResponseValidationError: the response does not reconcile.
        NegativeSourceAmountError: legacy rescaling failed.
    """
    policy = policy or DEFAULT_FEE_POLICY
    if structured is None:
        structured = should_use_structured_validation(response)
    with fee_log_context(**_context_fields(response, original_request)):
        if structured:
            return _structured_validate(response, original_request, policy, clock)
        return _legacy_validate_and_filter(response, original_request, policy, clock)
