"""
Module: fee_engines.fee_breakdown
Responsibility:
    Derive who pays and who receives what from a transaction that may carry
    fees, and build the receipt lines the transaction views render.

    Accepts either payload shape:

    * a fee service response (``transaction.send`` present) -- fee legs are
      identified by ``metadata.source`` tagging and deductibility comes from
      the response's ``feeRules``;
    * a plain console transaction -- fee legs are identified by the keyword
      heuristic and deductibility is inferred from the destination
      shortfall.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel.

Invariants enforced:
    - deductible_fees + non_deductible_fees == total_fees (exact Decimal sum).
    - The sender pays original + non-deductible fees; the destination
      receives original - deductible fees.
    - The fee collector is the account credited by the first fee leg; it is
      never assumed from deductibility.

Deductibility resolution, per fee leg:
    1. The ``feeRules`` entry crediting the leg's account (``@`` ignored).
    2. The response-level ``isDeductibleFrom`` flag.
    3. The destination shortfall: non-fee destinations receive less than
       the original amount.

Failure modes:
    None.  Null input yields None; missing arrays yield a zero-valued state.
    A transaction without fees yields no breakdown.

Usage:
    from fee_engines.fee_breakdown import build_fee_breakdown

    breakdown = build_fee_breakdown(transaction_payload)
    if breakdown is not None:
        for line in breakdown.lines:
            print(line.label, line.text)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from fee_engines.tracer import traced_engine
from fee_kernel.domain.clock import Clock, SystemClock
from fee_kernel.domain.fee_types import (
    AppliedFee,
    FeeCalculationState,
    FeePackageRule,
    match_fee_rule,
)
from fee_kernel.domain.operations import (
    FeeServiceResponse,
    Operation,
    PlainTransaction,
    is_fee_operation,
    operations_total,
    parse_transaction_input,
)
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import ZERO, format_amount, sum_decimals
from fee_kernel.logging_config import get_logger

logger = get_logger("engines.fee_breakdown")


class BreakdownLineKind(str, Enum):
    FEE_TOTAL = "fee_total"
    FEE_ITEM = "fee_item"
    SENDER = "sender"
    RECIPIENT = "recipient"
    NOTE = "note"


@dataclass(frozen=True)
class BreakdownFee:
    """One fee leg as shown on the receipt."""

    label: str
    amount: Decimal
    account_alias: str
    is_deductible_from: bool
    fee_id: str | None = None
    priority: int | None = None


@dataclass(frozen=True)
class FeeBreakdownState:
    """
    Derived fee picture of one transaction.

    Guarantees:
        - ``deductible_fees + non_deductible_fees == total_fees``.
        - ``applied_fees`` is empty when ``total_fees`` is zero.
    """

    original_amount: Decimal
    total_fees: Decimal
    applied_fees: tuple[BreakdownFee, ...]
    is_deductible_from: bool
    fee_collector: str | None
    source_account: str | None
    destination_account: str | None
    asset: str
    deductible_fees: Decimal = ZERO
    non_deductible_fees: Decimal = ZERO
    package_id: str | None = None
    package_label: str | None = None

    @property
    def source_pays_amount(self) -> Decimal:
        return self.original_amount + self.non_deductible_fees

    @property
    def destination_receives_amount(self) -> Decimal:
        return self.original_amount - self.deductible_fees

    @property
    def has_fees(self) -> bool:
        return bool(self.applied_fees) and self.total_fees > ZERO


@dataclass(frozen=True)
class BreakdownLine:
    label: str
    amount: Decimal | None
    text: str
    kind: BreakdownLineKind


@dataclass(frozen=True)
class FeeBreakdown:
    """Render model: the state plus its receipt lines, in display order."""

    state: FeeBreakdownState
    lines: tuple[BreakdownLine, ...]

    @property
    def source_pays_amount(self) -> Decimal:
        return self.state.source_pays_amount

    @property
    def destination_receives_amount(self) -> Decimal:
        return self.state.destination_receives_amount

    def line(self, kind: BreakdownLineKind) -> BreakdownLine | None:
        """First line of ``kind``, or None."""
        for line in self.lines:
            if line.kind == kind:
                return line
        return None


def _empty_state(asset: str, is_deductible_from: bool = False) -> FeeBreakdownState:
    return FeeBreakdownState(
        original_amount=ZERO,
        total_fees=ZERO,
        applied_fees=(),
        is_deductible_from=is_deductible_from,
        fee_collector=None,
        source_account=None,
        destination_account=None,
        asset=asset,
    )


def _resolve(
    *,
    fee_ops: Sequence[Operation],
    main_ops: Sequence[Operation],
    original: Decimal,
    source_account: str | None,
    asset: str,
    rules: Sequence[FeePackageRule] = (),
    response_flag: bool | None = None,
    package_id: str | None = None,
    package_label: str | None = None,
) -> FeeBreakdownState:
    destination_receives = operations_total(main_ops)
    total = operations_total(fee_ops)
    destination_account = main_ops[0].account_alias if main_ops else None

    if total <= ZERO:
        return FeeBreakdownState(
            original_amount=original,
            total_fees=ZERO,
            applied_fees=(),
            is_deductible_from=False,
            fee_collector=None,
            source_account=source_account,
            destination_account=destination_account,
            asset=asset,
            package_id=package_id,
            package_label=package_label,
        )

    shortfall = destination_receives < original

    fees: list[BreakdownFee] = []
    for op in fee_ops:
        rule = match_fee_rule(rules, op.account_alias)
        if rule is not None:
            deductible = rule.is_deductible_from
        elif response_flag is not None:
            deductible = response_flag
        else:
            deductible = shortfall
        fees.append(BreakdownFee(
            label=op.description or (rule.fee_label if rule and rule.fee_label else "")
            or f"Fee collected by {op.account_alias}",
            amount=op.value,
            account_alias=op.account_alias,
            is_deductible_from=deductible,
            fee_id=rule.fee_id if rule else None,
            priority=rule.priority if rule else None,
        ))

    deductible_fees = sum_decimals(f.amount for f in fees if f.is_deductible_from)
    non_deductible_fees = sum_decimals(f.amount for f in fees if not f.is_deductible_from)
    return FeeBreakdownState(
        original_amount=original,
        total_fees=deductible_fees + non_deductible_fees,
        applied_fees=tuple(fees),
        is_deductible_from=deductible_fees > ZERO,
        fee_collector=fee_ops[0].account_alias,
        source_account=source_account,
        destination_account=destination_account,
        asset=asset,
        deductible_fees=deductible_fees,
        non_deductible_fees=non_deductible_fees,
        package_id=package_id,
        package_label=package_label,
    )


def _derive_from_fee_service(
    response: FeeServiceResponse,
    original_amount: Decimal | None,
) -> FeeBreakdownState:
    if not response.source or not response.destination:
        return _empty_state(response.asset, bool(response.is_deductible_from))

    source_account = response.source[0].account_alias
    fee_ops: list[Operation] = []
    main_ops: list[Operation] = []
    for op in response.destination:
        if is_fee_operation(op, source_account, keyword=None):
            fee_ops.append(op)
        else:
            main_ops.append(op)

    return _resolve(
        fee_ops=fee_ops,
        main_ops=main_ops,
        original=original_amount if original_amount is not None else response.value,
        source_account=source_account,
        asset=response.asset,
        rules=response.fee_rules,
        response_flag=response.is_deductible_from,
        package_id=response.package_id,
        package_label=response.package_label,
    )


def _derive_from_plain(
    transaction: PlainTransaction,
    original_amount: Decimal | None,
    policy: FeePolicy,
) -> FeeBreakdownState:
    if transaction.source is None or transaction.destination is None:
        return _empty_state(transaction.asset)

    source_account = transaction.source[0].account_alias if transaction.source else None
    fee_ops: list[Operation] = []
    main_ops: list[Operation] = []
    for op in transaction.destination:
        if is_fee_operation(op, source_account, keyword=policy.fee_keyword):
            fee_ops.append(op)
        else:
            main_ops.append(op)

    if original_amount is None:
        original_amount = (
            transaction.amount
            if transaction.amount is not None
            else operations_total(transaction.source)
        )
    return _resolve(
        fee_ops=fee_ops,
        main_ops=main_ops,
        original=original_amount,
        source_account=source_account,
        asset=transaction.asset,
    )


@traced_engine("fee_breakdown", "1.0", fingerprint_fields=("transaction", "original_amount"))
def derive_fee_breakdown_state(
    transaction: Any,
    original_amount: Decimal | None = None,
    policy: FeePolicy | None = None,
) -> FeeBreakdownState | None:
    """
    Derive the fee breakdown state of either payload shape.

    Args:
        transaction: Fee service response or console transaction payload.
        original_amount: Overrides the amount read from the payload.
        policy: Engine policy; ``DEFAULT_FEE_POLICY`` when omitted.

    Returns:
        None for null input, otherwise a state (zero-valued when the
        payload lacks its operation arrays).
    """
    policy = policy or DEFAULT_FEE_POLICY
    parsed = parse_transaction_input(transaction, default_asset=policy.default_asset)

    match parsed:
        case None:
            logger.debug("fee_breakdown_no_transaction")
            return None
        case FeeServiceResponse():
            shape = "fee_service_response"
            state = _derive_from_fee_service(parsed, original_amount)
        case PlainTransaction():
            shape = "plain_transaction"
            state = _derive_from_plain(parsed, original_amount, policy)

    logger.info("fee_breakdown_derived", extra={
        "shape": shape,
        "fee_count": len(state.applied_fees),
        "total_fees": str(state.total_fees),
        "is_deductible_from": state.is_deductible_from,
        "fee_collector": state.fee_collector,
    })
    return state


def _fee_total_label(state: FeeBreakdownState) -> str:
    collector = state.fee_collector
    if collector == state.source_account:
        return "Fee paid by sender"
    if collector == state.destination_account:
        return (
            "Fee deducted from transaction"
            if state.is_deductible_from
            else "Fee paid by destination"
        )
    return (
        "Fee deducted from transaction"
        if state.is_deductible_from
        else "Fee added to total cost"
    )


def _recipient_label(state: FeeBreakdownState) -> str:
    if state.fee_collector == state.destination_account:
        return (
            "Destination receives (after fee deduction)"
            if state.is_deductible_from
            else "Destination pays fee and receives"
        )
    return (
        "Destination receives (reduced amount)"
        if state.is_deductible_from
        else "Destination receives (full amount)"
    )


def build_fee_breakdown(
    transaction: Any,
    original_amount: Decimal | None = None,
    policy: FeePolicy | None = None,
) -> FeeBreakdown | None:
    """
    Build the receipt lines for a transaction's fees.

    Returns None when there is nothing to render: null input, no fee legs,
    or a zero fee total.
    """
    state = derive_fee_breakdown_state(transaction, original_amount, policy)
    if state is None or not state.has_fees:
        return None

    asset = state.asset
    lines: list[BreakdownLine] = [
        BreakdownLine(
            label=_fee_total_label(state),
            amount=state.total_fees,
            text=format_amount(state.total_fees, asset),
            kind=BreakdownLineKind.FEE_TOTAL,
        )
    ]
    for fee in state.applied_fees:
        lines.append(BreakdownLine(
            label=fee.label,
            amount=fee.amount,
            text=f"+ {format_amount(fee.amount, asset)}",
            kind=BreakdownLineKind.FEE_ITEM,
        ))
    lines.append(BreakdownLine(
        label=(
            "Sender pays (including fees)"
            if state.non_deductible_fees > ZERO
            else "Sender sends (original amount)"
        ),
        amount=state.source_pays_amount,
        text=format_amount(state.source_pays_amount, asset),
        kind=BreakdownLineKind.SENDER,
    ))
    lines.append(BreakdownLine(
        label=_recipient_label(state),
        amount=state.destination_receives_amount,
        text=format_amount(state.destination_receives_amount, asset),
        kind=BreakdownLineKind.RECIPIENT,
    ))
    if state.is_deductible_from:
        lines.append(BreakdownLine(
            label="",
            amount=None,
            text="Fee was deducted from the transaction amount",
            kind=BreakdownLineKind.NOTE,
        ))
    return FeeBreakdown(state=state, lines=tuple(lines))


def build_fee_calculation_state(
    transaction: Any,
    clock: Clock | None = None,
    original_amount: Decimal | None = None,
    policy: FeePolicy | None = None,
) -> FeeCalculationState | None:
    """
    Convert a derived breakdown into the validator-facing state.

    Fees without a matching package rule get ``fee-<n>`` ids and their
    position as priority.  ``calculated_at`` is read from ``clock``.
    """
    state = derive_fee_breakdown_state(transaction, original_amount, policy)
    if state is None:
        return None
    clock = clock or SystemClock()
    applied = [
        AppliedFee(
            fee_id=fee.fee_id or f"fee-{index}",
            fee_label=fee.label,
            calculated_amount=fee.amount,
            is_deductible_from=fee.is_deductible_from,
            credit_account=fee.account_alias,
            priority=fee.priority if fee.priority is not None else index,
        )
        for index, fee in enumerate(state.applied_fees, start=1)
    ]
    return FeeCalculationState.from_applied_fees(
        original_amount=state.original_amount,
        original_currency=state.asset,
        source_account=state.source_account or "",
        destination_account=state.destination_account or "",
        applied_fees=applied,
        calculated_at=clock.now(),
        package_id=state.package_id,
        package_label=state.package_label,
    )
