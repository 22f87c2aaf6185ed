"""
Module: fee_engines.display_mapper
Responsibility:
    Normalise the three inputs a transaction view can receive -- raw form
    data, a fee calculation response with its originating form, or a
    persisted transaction -- into one TransactionDisplayData of flows
    (source -> destinations -> fees) with aggregate summaries and warnings.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel.

Invariants enforced:
    - A transaction with exactly one source and one non-fee destination is
      one simple flow; its remaining destination legs are its fees.
    - Otherwise every source gets a flow and the destination legs are
      allocated by the source's share of the source total.  The allocation
      is a display approximation, not ledger attribution.
    - A fee naming ``metadata.sourceAccount`` belongs wholly to that
      source's flow; other fees are allocated by share like destinations.
    - ``display_mode`` is simple iff there is one flow and it is simple.
    - Identifiers are fresh on every call; numbers are stable.

Failure modes:
    None.  Missing arrays yield empty flows.

Usage:
    from fee_engines.display_mapper import transaction_display_mapper

    display = transaction_display_mapper.map_from_form_data(form)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping, Sequence
from decimal import Decimal
from typing import Any

from fee_engines.tracer import traced_engine
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
from fee_kernel.domain.fee_types import FeePackageRule, match_fee_rule
from fee_kernel.domain.operations import (
    FeeServiceResponse,
    Operation,
    PlainTransaction,
    is_fee_operation,
    operations_total,
)
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy
from fee_kernel.domain.values import ZERO, parse_decimal, sum_decimals, to_display
from fee_kernel.logging_config import get_logger

logger = get_logger("engines.display_mapper")

OVERLAP_WARNING = "The following accounts appear as both source and destination: {accounts}"
MERGED_WARNING = (
    "Some operations have been merged due to duplicate accounts. "
    "This may affect the display accuracy."
)

FeeTypeResolver = Callable[[Operation], FeeType | None]


def _unique(values: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


class TransactionDisplayMapper:
    """
    Map transaction payloads to display projections.

    Contract:
        Stateless apart from its policy and id factory; safe to share.
    Guarantees:
        - Inputs are never mutated.
        - Repeated calls on equal input give equal summaries and different
          identifiers.
    """

    def __init__(
        self,
        policy: FeePolicy | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self._policy = policy or DEFAULT_FEE_POLICY
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @traced_engine("display_mapper.form_data", "1.0")
    def map_from_form_data(self, form_data: Mapping[str, Any]) -> TransactionDisplayData:
        """Map the transaction form as the user filled it in."""
        transaction = PlainTransaction.from_payload(form_data or {}, self._policy.default_asset)
        sources = list(transaction.source or ())
        fees, destinations = self._partition(
            transaction.destination or (), keyword=self._policy.fee_keyword
        )
        flows = self._build_flows(
            sources=sources,
            destinations=destinations,
            fees=fees,
            fee_type_of=lambda op: None,
            ratio_of=self._ratio_by_source_total(sources),
        )
        return self._assemble(
            flows=flows,
            asset=transaction.asset,
            original_amount=parse_decimal((form_data or {}).get("value")),
            description=transaction.description,
            chart_of_accounts_group_name=transaction.chart_of_accounts_group_name,
            metadata=dict(transaction.metadata),
            path="form_data",
        )

    @traced_engine("display_mapper.fee_calculation", "1.0")
    def map_from_fee_calculation(
        self,
        fee_calculation: Mapping[str, Any],
        original_form_data: Mapping[str, Any] | None = None,
    ) -> TransactionDisplayData:
        """
        Map a fee service response.

        In the multi-party case each source's share comes from the original
        form when that form lists the source, otherwise from the response.
        """
        original_form_data = original_form_data or {}
        raw = (fee_calculation or {}).get("transaction")
        response = FeeServiceResponse.from_payload(
            raw if isinstance(raw, Mapping) else {},
            default_asset=original_form_data.get("asset") or self._policy.default_asset,
        )
        fees, destinations = self._partition(response.destination, keyword=None)
        sources = list(response.source)

        def fee_type_of(op: Operation) -> FeeType:
            deductible = self._is_deductible(op, response.fee_rules, response.is_deductible_from)
            return FeeType.DEDUCTIBLE if deductible else FeeType.NON_DEDUCTIBLE

        flows = self._build_flows(
            sources=sources,
            destinations=destinations,
            fees=fees,
            fee_type_of=fee_type_of,
            ratio_of=self._ratio_from_form(original_form_data, sources),
        )

        applied_fees = tuple(
            self._display_applied_fee(op, response.fee_rules, response.is_deductible_from)
            for op in fees
        )
        form_value = original_form_data.get("value")
        original_amount = (
            parse_decimal(form_value) if form_value is not None else response.value
        )
        return self._assemble(
            flows=flows,
            asset=response.asset or original_form_data.get("asset") or self._policy.default_asset,
            original_amount=original_amount,
            description=response.description or original_form_data.get("description"),
            chart_of_accounts_group_name=(
                response.chart_of_accounts_group_name
                or original_form_data.get("chartOfAccountsGroupName")
            ),
            metadata={**dict(original_form_data.get("metadata") or {}), **dict(response.metadata)},
            fee_calculation=FeeCalculationBlock(
                package_id=response.package_id,
                package_label=response.package_label,
                is_deductible_from=bool(response.is_deductible_from),
                applied_fees=applied_fees,
            ),
            path="fee_calculation",
        )

    @traced_engine("display_mapper.transaction", "1.0")
    def map_from_transaction(self, transaction: Mapping[str, Any]) -> TransactionDisplayData:
        """
        Map a persisted transaction.

        Persisted legs do not record deductibility, so fee types are left
        unset.
        """
        parsed = PlainTransaction.from_payload(transaction or {}, self._policy.default_asset)
        sources = list(parsed.source or ())
        fees, destinations = self._partition(
            parsed.destination or (), keyword=self._policy.fee_keyword
        )
        flows = self._build_flows(
            sources=sources,
            destinations=destinations,
            fees=fees,
            fee_type_of=lambda op: None,
            ratio_of=self._ratio_by_source_total(sources),
        )
        return self._assemble(
            flows=flows,
            asset=parsed.asset,
            original_amount=parsed.amount if parsed.amount is not None else ZERO,
            description=parsed.description,
            chart_of_accounts_group_name=parsed.chart_of_accounts_group_name,
            metadata=dict(parsed.metadata),
            transaction_id=parsed.transaction_id,
            path="transaction",
        )

    # ------------------------------------------------------------------
    # Flow construction
    # ------------------------------------------------------------------

    @staticmethod
    def _partition(
        operations: Sequence[Operation], *, keyword: str | None
    ) -> tuple[list[Operation], list[Operation]]:
        fees: list[Operation] = []
        others: list[Operation] = []
        for op in operations:
            (fees if is_fee_operation(op, keyword=keyword) else others).append(op)
        return fees, others

    @staticmethod
    def _ratio_by_source_total(sources: Sequence[Operation]) -> Callable[[Operation], Decimal]:
        total = operations_total(sources)

        def ratio(source: Operation) -> Decimal:
            if total == ZERO:
                return Decimal(1) / Decimal(len(sources))
            return source.value / total

        return ratio

    def _ratio_from_form(
        self, form: Mapping[str, Any], sources: Sequence[Operation]
    ) -> Callable[[Operation], Decimal]:
        fallback = self._ratio_by_source_total(sources)
        form_total = parse_decimal(form.get("value"))
        form_values: dict[str, Decimal] = {}
        for leg in form.get("source") or ():
            if isinstance(leg, Mapping) and leg.get("accountAlias"):
                form_values.setdefault(leg["accountAlias"], parse_decimal(leg.get("value")))

        def ratio(source: Operation) -> Decimal:
            if form_total > ZERO and source.account_alias in form_values:
                return form_values[source.account_alias] / form_total
            return fallback(source)

        return ratio

    def _enhance(
        self,
        op: Operation,
        operation_type: OperationType,
        *,
        amount: Decimal | None = None,
        fee_type: FeeType | None = None,
        source_alias: str | None = None,
    ) -> EnhancedOperation:
        is_fee = operation_type == OperationType.FEE
        return EnhancedOperation(
            operation_id=self._new_id(),
            operation_type=operation_type,
            account_alias=op.account_alias,
            asset=op.amount.asset or self._policy.default_asset,
            amount=op.value if amount is None else amount,
            original_amount=op.value,
            description=op.description,
            chart_of_accounts=op.chart_of_accounts,
            metadata=dict(op.metadata),
            is_fee=is_fee,
            fee_type=fee_type if is_fee else None,
            source_account_alias=source_alias,
        )

    def _flow(
        self,
        source: EnhancedOperation,
        destinations: Sequence[EnhancedOperation],
        fees: Sequence[EnhancedOperation],
        is_simple: bool,
    ) -> TransactionFlow:
        return TransactionFlow(
            flow_id=self._new_id(),
            source_operation=source,
            destination_operations=tuple(destinations),
            fee_operations=tuple(fees),
            source_amount=source.amount,
            destination_total_amount=to_display(sum_decimals(d.amount for d in destinations)),
            fee_total_amount=to_display(sum_decimals(f.amount for f in fees)),
            is_simple_flow=is_simple,
            has_deductible_fees=any(f.fee_type == FeeType.DEDUCTIBLE for f in fees),
            has_non_deductible_fees=any(f.fee_type == FeeType.NON_DEDUCTIBLE for f in fees),
        )

    def _build_flows(
        self,
        *,
        sources: Sequence[Operation],
        destinations: Sequence[Operation],
        fees: Sequence[Operation],
        fee_type_of: FeeTypeResolver,
        ratio_of: Callable[[Operation], Decimal],
    ) -> list[TransactionFlow]:
        if len(sources) == 1 and len(destinations) == 1:
            source = self._enhance(sources[0], OperationType.SOURCE)
            destination = self._enhance(destinations[0], OperationType.DESTINATION)
            fee_ops = [
                self._enhance(
                    op, OperationType.FEE,
                    fee_type=fee_type_of(op), source_alias=source.account_alias,
                )
                for op in fees
            ]
            return [self._flow(source, [destination], fee_ops, is_simple=True)]

        source_aliases = {op.account_alias for op in sources}
        flows: list[TransactionFlow] = []
        for source_op in sources:
            ratio = ratio_of(source_op)
            source = self._enhance(source_op, OperationType.SOURCE)
            flow_destinations = [
                self._enhance(
                    op, OperationType.DESTINATION, amount=to_display(op.value * ratio)
                )
                for op in destinations
            ]
            flow_fees: list[EnhancedOperation] = []
            for op in fees:
                owner = op.metadata.get("sourceAccount")
                if owner in source_aliases:
                    if owner != source_op.account_alias:
                        continue
                    amount = op.value
                else:
                    amount = to_display(op.value * ratio)
                flow_fees.append(self._enhance(
                    op, OperationType.FEE,
                    amount=amount, fee_type=fee_type_of(op),
                    source_alias=source.account_alias,
                ))
            flows.append(self._flow(source, flow_destinations, flow_fees, is_simple=False))
        return flows

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    @staticmethod
    def _is_deductible(
        op: Operation,
        rules: Sequence[FeePackageRule],
        response_flag: bool | None,
    ) -> bool:
        explicit = op.metadata.get("isDeductibleFrom")
        if isinstance(explicit, bool):
            return explicit
        rule = match_fee_rule(rules, op.account_alias)
        if rule is not None:
            return rule.is_deductible_from
        return bool(response_flag)

    def _display_applied_fee(
        self,
        op: Operation,
        rules: Sequence[FeePackageRule],
        response_flag: bool | None,
    ) -> DisplayAppliedFee:
        rule = match_fee_rule(rules, op.account_alias)
        return DisplayAppliedFee(
            fee_id=(rule.fee_id if rule and rule.fee_id else self._new_id()),
            fee_label=op.description or (rule.fee_label if rule else "") or "Fee",
            amount=op.value,
            credit_account=op.account_alias,
            is_deductible_from=self._is_deductible(op, rules, response_flag),
            source_account=op.metadata.get("sourceAccount"),
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def _summarize(flows: Sequence[TransactionFlow]) -> TransactionSummary:
        fee_ops = [f for flow in flows for f in flow.fee_operations]
        return TransactionSummary(
            total_source_amount=to_display(sum_decimals(f.source_amount for f in flows)),
            total_destination_amount=to_display(
                sum_decimals(f.destination_total_amount for f in flows)
            ),
            total_fee_amount=to_display(sum_decimals(f.fee_total_amount for f in flows)),
            total_deductible_fees=to_display(
                sum_decimals(f.amount for f in fee_ops if f.fee_type == FeeType.DEDUCTIBLE)
            ),
            total_non_deductible_fees=to_display(
                sum_decimals(f.amount for f in fee_ops if f.fee_type == FeeType.NON_DEDUCTIBLE)
            ),
            unique_source_accounts=_unique([f.source_operation.account_alias for f in flows]),
            unique_destination_accounts=_unique(
                [d.account_alias for f in flows for d in f.destination_operations]
            ),
            unique_fee_accounts=_unique([op.account_alias for op in fee_ops]),
        )

    @staticmethod
    def _warnings(flows: Sequence[TransactionFlow]) -> list[str]:
        warnings: list[str] = []
        destination_accounts = {
            d.account_alias for f in flows for d in f.destination_operations
        }
        overlap = [
            alias
            for alias in _unique([f.source_operation.account_alias for f in flows])
            if alias in destination_accounts
        ]
        if overlap:
            warnings.append(OVERLAP_WARNING.format(accounts=", ".join(overlap)))

        if any(
            op.is_merged
            for f in flows
            for op in (*f.destination_operations, *f.fee_operations)
        ):
            warnings.append(MERGED_WARNING)
        return warnings

    def _assemble(
        self,
        *,
        flows: list[TransactionFlow],
        asset: str,
        original_amount: Decimal,
        description: str | None,
        chart_of_accounts_group_name: str | None,
        metadata: dict[str, Any],
        path: str,
        fee_calculation: FeeCalculationBlock | None = None,
        transaction_id: str | None = None,
    ) -> TransactionDisplayData:
        display_mode = (
            DisplayMode.SIMPLE
            if len(flows) == 1 and flows[0].is_simple_flow
            else DisplayMode.COMPLEX
        )
        warnings = self._warnings(flows)
        if warnings:
            logger.warning("transaction_display_warnings", extra={
                "path": path,
                "warnings": warnings,
            })
        logger.debug("transaction_display_mapped", extra={
            "path": path,
            "flow_count": len(flows),
            "display_mode": display_mode.value,
        })
        return TransactionDisplayData(
            asset=asset or self._policy.default_asset,
            original_amount=original_amount,
            flows=tuple(flows),
            summary=self._summarize(flows),
            display_mode=display_mode,
            warnings=tuple(warnings),
            description=description,
            chart_of_accounts_group_name=chart_of_accounts_group_name,
            metadata=metadata,
            fee_calculation=fee_calculation,
            transaction_id=transaction_id,
        )


transaction_display_mapper = TransactionDisplayMapper()
