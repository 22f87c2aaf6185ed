"""
Operations -- transaction legs and the tagged input union.

Responsibility:
    Normalises the two payload dialects the engines receive into one
    Operation type, decides whether a leg is a fee, and discriminates a raw
    payload into either a FeeServiceResponse (``transaction.send`` present)
    or a PlainTransaction (flat ``source`` / ``destination``).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - The payload shape is discriminated exactly once, in
      ``parse_transaction_input``; the engines dispatch on the returned type.
    - An explicit fee tag always wins over the string heuristic.
    - Caller payloads are never mutated; metadata is copied.

Failure modes:
    None.  Malformed payloads degrade to empty operation tuples and zero
    amounts.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from fee_kernel.domain.fee_types import FeePackageRule
from fee_kernel.domain.policy import DISTRIBUTE_FIELD, LEGACY_DISTRIBUTE_FIELD
from fee_kernel.domain.values import MonetaryAmount, parse_decimal, sum_decimals


class FeeApiDialect(str, Enum):
    """Spelling of the distribution block in fee API payloads."""

    DISTRIBUTE = DISTRIBUTE_FIELD
    LEGACY = LEGACY_DISTRIBUTE_FIELD


def distribution_operations(
    send: Mapping[str, Any] | None,
    dialect: FeeApiDialect | str | None = None,
) -> list[dict[str, Any]]:
    """
    Return the ``to`` list of a ``send`` block.

    With an explicit dialect only that spelling is read.  Without one the
    current spelling is tried first, then the legacy one.
    """
    if not isinstance(send, Mapping):
        return []
    if dialect is not None:
        names = (FeeApiDialect(dialect).value,)
    else:
        names = (FeeApiDialect.DISTRIBUTE.value, FeeApiDialect.LEGACY.value)
    for name in names:
        block = send.get(name)
        if isinstance(block, Mapping) and isinstance(block.get("to"), list):
            return [op for op in block["to"] if isinstance(op, dict)]
    return []


def source_operations(send: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    """Return the ``source.from`` list of a ``send`` block."""
    if not isinstance(send, Mapping):
        return []
    block = send.get("source")
    if isinstance(block, Mapping) and isinstance(block.get("from"), list):
        return [op for op in block["from"] if isinstance(op, dict)]
    return []


def _explicit_fee_tag(payload: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool | None:
    tag = payload.get("isFee")
    if isinstance(tag, bool):
        return tag
    tag = metadata.get("isFee")
    if isinstance(tag, bool):
        return tag
    return None


@dataclass(frozen=True)
class Operation:
    """
    One source, destination or fee leg of a transaction.

    ``is_fee`` is the explicit tag populated by the upstream service
    (``isFee`` or ``metadata.isFee``), or None when the payload carries no
    tag and the heuristic has to decide.
    """

    account_alias: str
    amount: MonetaryAmount
    description: str | None = None
    chart_of_accounts: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    is_fee: bool | None = None

    @classmethod
    def from_console(cls, payload: Mapping[str, Any], default_asset: str = "") -> Operation:
        """Build from the console shape (flat ``value`` or ``amount`` plus ``asset``)."""
        metadata = dict(payload.get("metadata") or {})
        raw_amount = payload.get("value")
        if raw_amount is None:
            raw_amount = payload.get("amount")
        asset = payload.get("asset") or default_asset
        if isinstance(raw_amount, Mapping):
            amount = MonetaryAmount.from_payload(raw_amount, asset)
        else:
            amount = MonetaryAmount(value=parse_decimal(raw_amount), asset=asset)

        is_fee = _explicit_fee_tag(payload, metadata)
        chart = payload.get("chartOfAccounts")
        if isinstance(chart, Mapping):
            # persisted transactions flag fee legs with a ``fee`` key
            if is_fee is None and chart.get("fee"):
                is_fee = True
            chart = None
        return cls(
            account_alias=str(payload.get("accountAlias") or ""),
            amount=amount,
            description=payload.get("description"),
            chart_of_accounts=chart,
            metadata=metadata,
            is_fee=is_fee,
        )

    @classmethod
    def from_fee_api(cls, payload: Mapping[str, Any], default_asset: str = "") -> Operation:
        """Build from the fee API shape (``amount: {asset, value}``)."""
        metadata = dict(payload.get("metadata") or {})
        chart = payload.get("chartOfAccounts")
        return cls(
            account_alias=str(payload.get("accountAlias") or ""),
            amount=MonetaryAmount.from_payload(payload.get("amount"), default_asset),
            description=payload.get("description"),
            chart_of_accounts=chart if isinstance(chart, str) else None,
            metadata=metadata,
            is_fee=_explicit_fee_tag(payload, metadata),
        )

    @property
    def value(self) -> Decimal:
        return self.amount.value

    @property
    def fee_source(self) -> str | None:
        """``metadata.source`` -- the account a fee leg was charged for."""
        source = self.metadata.get("source")
        return str(source) if source else None


def is_fee_operation(
    operation: Operation,
    source_alias: str | None = None,
    *,
    keyword: str | None = "fee",
) -> bool:
    """
    Decide whether ``operation`` is a fee leg.

    Order of precedence:
        1. The explicit ``is_fee`` tag.
        2. ``metadata.source`` tagging by the fee engine.
        3. The keyword (case-insensitive) in description, chart of accounts
           or alias.  Pass ``keyword=None`` to skip this legacy heuristic.
        4. The leg credits the source account itself.
    """
    if operation.is_fee is not None:
        return operation.is_fee
    if operation.fee_source:
        return True
    if keyword:
        needle = keyword.lower()
        for text in (operation.description, operation.chart_of_accounts, operation.account_alias):
            if text and needle in text.lower():
                return True
    return bool(source_alias) and operation.account_alias == source_alias


def operations_total(operations: Iterable[Operation]) -> Decimal:
    return sum_decimals(op.value for op in operations)


@dataclass(frozen=True)
class PlainTransaction:
    """
    A console-shaped transaction with flat ``source`` / ``destination``.

    ``source`` / ``destination`` are None when the payload omits the array,
    which the engines treat as a zero-valued transaction.
    """

    source: tuple[Operation, ...] | None
    destination: tuple[Operation, ...] | None
    asset: str
    amount: Decimal | None = None
    transaction_id: str | None = None
    description: str | None = None
    chart_of_accounts_group_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], default_asset: str = "") -> PlainTransaction:
        asset = data.get("asset") or default_asset

        def _legs(key: str) -> tuple[Operation, ...] | None:
            raw = data.get(key)
            if not isinstance(raw, list):
                return None
            return tuple(
                Operation.from_console(op, asset) for op in raw if isinstance(op, Mapping)
            )

        raw_amount = data.get("amount")
        if raw_amount is None:
            raw_amount = data.get("value")
        return cls(
            source=_legs("source"),
            destination=_legs("destination"),
            asset=asset,
            amount=parse_decimal(raw_amount) if raw_amount is not None else None,
            transaction_id=data.get("id"),
            description=data.get("description"),
            chart_of_accounts_group_name=data.get("chartOfAccountsGroupName"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class FeeServiceResponse:
    """
    A fee service response: ``{"transaction": {"send": {...}, ...}}``.

    ``is_deductible_from`` is the response-level flag, None when absent.
    """

    source: tuple[Operation, ...]
    destination: tuple[Operation, ...]
    asset: str
    value: Decimal
    is_deductible_from: bool | None = None
    fee_rules: tuple[FeePackageRule, ...] = ()
    package_id: str | None = None
    package_label: str | None = None
    description: str | None = None
    chart_of_accounts_group_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        transaction: Mapping[str, Any],
        dialect: FeeApiDialect | str | None = None,
        default_asset: str = "",
    ) -> FeeServiceResponse:
        send = transaction.get("send") or {}
        asset = send.get("asset") or default_asset
        flag = transaction.get("isDeductibleFrom")
        rules = transaction.get("feeRules")
        return cls(
            source=tuple(Operation.from_fee_api(op, asset) for op in source_operations(send)),
            destination=tuple(
                Operation.from_fee_api(op, asset)
                for op in distribution_operations(send, dialect)
            ),
            asset=asset,
            value=parse_decimal(send.get("value")),
            is_deductible_from=flag if isinstance(flag, bool) else None,
            fee_rules=tuple(
                FeePackageRule.from_payload(rule)
                for rule in rules or ()
                if isinstance(rule, Mapping)
            ),
            package_id=transaction.get("packageAppliedID"),
            package_label=transaction.get("packageLabel"),
            description=transaction.get("description"),
            chart_of_accounts_group_name=transaction.get("chartOfAccountsGroupName"),
            metadata=dict(transaction.get("metadata") or {}),
        )


TransactionInput = FeeServiceResponse | PlainTransaction


def is_fee_service_payload(data: Any) -> bool:
    """True when ``data`` is a fee service response (``transaction.send`` set)."""
    if not isinstance(data, Mapping):
        return False
    transaction = data.get("transaction")
    return isinstance(transaction, Mapping) and bool(transaction.get("send"))


def parse_transaction_input(
    data: Any,
    dialect: FeeApiDialect | str | None = None,
    default_asset: str = "",
) -> TransactionInput | None:
    """
    Discriminate a raw payload into the tagged input union.

    Returns None for null (or non-mapping) input.
    """
    if not isinstance(data, Mapping):
        return None
    if is_fee_service_payload(data):
        return FeeServiceResponse.from_payload(data["transaction"], dialect, default_asset)
    return PlainTransaction.from_payload(data, default_asset)
