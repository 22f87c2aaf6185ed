"""
Module: fee_engines.transformers
Responsibility:
    Map transactions between the Console's own JSON shape (flat
    ``source[]`` / ``destination[]`` with ``value`` and ``asset``) and the
    two external fee service dialects:

    * the fee API dialect -- ``send.source.from[]`` plus a distribution
      block spelled ``distribute`` or, in older deployments, ``distribuite``;
    * the fee engine dialect -- share-based requests and ``fees[]``
      responses, handled by ``FeeEngineTransformer``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fee_kernel.

Invariants enforced:
    - Optional keys (``chartOfAccountsGroupName``, ``route``, ``metadata``,
      per-leg ``description`` / ``chartOfAccounts``) are omitted from the
      output when empty; no empty objects or None values are serialized.
    - ``segmentId`` never leaves this layer inside ``metadata``.
    - Input payloads are never mutated.
    - Outbound amounts keep their full precision; sub-cent values are never
      rounded away.
    - Fee engine requests are JSON-ready: shares are plain numbers.

Failure modes:
    - Missing ``source`` / ``destination`` arrays produce empty legs.
    - MissingSegmentError when a fee engine request has no segment.

Usage:
    from fee_engines.transformers import convert_console_to_fee_engine

    payload = convert_console_to_fee_engine(console_transaction)
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from fee_engines.tracer import traced_engine
from fee_kernel.domain.operations import (
    FeeApiDialect,
    distribution_operations,
    source_operations,
)
from fee_kernel.domain.values import (
    HUNDRED,
    ZERO,
    format_decimal,
    format_wire,
    parse_decimal,
)
from fee_kernel.exceptions import MissingSegmentError
from fee_kernel.logging_config import fee_log_context, get_logger

logger = get_logger("engines.transformers")

NO_FEES_MESSAGE = "No fees applied"
FEE_ERROR_MESSAGE = "Fee calculation failed - no fees applied"

# Keys consumed by the transformer; never forwarded inside metadata.
_ROUTING_METADATA_KEYS = ("route", "segmentId")


def _legs(transaction: Mapping[str, Any], key: str) -> list[Mapping[str, Any]]:
    raw = transaction.get(key)
    if not isinstance(raw, list):
        return []
    return [leg for leg in raw if isinstance(leg, Mapping)]


def _leg_total(legs: Sequence[Mapping[str, Any]]) -> Decimal:
    return sum((parse_decimal(leg.get("value", leg.get("amount"))) for leg in legs), ZERO)


def _json_number(value: Decimal) -> int | float:
    """Plain JSON number for a share; integral percentages stay integers."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _fee_api_leg(leg: Mapping[str, Any], asset: str) -> dict[str, Any]:
    raw = leg.get("value")
    if raw is None:
        raw = leg.get("amount")
    out: dict[str, Any] = {
        "accountAlias": leg.get("accountAlias") or "",
        "amount": {
            "asset": leg.get("asset") or asset,
            "value": format_wire(parse_decimal(raw)),
        },
    }
    if leg.get("description"):
        out["description"] = leg["description"]
    if leg.get("chartOfAccounts"):
        out["chartOfAccounts"] = leg["chartOfAccounts"]
    if leg.get("metadata"):
        out["metadata"] = copy.deepcopy(dict(leg["metadata"]))
    return out


@traced_engine("transformers.console_to_fee_api", "1.0", fingerprint_fields=("transaction",))
def convert_console_to_fee_engine(
    transaction: Mapping[str, Any],
    dialect: FeeApiDialect | str = FeeApiDialect.DISTRIBUTE,
) -> dict[str, Any]:
    """
    Build a fee API transaction from a console transaction.

    ``route`` and ``segmentId`` are lifted out of ``metadata``; the segment
    is dropped here because callers send it at the request level.  The
    distribution block is written under the dialect's spelling.
    """
    dialect = FeeApiDialect(dialect)
    asset = transaction.get("asset") or ""
    sources = _legs(transaction, "source")
    destinations = _legs(transaction, "destination")

    metadata = dict(transaction.get("metadata") or {})
    route = metadata.get("route")
    remaining = {
        k: copy.deepcopy(v) for k, v in metadata.items() if k not in _ROUTING_METADATA_KEYS
    }

    raw_value = transaction.get("value")
    value = parse_decimal(raw_value) if raw_value not in (None, "") else _leg_total(sources)

    result: dict[str, Any] = {}
    if transaction.get("description") is not None:
        result["description"] = transaction["description"]
    if transaction.get("chartOfAccountsGroupName"):
        result["chartOfAccountsGroupName"] = transaction["chartOfAccountsGroupName"]
    if route:
        result["route"] = route
    if remaining:
        result["metadata"] = remaining
    result["send"] = {
        "asset": asset,
        "value": format_wire(value),
        "source": {"from": [_fee_api_leg(leg, asset) for leg in sources]},
        dialect.value: {"to": [_fee_api_leg(leg, asset) for leg in destinations]},
    }

    logger.debug("fee_api_request_built", extra={
        "dialect": dialect.value,
        "source_count": len(sources),
        "destination_count": len(destinations),
        "has_route": bool(route),
    })
    return result


def fee_api_transaction_to_console(
    transaction: Mapping[str, Any],
    default_asset: str = "USD",
    dialect: FeeApiDialect | str | None = None,
) -> dict[str, Any]:
    """
    Map a fee API transaction back to the console shape.

    ``value`` defaults to the total of the source legs; ``route`` is folded
    back into metadata.
    """
    send = transaction.get("send") or {}
    asset = send.get("asset") or default_asset
    sources = source_operations(send)
    destinations = distribution_operations(send, dialect)

    def _console_leg(leg: Mapping[str, Any]) -> dict[str, Any]:
        amount = leg.get("amount") or {}
        return {
            "accountAlias": leg.get("accountAlias") or "",
            "value": str(amount.get("value") or "0"),
            "asset": amount.get("asset") or asset,
            "metadata": copy.deepcopy(dict(leg.get("metadata") or {})),
        }

    source_total = sum(
        (parse_decimal((leg.get("amount") or {}).get("value")) for leg in sources), ZERO
    )
    metadata = copy.deepcopy(dict(transaction.get("metadata") or {}))
    if transaction.get("route"):
        metadata["route"] = transaction["route"]
    return {
        "description": transaction.get("description") or "Transaction",
        "chartOfAccountsGroupName": transaction.get("chartOfAccountsGroupName"),
        "value": str(send.get("value") or format_wire(source_total)),
        "asset": asset,
        "source": [_console_leg(leg) for leg in sources],
        "destination": [_console_leg(leg) for leg in destinations],
        "metadata": metadata,
    }


def extract_package_id(response: Mapping[str, Any]) -> str | None:
    """Package applied by the fee service, if the response names one."""
    transaction = response.get("transaction")
    if isinstance(transaction, Mapping):
        metadata = transaction.get("metadata") or {}
        if metadata.get("packageAppliedID"):
            return metadata["packageAppliedID"]
        if transaction.get("packageAppliedID"):
            return transaction["packageAppliedID"]
    return response.get("packageId") or None


def enrich_with_package_details(
    response: Mapping[str, Any],
    package_fees: Mapping[str, Mapping[str, Any]],
) -> dict[str, Any]:
    """
    Attach the package's rules to a fee service response.

    ``package_fees`` maps fee id to the package's fee definition.  Returns a
    new payload carrying ``feeRules`` and a response-level
    ``isDeductibleFrom`` (True when any rule is deductible).
    """
    enriched = copy.deepcopy(dict(response))
    transaction = enriched.get("transaction")
    if not isinstance(transaction, dict) or not package_fees:
        return enriched

    fee_rules = [
        {
            "feeId": fee_id,
            "feeLabel": fee.get("feeLabel"),
            "isDeductibleFrom": bool(fee.get("isDeductibleFrom", False)),
            "creditAccount": fee.get("creditAccount"),
            "priority": fee.get("priority"),
            "referenceAmount": fee.get("referenceAmount") or "originalAmount",
            "applicationRule": fee.get("applicationRule") or "percentual",
            "calculations": copy.deepcopy(fee.get("calculations")),
        }
        for fee_id, fee in package_fees.items()
    ]
    transaction["feeRules"] = fee_rules
    transaction["isDeductibleFrom"] = any(rule["isDeductibleFrom"] for rule in fee_rules)
    logger.debug("fee_response_enriched", extra={
        "package_id": extract_package_id(enriched),
        "rule_count": len(fee_rules),
    })
    return enriched


class FeeEngineTransformer:
    """
    Adapter for the share-based fee engine dialect.

    Contract:
        Stateless; every method is a pure function of its arguments.
    Non-goals:
        - Does not call the fee engine; the BFF handles HTTP.
    """

    def calculate_percentage_shares(
        self, accounts: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, int | float]]:
        """
        Each account's percentage of the total; equal split on a zero total.

        Shares are computed in Decimal and emitted as JSON numbers.
        """
        if not accounts:
            return []
        values = [parse_decimal(a.get("value")) for a in accounts]
        total = sum(values, ZERO)
        if total == ZERO:
            equal = _json_number(HUNDRED / Decimal(len(accounts)))
            return [{"percentage": equal} for _ in accounts]
        return [{"percentage": _json_number(value / total * HUNDRED)} for value in values]

    def calculate_explicit_values(
        self,
        shares: Sequence[Mapping[str, Any]],
        total_value: Decimal | str,
        asset: str,
    ) -> list[dict[str, str]]:
        """Convert percentage shares back to two-place values."""
        total = parse_decimal(total_value)
        return [
            {
                "value": format_decimal(parse_decimal(share.get("percentage")) / HUNDRED * total),
                "asset": asset,
            }
            for share in shares
        ]

    @traced_engine("transformers.console_to_fee_engine", "1.0", fingerprint_fields=("ledger_id", "segment_id"))
    def transform_console_to_fee_engine(
        self,
        request: Mapping[str, Any],
        ledger_id: str,
        segment_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Build a share-based fee engine request.

        Raises:
            MissingSegmentError: neither ``segment_id`` nor
                ``transaction.metadata.segmentId`` is set.
        """
        transaction = request.get("transaction") or {}
        metadata = transaction.get("metadata") or {}
        segment = segment_id or metadata.get("segmentId")
        with fee_log_context(ledger_id=ledger_id, segment_id=segment):
            if not segment:
                logger.warning("fee_engine_request_missing_segment")
                raise MissingSegmentError(ledger_id)
            return self._fee_engine_request(transaction, metadata, ledger_id, segment)

    def _fee_engine_request(
        self,
        transaction: Mapping[str, Any],
        metadata: Mapping[str, Any],
        ledger_id: str,
        segment: str,
    ) -> dict[str, Any]:
        sources = _legs(transaction, "source")
        destinations = _legs(transaction, "destination")

        def _shared(legs: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
            shares = self.calculate_percentage_shares(legs)
            return [
                {"accountAlias": leg.get("accountAlias"), "share": share}
                for leg, share in zip(legs, shares)
            ]

        body: dict[str, Any] = {}
        if metadata.get("route"):
            body["route"] = metadata["route"]
        if transaction.get("description"):
            body["description"] = transaction["description"]
        body["send"] = {
            "asset": transaction.get("asset"),
            "value": transaction.get("value"),
            "source": {"from": _shared(sources)},
            "distribute": {"to": _shared(destinations)},
        }
        logger.debug("fee_engine_request_built", extra={
            "source_count": len(sources),
            "destination_count": len(destinations),
            "has_route": "route" in body,
        })
        return {"segmentId": segment, "ledgerId": ledger_id, "transaction": body}

    def transform_fee_engine_to_console(
        self,
        response: Mapping[str, Any],
        original_request: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        Enrich the original console transaction with the engine's fees.

        A fee is deductible when its metadata says so explicitly, otherwise
        when the engine's net amount is below the original amount.
        """
        fees = response.get("fees")
        if not response.get("feesApplied") or not isinstance(fees, list) or not fees:
            logger.info("fee_engine_no_fees", extra={
                "engine_message": response.get("message"),
            })
            return {
                "feesApplied": [],
                "message": response.get("message") or NO_FEES_MESSAGE,
            }

        net = parse_decimal((response.get("netAmount") or {}).get("value"))
        original = parse_decimal((response.get("originalAmount") or {}).get("value"))
        inferred_deductible = net < original

        fee_rules: list[dict[str, Any]] = []
        package_id = None
        for index, fee in enumerate(fees, start=1):
            fee_meta = fee.get("metadata") or {}
            explicit = fee_meta.get("isDeductibleFrom")
            fee_rules.append({
                "feeId": fee.get("id") or f"fee-{index}",
                "feeLabel": fee.get("name") or fee.get("description") or "",
                "isDeductibleFrom": explicit if isinstance(explicit, bool) else inferred_deductible,
                "creditAccount": fee_meta.get("creditAccount") or "",
                "priority": fee_meta.get("priority") or index,
            })
            package_id = package_id or fee_meta.get("packageId")

        transaction = copy.deepcopy(dict(original_request.get("transaction") or {}))
        metadata = dict(transaction.get("metadata") or {})
        metadata["totalFees"] = copy.deepcopy(response.get("totalFees"))
        metadata["netAmount"] = copy.deepcopy(response.get("netAmount"))
        metadata["originalAmount"] = copy.deepcopy(response.get("originalAmount"))
        if package_id:
            metadata["packageAppliedID"] = package_id
            transaction["packageAppliedID"] = package_id
        transaction["metadata"] = metadata
        transaction["feeRules"] = fee_rules
        transaction["isDeductibleFrom"] = any(r["isDeductibleFrom"] for r in fee_rules)

        logger.info("fee_engine_response_transformed", extra={
            "fee_count": len(fee_rules),
            "package_id": package_id,
            "is_deductible_from": transaction["isDeductibleFrom"],
        })
        return {"transaction": transaction}

    def validate_fee_engine_response(self, response: Any) -> bool:
        """Structural check of a fee engine response."""
        if not isinstance(response, Mapping):
            return False
        return isinstance(response.get("fees"), list) and isinstance(
            response.get("feesApplied"), bool
        )

    def handle_fee_engine_error(self, error: Any) -> dict[str, Any]:
        """Degrade a fee engine failure to a no-fees response."""
        if isinstance(error, BaseException):
            message = str(error)
        elif isinstance(error, Mapping):
            message = error.get("message") or ""
        else:
            message = ""
        logger.warning("fee_engine_error_degraded", extra={
            "error": message or FEE_ERROR_MESSAGE,
        })
        return {"feesApplied": [], "message": message or FEE_ERROR_MESSAGE}
