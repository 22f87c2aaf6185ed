"""
Configuration Loader (``fee_config.loader``).

Responsibility
--------------
Loads fee configuration YAML files and parses them into typed
``fee_config.schema`` dataclass instances.  Runtime callers go through
``fee_config.get_active_config()``; the loader is also used directly by
tooling that imports a single fee package exported from the fee package
service.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on
``fee_kernel.domain`` for the policy and rule types; never on the engines.

Invariants enforced
-------------------
* Required keys are never defaulted: a missing key raises ``KeyError``.
* Rule reference amounts and application rules must be known values.
* Priorities are unique within a package.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Duplicate priorities or invalid policy values  -> ``ValueError``.
* Unknown reference amount / application rule  ->
  ``UnknownReferenceAmountError`` / ``UnknownApplicationRuleError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from fee_config.schema import FeeConfigurationSet, FeePackageDefinition
from fee_kernel.domain.fee_types import (
    ApplicationRule,
    CalculationModel,
    CalculationType,
    FeeCalculationEntry,
    FeePackageRule,
    ReferenceAmount,
)
from fee_kernel.domain.policy import FeePolicy
from fee_kernel.exceptions import (
    UnknownApplicationRuleError,
    UnknownReferenceAmountError,
)
from fee_kernel.logging_config import get_logger

logger = get_logger("config.loader")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Postconditions:
        - Returns a ``dict`` (empty if the YAML is empty).
    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _decimal(value: Any) -> Decimal:
    # YAML floats go through str() so 0.01 stays 0.01
    return Decimal(str(value))


def parse_policy(data: dict[str, Any]) -> FeePolicy:
    """Parse a FeePolicy; absent keys keep the engine defaults."""
    defaults = FeePolicy()
    return FeePolicy(
        amount_tolerance=_decimal(data.get("amount_tolerance", defaults.amount_tolerance)),
        high_fee_warning_percent=_decimal(
            data.get("high_fee_warning_percent", defaults.high_fee_warning_percent)
        ),
        max_fee_percent=_decimal(data.get("max_fee_percent", defaults.max_fee_percent)),
        default_asset=data.get("default_asset", defaults.default_asset),
        distribute_field=data.get("distribute_field", defaults.distribute_field),
        fee_keyword=data.get("fee_keyword", defaults.fee_keyword),
    )


def parse_rule(data: dict[str, Any]) -> FeePackageRule:
    """
    Parse one FeePackageRule.

    Raises:
        KeyError: ``fee_id``, ``label`` or ``priority`` is missing.
        UnknownReferenceAmountError: unknown ``reference_amount``.
        UnknownApplicationRuleError: unknown ``application_rule``.
    """
    fee_id = str(data["fee_id"])
    try:
        reference = ReferenceAmount(data.get("reference_amount", "originalAmount"))
    except ValueError:
        raise UnknownReferenceAmountError(str(data.get("reference_amount")), fee_id) from None

    model = None
    if "application_rule" in data:
        try:
            application_rule = ApplicationRule(data["application_rule"])
        except ValueError:
            raise UnknownApplicationRuleError(str(data["application_rule"]), fee_id) from None
        calculations = []
        for calc in data.get("calculations", []):
            calc_type = CalculationType(calc["type"])
            calculations.append(FeeCalculationEntry(type=calc_type, value=_decimal(calc["value"])))
        model = CalculationModel(application_rule=application_rule, calculations=tuple(calculations))

    return FeePackageRule(
        fee_id=fee_id,
        fee_label=data["label"],
        priority=int(data["priority"]),
        reference_amount=reference,
        is_deductible_from=bool(data.get("is_deductible_from", False)),
        credit_account=data.get("credit_account", ""),
        calculation_model=model,
    )


def parse_package(data: dict[str, Any]) -> FeePackageDefinition:
    """
    Parse a FeePackageDefinition.

    Raises:
        ValueError: two rules share a priority.
    """
    rules = tuple(parse_rule(r) for r in data.get("rules", []))
    priorities = [r.priority for r in rules]
    if len(priorities) != len(set(priorities)):
        raise ValueError(
            f"Fee package {data['package_id']} has duplicate rule priorities: {priorities}"
        )
    return FeePackageDefinition(
        package_id=data["package_id"],
        label=data.get("label", data["package_id"]),
        segment_id=data.get("segment_id"),
        ledger_id=data.get("ledger_id"),
        rules=rules,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 over the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_configuration(data: dict[str, Any]) -> FeeConfigurationSet:
    """
    Parse a complete configuration document.

    Raises:
        KeyError: ``config_id`` or ``version`` is missing.
        ValueError: duplicate package ids.
    """
    packages = tuple(parse_package(p) for p in data.get("packages", []))
    package_ids = [p.package_id for p in packages]
    if len(package_ids) != len(set(package_ids)):
        raise ValueError(f"Duplicate fee package ids: {package_ids}")
    return FeeConfigurationSet(
        config_id=data["config_id"],
        version=int(data["version"]),
        policy=parse_policy(data.get("policy") or {}),
        packages=packages,
        checksum=compute_checksum(data),
    )


def load_fee_package(path: Path) -> FeePackageDefinition:
    """Load a single fee package YAML file."""
    package = parse_package(load_yaml_file(path))
    logger.info("fee_package_loaded", extra={
        "package_id": package.package_id,
        "rule_count": len(package.rules),
        "path": str(path),
    })
    return package
