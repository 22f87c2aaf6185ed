"""
FeeConfigurationSet schema.

Defines the human-authored, reviewable fee configuration: the engine
policy and the fee packages with their rules.  YAML files are parsed into
these types by the loader and handed out by ``get_active_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fee_kernel.domain.fee_types import FeePackageRule
from fee_kernel.domain.policy import DEFAULT_FEE_POLICY, FeePolicy


@dataclass(frozen=True)
class FeePackageDefinition:
    """A fee package: the rules applied to transactions of one segment."""

    package_id: str
    label: str
    segment_id: str | None = None
    ledger_id: str | None = None
    rules: tuple[FeePackageRule, ...] = ()

    def rule_for(self, fee_id: str) -> FeePackageRule | None:
        return next((rule for rule in self.rules if rule.fee_id == fee_id), None)


@dataclass(frozen=True)
class FeeConfigurationSet:
    """The complete fee configuration: identity, policy and packages."""

    config_id: str
    version: int
    policy: FeePolicy = DEFAULT_FEE_POLICY
    packages: tuple[FeePackageDefinition, ...] = field(default_factory=tuple)
    checksum: str = ""

    def package(self, package_id: str) -> FeePackageDefinition | None:
        return next((p for p in self.packages if p.package_id == package_id), None)

    def packages_for_segment(self, segment_id: str) -> tuple[FeePackageDefinition, ...]:
        return tuple(p for p in self.packages if p.segment_id == segment_id)
