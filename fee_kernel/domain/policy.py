"""
FeePolicy -- tunable constants of the fee engines.

The engines take a FeePolicy argument instead of reading configuration;
``fee_config`` builds one from YAML and callers pass it through.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

DISTRIBUTE_FIELD = "distribute"
LEGACY_DISTRIBUTE_FIELD = "distribuite"


@dataclass(frozen=True)
class FeePolicy:
    """
    Engine policy.

    Guarantees:
        - ``amount_tolerance`` is non-negative.
        - ``high_fee_warning_percent`` <= ``max_fee_percent``.
        - ``distribute_field`` is one of the two known fee API spellings.
    """

    amount_tolerance: Decimal = Decimal("0.01")
    high_fee_warning_percent: Decimal = Decimal("50")
    max_fee_percent: Decimal = Decimal("100")
    default_asset: str = "USD"
    distribute_field: str = DISTRIBUTE_FIELD
    fee_keyword: str = "fee"

    def __post_init__(self) -> None:
        if self.amount_tolerance < Decimal("0"):
            raise ValueError("Amount tolerance cannot be negative")
        if self.high_fee_warning_percent > self.max_fee_percent:
            raise ValueError(
                "High fee warning threshold cannot exceed the maximum fee percent"
            )
        if self.distribute_field not in (DISTRIBUTE_FIELD, LEGACY_DISTRIBUTE_FIELD):
            raise ValueError(
                f"Unknown fee API distribution field: {self.distribute_field}"
            )
        if not self.fee_keyword:
            raise ValueError("Fee keyword is required")


DEFAULT_FEE_POLICY = FeePolicy()
