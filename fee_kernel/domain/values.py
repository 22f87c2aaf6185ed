"""
Values -- Immutable monetary value objects and Decimal helpers.

Responsibility:
    Provides MonetaryAmount, the pairing of a Decimal value with the asset
    code it is denominated in, plus the lenient parsing and display
    rounding helpers shared by every fee engine.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Imported by every other domain module. No outward dependencies.

Invariants enforced:
    - All monetary values are Decimal (never float).  Floats arriving from
      JSON payloads are converted through ``str()`` so no binary noise leaks
      into the arithmetic.
    - Arithmetic never mixes assets silently.
    - Display rounding is ROUND_HALF_UP to two places, at whatever precision
      the value needs; amounts beyond the default 28 digits still round.
    - Wire amounts are never rounded below their own precision.

Failure modes:
    - ValueError when arithmetic mixes different assets.
    - ``parse_decimal`` never raises: malformed input degrades to zero, so a
      partial payload renders as "no fees" instead of breaking a page.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DISPLAY_QUANTUM = Decimal("0.01")


def parse_decimal(value: Any) -> Decimal:
    """
    Parse a payload value into a Decimal, degrading to zero.

    Postconditions:
        - Returns a finite Decimal.  ``None``, empty strings, booleans,
          non-numeric text, NaN and infinities all yield ``Decimal("0")``.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return ZERO
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return parsed if parsed.is_finite() else ZERO


def to_display(value: Decimal) -> Decimal:
    """Round to two places, half up."""
    with localcontext() as ctx:
        # Integer digits plus the two display places must fit the precision.
        ctx.prec = max(ctx.prec, value.adjusted() + 3)
        return value.quantize(DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)


def format_decimal(value: Decimal) -> str:
    """Two-place string form of a Decimal, e.g. ``"10.00"``."""
    return str(to_display(value))


def format_amount(value: Decimal, asset: str) -> str:
    """Human-facing amount, e.g. ``"USD 10.00"``."""
    return f"{asset} {format_decimal(value)}"


def format_wire(value: Decimal) -> str:
    """
    Wire form of an amount for the fee services.

    Padded to two places like ``format_decimal``, but sub-cent digits are
    kept: ``"100"`` becomes ``"100.00"`` while ``"0.004"`` stays ``"0.004"``.
    """
    if value.as_tuple().exponent >= -2:
        return format_decimal(value)
    return format(value, "f")


def sum_decimals(values: Iterable[Decimal]) -> Decimal:
    """Sum an iterable of Decimals starting from an exact zero."""
    return sum(values, ZERO)


def within_tolerance(left: Decimal, right: Decimal, tolerance: Decimal) -> bool:
    """True when ``|left - right| <= tolerance``."""
    return abs(left - right) <= tolerance


@dataclass(frozen=True, slots=True)
class MonetaryAmount:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal value with its asset code -- they are never
        separated.  Asset codes are free-form ledger assets (``BRL``,
        ``USD``, ``BTC`` ...), so no ISO registry is applied.

    Guarantees:
        - Immutable and hashable.
        - ``value`` is always a Decimal.
        - ``asset`` is stripped and upper-cased.

    Non-goals:
        - Does not forbid negative values; transient differences may be
          negative.  Final "receives" amounts are checked by the validator.
    """

    value: Decimal
    asset: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, Decimal):
            try:
                object.__setattr__(self, "value", Decimal(str(self.value)))
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount: {self.value}") from e
        object.__setattr__(self, "asset", (self.asset or "").strip().upper())

    @classmethod
    def of(cls, value: Decimal | str | int, asset: str) -> MonetaryAmount:
        """Factory accepting Decimal, str or int (never float)."""
        if isinstance(value, (str, int)):
            value = Decimal(str(value))
        return cls(value=value, asset=asset)

    @classmethod
    def zero(cls, asset: str) -> MonetaryAmount:
        return cls(value=ZERO, asset=asset)

    @classmethod
    def from_payload(cls, payload: Any, default_asset: str = "") -> MonetaryAmount:
        """
        Build from either payload dialect.

        Accepts an ``{"asset": ..., "value": ...}`` mapping (fee API shape)
        or a bare string/number (console shape).  Never raises; an
        unparseable value becomes zero.
        """
        if isinstance(payload, dict):
            return cls(
                value=parse_decimal(payload.get("value")),
                asset=payload.get("asset") or default_asset,
            )
        return cls(value=parse_decimal(payload), asset=default_asset)

    @property
    def is_zero(self) -> bool:
        return self.value == ZERO

    def to_payload(self) -> dict[str, str]:
        """Fee API wire form ``{"asset", "value"}``."""
        return {"asset": self.asset, "value": format_wire(self.value)}

    def _check_asset(self, other: MonetaryAmount, verb: str) -> None:
        if self.asset != other.asset:
            raise ValueError(
                f"Cannot {verb} amounts with different assets: "
                f"{self.asset} and {other.asset}"
            )

    def __add__(self, other: MonetaryAmount) -> MonetaryAmount:
        if not isinstance(other, MonetaryAmount):
            return NotImplemented
        self._check_asset(other, "add")
        return MonetaryAmount(value=self.value + other.value, asset=self.asset)

    def __sub__(self, other: MonetaryAmount) -> MonetaryAmount:
        if not isinstance(other, MonetaryAmount):
            return NotImplemented
        self._check_asset(other, "subtract")
        return MonetaryAmount(value=self.value - other.value, asset=self.asset)

    def __str__(self) -> str:
        return format_amount(self.value, self.asset)

    def __repr__(self) -> str:
        return f"MonetaryAmount({self.value!r}, {self.asset!r})"
