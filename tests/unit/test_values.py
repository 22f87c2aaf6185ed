"""
Unit tests for MonetaryAmount and decimal handling.

Verifies:
- Lenient payload parsing never raises
- Display rounding is half-up to two places
- Arithmetic refuses to mix assets
- Amounts beyond the default decimal precision and sub-cent wire values
"""

from decimal import Decimal

import pytest

from fee_kernel.domain.values import (
    MonetaryAmount,
    format_amount,
    format_decimal,
    format_wire,
    parse_decimal,
    sum_decimals,
    to_display,
    within_tolerance,
)


class TestParseDecimal:
    """Tests for parse_decimal."""

    def test_string_value(self):
        assert parse_decimal("100.50") == Decimal("100.50")

    def test_float_goes_through_str(self):
        """Floats do not leak binary noise."""
        assert parse_decimal(0.1) == Decimal("0.1")

    def test_int_value(self):
        assert parse_decimal(5) == Decimal("5")

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", True, "NaN", "Infinity", [], {}])
    def test_malformed_values_degrade_to_zero(self, raw):
        assert parse_decimal(raw) == Decimal("0")


class TestDisplayHelpers:
    """Tests for rounding and formatting."""

    def test_round_half_up(self):
        assert to_display(Decimal("2.345")) == Decimal("2.35")
        assert to_display(Decimal("2.344")) == Decimal("2.34")

    def test_format_decimal_two_places(self):
        assert format_decimal(Decimal("10")) == "10.00"

    def test_format_amount(self):
        assert format_amount(Decimal("5"), "USD") == "USD 5.00"

    def test_sum_decimals_empty(self):
        assert sum_decimals([]) == Decimal("0")

    def test_within_tolerance_inclusive(self):
        assert within_tolerance(Decimal("10.00"), Decimal("10.01"), Decimal("0.01"))
        assert not within_tolerance(Decimal("10.00"), Decimal("10.02"), Decimal("0.01"))


class TestMonetaryAmount:
    """Tests for the MonetaryAmount value object."""

    def test_asset_normalized(self):
        amount = MonetaryAmount.of("10", " usd ")
        assert amount.asset == "USD"

    def test_from_fee_api_payload(self):
        amount = MonetaryAmount.from_payload({"asset": "BRL", "value": "12.34"})
        assert amount == MonetaryAmount.of("12.34", "BRL")

    def test_from_bare_value_uses_default_asset(self):
        amount = MonetaryAmount.from_payload("7", "EUR")
        assert amount.value == Decimal("7")
        assert amount.asset == "EUR"

    def test_from_malformed_payload_is_zero(self):
        assert MonetaryAmount.from_payload({"value": "oops"}, "USD").is_zero

    def test_addition_same_asset(self):
        total = MonetaryAmount.of("10", "USD") + MonetaryAmount.of("2.50", "USD")
        assert total == MonetaryAmount.of("12.50", "USD")

    def test_mixed_assets_rejected(self):
        with pytest.raises(ValueError, match="different assets"):
            MonetaryAmount.of("10", "USD") + MonetaryAmount.of("1", "BRL")

    def test_to_payload(self):
        assert MonetaryAmount.of("5", "USD").to_payload() == {"asset": "USD", "value": "5.00"}

    def test_invalid_value_raises(self):
        with pytest.raises(ValueError):
            MonetaryAmount(value="not-a-number", asset="USD")

    def test_subtraction_same_asset(self):
        change = MonetaryAmount.of("10", "USD") - MonetaryAmount.of("2.50", "USD")
        assert change == MonetaryAmount.of("7.50", "USD")

    def test_subtraction_mixed_assets_rejected(self):
        with pytest.raises(ValueError, match="Cannot subtract"):
            MonetaryAmount.of("10", "USD") - MonetaryAmount.of("1", "BTC")

    def test_zero(self):
        assert MonetaryAmount.zero("btc") == MonetaryAmount.of("0", "BTC")

    def test_to_payload_keeps_sub_cent_digits(self):
        assert MonetaryAmount.of("0.004", "BTC").to_payload() == {"asset": "BTC", "value": "0.004"}


class TestLargeAndSmallAmounts:
    """Rounding and wire formatting at the edges of the decimal context."""

    def test_to_display_beyond_default_precision(self):
        wei = Decimal("1000000000000000000000000000")
        assert to_display(wei) == wei
        assert format_decimal(wei) == "1000000000000000000000000000.00"

    def test_to_display_rounds_large_fraction(self):
        assert to_display(Decimal("123456789012345678901234567.125")) == Decimal(
            "123456789012345678901234567.13"
        )

    @pytest.mark.parametrize("raw, expected", [
        ("100", "100.00"),
        ("100.5", "100.50"),
        ("0.004", "0.004"),
        ("0.00375", "0.00375"),
    ])
    def test_format_wire(self, raw, expected):
        assert format_wire(Decimal(raw)) == expected
