"""Tests for exact money arithmetic."""

from __future__ import annotations

from decimal import Decimal

import pytest

from portfoliotracker.errors import CurrencyMismatchError
from portfoliotracker.money import (
    Money,
    fractional_digits,
    quantize_percent,
    quantize_quantity,
    sum_money,
    to_decimal,
)


class TestToDecimal:
    """Tests for converting user input to Decimal."""

    def test_float_goes_through_str(self) -> None:
        assert to_decimal(0.1) == Decimal("0.1")

    def test_string_is_stripped(self) -> None:
        assert to_decimal(" 12.50 ") == Decimal("12.50")

    def test_int(self) -> None:
        assert to_decimal(7) == Decimal(7)

    @pytest.mark.parametrize("value", ["abc", "", True, None, [1], "NaN", "Infinity"])
    def test_rejects_non_numbers(self, value) -> None:
        with pytest.raises(ValueError):
            to_decimal(value)


class TestQuantizers:
    """Tests for rounding helpers."""

    def test_quantity_eight_places_half_up(self) -> None:
        assert quantize_quantity(Decimal("1.000000005")) == Decimal("1.00000001")

    def test_percent_two_places_half_up(self) -> None:
        assert quantize_percent(Decimal("8.375")) == Decimal("8.38")

    def test_fractional_digits_ignores_trailing_zeros(self) -> None:
        assert fractional_digits(Decimal("1.50")) == 1
        assert fractional_digits(Decimal("100")) == 0
        assert fractional_digits(Decimal("0.00000001")) == 8


class TestMoney:
    """Tests for the Money value type."""

    def test_currency_is_normalized(self) -> None:
        assert Money.of("1", " pln ").currency == "PLN"

    def test_blank_currency_raises(self) -> None:
        with pytest.raises(ValueError, match="currency"):
            Money.of("1", " ")

    def test_addition_and_subtraction(self) -> None:
        a = Money.of("10.25", "PLN")
        b = Money.of("0.75", "PLN")
        assert (a + b).amount == Decimal("11.00")
        assert (a - b).amount == Decimal("9.50")

    def test_mixed_currencies_raise(self) -> None:
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "PLN") + Money.of("1", "EUR")

    def test_multiply_by_scalar_both_sides(self) -> None:
        price = Money.of("507.50", "PLN")
        assert (price * 80).amount == Decimal("40600.00")
        assert (Decimal(80) * price).amount == Decimal("40600.00")

    def test_multiply_by_money_raises(self) -> None:
        with pytest.raises(TypeError):
            Money.of("1", "PLN") * Money.of("1", "PLN")

    def test_ratio(self) -> None:
        assert Money.of("3400", "PLN").ratio(Money.of("40600", "PLN")) > 0

    def test_ratio_by_zero_raises(self) -> None:
        with pytest.raises(ZeroDivisionError):
            Money.of("1", "PLN").ratio(Money.zero("PLN"))

    def test_quantized_rounds_half_up(self) -> None:
        assert Money.of("1.00005", "PLN").quantized().amount == Decimal("1.0001")

    def test_to_dict_uses_string_amount(self) -> None:
        assert Money.of("44000", "PLN").to_dict() == {
            "amount": "44000.0000",
            "currency": "PLN",
        }

    def test_comparisons(self) -> None:
        assert Money.of("1", "PLN") < Money.of("2", "PLN")
        assert Money.of("2", "PLN") >= Money.of("2", "PLN")


class TestSumMoney:
    def test_empty_is_zero(self) -> None:
        assert sum_money([], "PLN") == Money.zero("PLN")

    def test_sums_values(self) -> None:
        total = sum_money([Money.of("1.5", "PLN"), Money.of("2.5", "PLN")], "PLN")
        assert total.amount == Decimal("4.0")
