"""
Tests for the Money value type
"""

import pytest
from decimal import Decimal

from loan_engine.currency import (
    Money, currency_precision, quantize_amount, sum_money, min_money, max_money, decimal_from_string
)


class TestCurrencyPrecision:
    """Minor units per currency"""

    def test_default_precision(self):
        """Unlisted currencies use two decimal places"""
        assert currency_precision("TZS") == 2
        assert currency_precision("usd") == 2

    def test_zero_decimal_currency(self):
        """Currencies without minor units round to whole numbers"""
        assert currency_precision("UGX") == 0
        assert quantize_amount(Decimal("1000.5"), "UGX") == Decimal("1001")

    def test_round_half_up(self):
        """Halves round away from zero"""
        assert quantize_amount(Decimal("2.345"), "TZS") == Decimal("2.35")
        assert quantize_amount(Decimal("2.344"), "TZS") == Decimal("2.34")
        assert quantize_amount(Decimal("-2.345"), "TZS") == Decimal("-2.35")


class TestMoney:
    """Money arithmetic and comparisons"""

    def test_creation_quantizes(self):
        """Amounts are rounded to the currency's precision on creation"""
        money = Money(Decimal("100.555"), "TZS")
        assert money.amount == Decimal("100.56")
        assert money.currency == "TZS"

    def test_currency_code_normalized(self):
        """Currency codes are upper-cased"""
        assert Money(Decimal("1"), "kes").currency == "KES"

    def test_non_decimal_amount_converted(self):
        """Ints and strings are converted without going through float"""
        assert Money(5, "TZS").amount == Decimal("5.00")
        assert Money("0.10", "TZS").amount == Decimal("0.10")

    def test_addition_and_subtraction(self):
        """Same-currency arithmetic"""
        a = Money(Decimal("100.00"), "TZS")
        b = Money(Decimal("40.50"), "TZS")
        assert a + b == Money(Decimal("140.50"), "TZS")
        assert a - b == Money(Decimal("59.50"), "TZS")
        assert -b == Money(Decimal("-40.50"), "TZS")

    def test_mixed_currency_rejected(self):
        """Amounts in different currencies never mix"""
        with pytest.raises(ValueError, match="Cannot add TZS and KES"):
            Money(Decimal("1"), "TZS") + Money(Decimal("1"), "KES")
        with pytest.raises(ValueError):
            Money(Decimal("1"), "TZS") < Money(Decimal("1"), "KES")

    def test_non_money_operand_rejected(self):
        """Adding a bare number is a programming error"""
        with pytest.raises(TypeError):
            Money(Decimal("1"), "TZS") + Decimal("1")

    def test_multiply_and_divide_round(self):
        """Scaling rounds to the minor unit"""
        money = Money(Decimal("100.00"), "TZS")
        assert money * Decimal("0.035") == Money(Decimal("3.50"), "TZS")
        assert money / Decimal("3") == Money(Decimal("33.33"), "TZS")

    def test_predicates(self):
        """Sign checks"""
        assert Money.zero("TZS").is_zero()
        assert Money(Decimal("0.01"), "TZS").is_positive()
        assert Money(Decimal("-0.01"), "TZS").is_negative()

    def test_equality_and_hash(self):
        """Equal values hash alike; other types are never equal"""
        a = Money(Decimal("10"), "TZS")
        b = Money(Decimal("10.00"), "TZS")
        assert a == b
        assert hash(a) == hash(b)
        assert a != Decimal("10")
        assert a != Money(Decimal("10"), "KES")

    def test_to_string(self):
        """Display form with thousands separators"""
        assert Money(Decimal("1234567.5"), "TZS").to_string() == "TZS 1,234,567.50"
        assert str(Money(Decimal("1500"), "UGX")) == "UGX 1,500"


class TestMoneyHelpers:
    """sum/min/max helpers and parsing"""

    def test_sum_money(self):
        """Sums start at zero in the given currency"""
        values = [Money(Decimal("1.10"), "TZS"), Money(Decimal("2.20"), "TZS")]
        assert sum_money(values, "TZS") == Money(Decimal("3.30"), "TZS")
        assert sum_money([], "TZS") == Money.zero("TZS")

    def test_min_max(self):
        a = Money(Decimal("5"), "TZS")
        b = Money(Decimal("7"), "TZS")
        assert min_money(a, b) == a
        assert max_money(a, b) == b

    def test_decimal_from_string(self):
        """User input with separators"""
        assert decimal_from_string("1,200,000") == Decimal("1200000")
        assert decimal_from_string("1200.50") == Decimal("1200.50")
        assert decimal_from_string(7) == Decimal("7")

    def test_decimal_from_string_rejects_float(self):
        """Floats are refused outright"""
        with pytest.raises(ValueError):
            decimal_from_string(1.5)
