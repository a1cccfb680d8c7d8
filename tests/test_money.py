"""
Test suite for money module

Rounding, conversion and external amount parsing. Every amount in the
engine goes through these helpers.
"""

import pytest
from decimal import Decimal

from loan_servicing.money import (
    ZERO, to_decimal, round_money, money_sum, monthly_rate, monthly_interest, parse_amount
)


class TestConversion:
    """Test Decimal conversion"""

    def test_strings_and_ints(self):
        assert to_decimal("1500.25") == Decimal("1500.25")
        assert to_decimal(12) == Decimal("12")
        assert to_decimal(" 7.5 ") == Decimal("7.5")

    def test_decimal_passthrough(self):
        value = Decimal("3.14159")
        assert to_decimal(value) is value

    def test_float_rejected(self):
        with pytest.raises(ValueError, match="floats"):
            to_decimal(0.1)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            to_decimal("abc")


class TestRounding:
    """Test half-away-from-zero rounding"""

    def test_half_up(self):
        assert round_money("2.345") == Decimal("2.35")
        assert round_money("2.344") == Decimal("2.34")
        assert round_money("0.005") == Decimal("0.01")

    def test_negative_rounds_away_from_zero(self):
        assert round_money("-2.345") == Decimal("-2.35")

    def test_two_decimals_always(self):
        assert str(round_money(10)) == "10.00"

    def test_money_sum(self):
        assert money_sum(["0.10", "0.20", Decimal("0.30")]) == Decimal("0.60")
        assert money_sum([]) == ZERO


class TestRates:
    """Test rate helpers"""

    def test_monthly_rate(self):
        assert monthly_rate(36) == Decimal("0.03")
        assert monthly_rate("24") == Decimal("0.02")

    def test_monthly_interest(self):
        assert monthly_interest(Decimal("1000000"), Decimal("36")) == Decimal("30000.00")
        assert monthly_interest(Decimal("12345.67"), Decimal("24")) == Decimal("246.91")

    def test_zero_rate(self):
        assert monthly_interest(Decimal("5000"), 0) == ZERO


class TestParseAmount:
    """Test parsing of amounts from payroll files"""

    def test_comma_decimal_with_dot_thousands(self):
        assert parse_amount("8.167,97") == Decimal("8167.97")

    def test_dot_decimal_with_comma_thousands(self):
        assert parse_amount("8,167.97") == Decimal("8167.97")

    def test_lone_separator_thousands(self):
        assert parse_amount("1.500") == Decimal("1500.00")
        assert parse_amount("1,500") == Decimal("1500.00")

    def test_lone_separator_decimal(self):
        assert parse_amount("1500,5") == Decimal("1500.50")
        assert parse_amount("1500.55") == Decimal("1500.55")

    def test_currency_symbols_ignored(self):
        assert parse_amount("₡ 25.000,00") == Decimal("25000.00")

    def test_plain_integer(self):
        assert parse_amount("42") == Decimal("42.00")

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            parse_amount("  ")
        with pytest.raises(ValueError):
            parse_amount("n/a")
