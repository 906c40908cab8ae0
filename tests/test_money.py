"""
Test suite for money module

Tests amount parsing, banker's rounding, and rejection of invalid amounts.
All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from bank_ledger.errors import InvalidAmount, ErrorKind
from bank_ledger.money import parse_amount, quantize_amount, format_amount


class TestParseAmount:
    """Test parsing of caller-supplied amounts"""

    def test_plain_values(self):
        """Test Decimal, int and text inputs"""
        assert parse_amount(Decimal('2450.00')) == Decimal('2450.00')
        assert parse_amount(1500) == Decimal('1500.00')
        assert parse_amount("1500") == Decimal('1500.00')
        assert parse_amount("0.01") == Decimal('0.01')

    def test_result_has_two_decimal_places(self):
        """Test that parsed amounts always carry scale 2"""
        assert parse_amount("10").as_tuple().exponent == -2
        assert parse_amount(Decimal('7.1')).as_tuple().exponent == -2

    def test_grouping_separators(self):
        """Test tolerance of grouping separators"""
        assert parse_amount("1,500.00") == Decimal('1500.00')
        assert parse_amount("1 500.00") == Decimal('1500.00')
        assert parse_amount("1'000'000.50") == Decimal('1000000.50')

    def test_currency_symbols(self):
        """Test tolerance of currency symbols and codes"""
        assert parse_amount("R 1,500.00") == Decimal('1500.00')
        assert parse_amount("R1500") == Decimal('1500.00')
        assert parse_amount("$2,450.50") == Decimal('2450.50')
        assert parse_amount("£ 10") == Decimal('10.00')
        assert parse_amount("1500 ZAR") == Decimal('1500.00')
        assert parse_amount("USD 99.99") == Decimal('99.99')
        assert parse_amount("1500 zar") == Decimal('1500.00')

    def test_float_goes_through_string(self):
        """Test that floats are converted via their string form"""
        assert parse_amount(0.1) == Decimal('0.10')
        assert parse_amount(19.99) == Decimal('19.99')

    def test_half_even_rounding(self):
        """Test banker's rounding at the boundary"""
        assert parse_amount("10.005") == Decimal('10.00')
        assert parse_amount("10.015") == Decimal('10.02')
        assert parse_amount("2.345") == Decimal('2.34')
        assert parse_amount("2.355") == Decimal('2.36')

    @pytest.mark.parametrize("value", [
        "0", "0.00", "-5", "-0.01", "0.004", "abc", "12abc34", "", "   ",
        "NaN", Decimal('NaN'), Decimal('Infinity'), float('inf'),
        True, None, [], "1.2.3",
        "abc12", "12xyz", "12e3", "1E5", "+5", "XYZ 10", "12 abc",
    ])
    def test_invalid_amounts(self, value):
        """Test that non-numeric, non-finite and non-positive amounts are rejected"""
        with pytest.raises(InvalidAmount) as exc_info:
            parse_amount(value)
        assert exc_info.value.kind == ErrorKind.INVALID_AMOUNT
        assert not exc_info.value.retryable


class TestQuantize:
    """Test rounding helpers"""

    def test_rounding_is_idempotent(self):
        """Test that re-rounding an already-rounded value is a no-op"""
        for raw in ['0.01', '10.00', '2450.00', '123456.78']:
            value = Decimal(raw)
            assert quantize_amount(value) == value
            assert quantize_amount(quantize_amount(value)) == quantize_amount(value)

        once = quantize_amount(Decimal('2.345'))
        assert quantize_amount(once) == once

    def test_parse_of_parsed_value_is_stable(self):
        """Test that parsing an already-normalized amount returns it unchanged"""
        amount = parse_amount("1,234.565")
        assert parse_amount(amount) == amount

    def test_format_amount(self):
        """Test display formatting"""
        assert format_amount(Decimal('1950'), "ZAR") == "ZAR 1,950.00"
        assert format_amount(Decimal('0.5'), "USD") == "USD 0.50"
