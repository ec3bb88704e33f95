"""
Test suite for money handling

Covers creation and rounding, arithmetic, currency mismatches, tolerance
comparison and the decimal parsing helpers.
"""

import pytest
from decimal import Decimal

from loan_engine.currency import (
    Currency, Money, sum_money, to_decimal, decimal_from_string, validate_decimal_precision
)


class TestMoney:
    """Test the Money value type"""

    def test_money_creation(self):
        money = Money(Decimal('19418.55'), Currency.NGN)

        assert money.amount == Decimal('19418.55')
        assert money.currency == Currency.NGN

    def test_money_rounds_half_up(self):
        assert Money(Decimal('4438.355'), Currency.NGN).amount == Decimal('4438.36')
        assert Money(Decimal('4438.354'), Currency.NGN).amount == Decimal('4438.35')
        assert Money(Decimal('0.005'), Currency.USD).amount == Decimal('0.01')

    def test_money_from_int_and_str(self):
        assert Money(1000000, Currency.NGN).amount == Decimal('1000000.00')
        assert Money('250.5', Currency.NGN).amount == Decimal('250.50')

    def test_money_from_float_avoids_binary_noise(self):
        assert Money(0.1 + 0.2, Currency.NGN).amount == Decimal('0.30')

    def test_money_rejects_garbage(self):
        with pytest.raises(ValueError):
            Money("not-a-number", Currency.NGN)

    def test_zero(self):
        zero = Money.zero(Currency.KES)

        assert zero.is_zero()
        assert not zero.is_positive()
        assert zero.currency == Currency.KES

    def test_arithmetic(self):
        a = Money(Decimal('100.10'), Currency.NGN)
        b = Money(Decimal('50.05'), Currency.NGN)

        assert a + b == Money(Decimal('150.15'), Currency.NGN)
        assert a - b == Money(Decimal('50.05'), Currency.NGN)
        assert a * 3 == Money(Decimal('300.30'), Currency.NGN)
        assert a / 3 == Money(Decimal('33.37'), Currency.NGN)
        assert -a == Money(Decimal('-100.10'), Currency.NGN)
        assert abs(-a) == a
        assert (b - a).is_negative()

    def test_comparison(self):
        small = Money(Decimal('10'), Currency.NGN)
        large = Money(Decimal('20'), Currency.NGN)

        assert small < large
        assert small <= large
        assert large > small
        assert large >= small
        assert small != large
        assert small != Decimal('10')

    def test_currency_mismatch_raises(self):
        naira = Money(Decimal('10'), Currency.NGN)
        dollars = Money(Decimal('10'), Currency.USD)

        with pytest.raises(ValueError, match="Cannot add NGN and USD"):
            naira + dollars
        with pytest.raises(ValueError):
            naira - dollars
        with pytest.raises(ValueError):
            naira < dollars

    def test_money_is_hashable(self):
        values = {Money(Decimal('1'), Currency.NGN), Money(Decimal('1.00'), Currency.NGN)}
        assert len(values) == 1

    def test_close_to_is_inclusive(self):
        recorded = Money(Decimal('1000.01'), Currency.NGN)
        verified = Money(Decimal('1000.00'), Currency.NGN)

        assert recorded.close_to(verified, Decimal('0.01'))
        assert not recorded.close_to(verified, Decimal('0.00'))
        assert not Money(Decimal('1000.02'), Currency.NGN).close_to(verified, Decimal('0.01'))

    def test_to_string(self):
        assert Money(Decimal('1004438.36'), Currency.NGN).to_string() == "NGN 1,004,438.36"


class TestMoneyHelpers:
    """Test module-level helpers"""

    def test_sum_money(self):
        amounts = [Money(Decimal('0.10'), Currency.NGN)] * 3
        assert sum_money(amounts, Currency.NGN) == Money(Decimal('0.30'), Currency.NGN)

    def test_sum_money_empty(self):
        assert sum_money([], Currency.GHS) == Money.zero(Currency.GHS)

    def test_to_decimal(self):
        assert to_decimal('12.50') == Decimal('12.50')
        assert to_decimal(7) == Decimal('7')
        assert to_decimal(Decimal('3.3')) == Decimal('3.3')

    @pytest.mark.parametrize("value", [None, True, "abc"])
    def test_to_decimal_rejects(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)

    @pytest.mark.parametrize("text,expected", [
        ("1004438.36", Decimal('1004438.36')),
        ("₦1,004,438.36", Decimal('1004438.36')),
        ("NGN 19 418.55", Decimal('19418.55')),
        ("1,000", Decimal('1000')),
        ("12,5", Decimal('12.5')),
        ("-250.00", Decimal('-250.00')),
    ])
    def test_decimal_from_string(self, text, expected):
        assert decimal_from_string(text) == expected

    @pytest.mark.parametrize("text", ["", "NGN", None])
    def test_decimal_from_string_rejects(self, text):
        with pytest.raises(ValueError):
            decimal_from_string(text)

    def test_validate_decimal_precision(self):
        assert validate_decimal_precision(Decimal('19418.555'), Currency.NGN) == Decimal('19418.56')
