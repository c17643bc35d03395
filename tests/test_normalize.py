"""Tests for amount and date normalization."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from ledger_intake.validation import AmountError, DateParseError, parse_amount, parse_date


class TestParseAmount:
    """Tests for informal amount normalization."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("120k", Decimal("120000")),
            ("1.5tr", Decimal("1500000")),
            ("2m", Decimal("2000000")),
            ("52,000", Decimal("52000")),
            ("52.000", Decimal("52000")),
            ("1.234,56", Decimal("1234.56")),
            ("1,234.56", Decimal("1234.56")),
            ("0.5", Decimal("0.5")),
            ("3 triệu", Decimal("3000000")),
        ],
    )
    def test_amount_shapes(self, text, expected):
        """Shorthand, thousands separators and decimal commas."""
        amount, _ = parse_amount(text)
        assert amount == expected

    @pytest.mark.parametrize(
        "text, amount, currency",
        [
            ("52.000 đ", Decimal("52000"), "VND"),
            ("$12.50", Decimal("12.50"), "USD"),
            ("120k vnd", Decimal("120000"), "VND"),
            ("1.234,56 EUR", Decimal("1234.56"), "EUR"),
            ("0.01 btc", Decimal("0.01"), "BTC"),
        ],
    )
    def test_currency_detected(self, text, amount, currency):
        """Currency symbols and suffixes are reported separately."""
        assert parse_amount(text) == (amount, currency)

    def test_integral_amount_has_no_exponent(self):
        """Multiplied amounts stay in plain notation."""
        amount, _ = parse_amount("120k")
        assert str(amount) == "120000"

    def test_numeric_input(self):
        """Numbers pass straight through."""
        assert parse_amount(52000) == (Decimal("52000"), None)

    @pytest.mark.parametrize("text", ["", "abc", "-5", "12 bananas", "1.2.3", "NaN", "inf"])
    def test_rejects_invalid(self, text):
        """Garbage, negative and non-finite amounts are errors."""
        with pytest.raises(AmountError):
            parse_amount(text)

    def test_rejects_boolean(self):
        """True is not 1 VND."""
        with pytest.raises(AmountError):
            parse_amount(True)


class TestParseDate:
    """Tests for date parsing."""

    @pytest.mark.parametrize(
        "text",
        ["2025-01-01", "01/01/2025", "01-01-2025", "2025/01/01", "01.01.2025", "2025-01-01T10:30:00"],
    )
    def test_accepted_formats(self, text):
        """ISO and day-first formats."""
        assert parse_date(text) == date(2025, 1, 1)

    def test_day_first(self):
        """Slashed dates are day-first."""
        assert parse_date("02/03/2025") == date(2025, 3, 2)

    def test_date_objects_pass_through(self):
        """date and datetime values are accepted."""
        assert parse_date(date(2025, 5, 1)) == date(2025, 5, 1)
        assert parse_date(datetime(2025, 5, 1, 8, 0)) == date(2025, 5, 1)

    @pytest.mark.parametrize("text", ["", "yesterday", "32/01/2025", "2025-13-01"])
    def test_rejects_invalid(self, text):
        """Unparsable dates are errors."""
        with pytest.raises(DateParseError):
            parse_date(text)
