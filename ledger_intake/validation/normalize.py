"""
Amount and date normalization for informal financial input.

Users and LLMs write amounts the way people talk: "120k", "1.5tr",
"52,000", "52.000 đ", "$12.50", "1.234,56 EUR". These helpers turn them
into Decimals deterministically, or raise. They NEVER guess silently:
anything that does not match a known shape is an error.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union


class AmountError(ValueError):
    """Amount text could not be normalized to a finite, non-negative number."""
    pass


class DateParseError(ValueError):
    """Date text matched none of the accepted formats."""
    pass


# Shorthand multipliers, including Vietnamese spoken forms
_MULTIPLIERS = {
    "k": Decimal("1000"),
    "nghìn": Decimal("1000"),
    "ngàn": Decimal("1000"),
    "m": Decimal("1000000"),
    "tr": Decimal("1000000"),
    "triệu": Decimal("1000000"),
    "củ": Decimal("1000000"),
    "b": Decimal("1000000000"),
    "bn": Decimal("1000000000"),
    "tỷ": Decimal("1000000000"),
    "tỉ": Decimal("1000000000"),
}

# Currency markers accepted as a prefix or suffix
_CURRENCY_MARKERS = {
    "vnd": "VND",
    "vnđ": "VND",
    "đ": "VND",
    "₫": "VND",
    "usd": "USD",
    "$": "USD",
    "eur": "EUR",
    "€": "EUR",
    "gbp": "GBP",
    "£": "GBP",
    "jpy": "JPY",
    "¥": "JPY",
    "usdt": "USDT",
    "btc": "BTC",
    "eth": "ETH",
}

_AMOUNT_RE = re.compile(
    r"^(?P<prefix>[^\d\s.,+-]*)\s*(?P<sign>[+-]?)\s*(?P<number>\d[\d.,\s]*)\s*(?P<suffix>.*)$"
)

_THOUSANDS_GROUP_RE = re.compile(r"^\d{1,3}(?:[.,]\d{3})+$")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
)


def _normalize_number(text: str) -> str:
    """Resolve thousands vs decimal separators into a plain decimal string."""
    text = text.replace(" ", "")
    has_comma = "," in text
    has_dot = "." in text

    if has_comma and has_dot:
        # Whichever separator comes last is the decimal point
        if text.rfind(",") > text.rfind("."):
            return text.replace(".", "").replace(",", ".")
        return text.replace(",", "")

    if has_comma or has_dot:
        sep = "," if has_comma else "."
        if _THOUSANDS_GROUP_RE.match(text) and not text.startswith("0" + sep):
            return text.replace(sep, "")
        if text.count(sep) > 1:
            raise AmountError(f"Ambiguous separators in '{text}'")
        return text.replace(",", ".")

    return text


def _split_unit(unit: str) -> tuple[Decimal, Optional[str]]:
    """Split suffix text like 'k vnd', 'tr', 'usd' into (multiplier, currency)."""
    unit = unit.strip().lower()
    currency = None
    for marker, code in sorted(_CURRENCY_MARKERS.items(), key=lambda kv: -len(kv[0])):
        if unit.endswith(marker):
            currency = code
            unit = unit[: -len(marker)].strip()
            break

    if not unit:
        return Decimal("1"), currency
    if unit in _MULTIPLIERS:
        return _MULTIPLIERS[unit], currency
    raise AmountError(f"Unknown amount unit '{unit}'")


def parse_amount(value: Union[str, int, float, Decimal]) -> tuple[Decimal, Optional[str]]:
    """
    Normalize an amount.

    Returns:
        (amount, currency) where currency is the code detected from a
        symbol/suffix in the text, or None.

    Raises:
        AmountError: unparsable, non-finite or negative.
    """
    if isinstance(value, bool):
        raise AmountError("Boolean is not an amount")

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation as e:
            raise AmountError(f"Invalid amount {value!r}") from e
        currency = None
    else:
        raw = str(value).strip()
        if not raw:
            raise AmountError("Amount is empty")
        match = _AMOUNT_RE.match(raw)
        if not match:
            raise AmountError(f"Not an amount: '{raw}'")

        prefix_currency = None
        prefix = match.group("prefix").strip().lower()
        if prefix:
            if prefix not in _CURRENCY_MARKERS:
                raise AmountError(f"Unknown currency marker '{prefix}'")
            prefix_currency = _CURRENCY_MARKERS[prefix]

        multiplier, suffix_currency = _split_unit(match.group("suffix"))
        try:
            amount = Decimal(_normalize_number(match.group("number"))) * multiplier
        except InvalidOperation as e:
            raise AmountError(f"Not an amount: '{raw}'") from e
        if match.group("sign") == "-":
            amount = -amount
        currency = suffix_currency or prefix_currency

    if not amount.is_finite():
        raise AmountError("Amount must be finite")
    if amount < 0:
        raise AmountError("Amount must not be negative")
    if amount == amount.to_integral_value():
        amount = amount.quantize(Decimal("1"))
    return amount, currency


def parse_date(value: Union[str, date, datetime]) -> date:
    """
    Parse a date from the formats users and bank statements produce.

    Day-first formats are tried before ISO-with-time, so '01/02/2025' is
    1 February 2025.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    raw = str(value).strip()
    if not raw:
        raise DateParseError("Date is empty")

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        pass
    raise DateParseError(f"Unrecognized date '{raw}'")
