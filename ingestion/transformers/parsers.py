"""
Locale-tolerant coercion of numeric cells
"""

import re
from typing import Optional, Tuple

# Symbols and codes stripped before numeric parsing
CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
}
CURRENCY_CODES = ("USD", "EUR", "GBP", "JPY", "AED", "CAD", "AUD", "CHF", "INR")

_CURRENCY_RE = re.compile(
    r"(" + "|".join(CURRENCY_CODES) + r")|[" + "".join(re.escape(s) for s in CURRENCY_SYMBOLS) + r"]",
    re.IGNORECASE,
)
_EUROPEAN_DECIMAL_RE = re.compile(r"^\d+,\d{1,2}$")
_LEADING_NUMBER_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)")
_TRAILING_ZERO_DECIMAL_RE = re.compile(r"\.0+$")
_INTEGER_RE = re.compile(r"\d+")
_WEIGHT_UNIT_RE = re.compile(r"(?<![a-z])(kgs|kg|lbs|lb|oz|g)\b", re.IGNORECASE)


def detect_currency(value) -> Optional[str]:
    """ISO code for the first currency symbol/code found in ``value``"""
    if value is None:
        return None
    match = _CURRENCY_RE.search(str(value))
    if not match:
        return None
    if match.group(1):
        return match.group(1).upper()
    return CURRENCY_SYMBOLS[match.group(0)]


def _leading_float(text: str) -> Optional[float]:
    match = _LEADING_NUMBER_RE.match(text)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def parse_price(value) -> Optional[float]:
    """
    Parse a price cell into a plain decimal.

    - currency symbols/codes and whitespace are removed first
    - "12,50" (digits, comma, one or two digits) is a European decimal
    - any other comma is a thousands separator: "1,234,567.89" -> 1234567.89
    - unparsable or negative values become None, never 0
    """
    if value is None:
        return None
    text = _CURRENCY_RE.sub("", str(value))
    text = re.sub(r"\s+", "", text)
    if not text:
        return None

    if _EUROPEAN_DECIMAL_RE.match(text):
        text = text.replace(",", ".")
    elif "," in text:
        text = text.replace(",", "")

    parsed = _leading_float(text)
    if parsed is None or parsed < 0:
        return None
    return parsed


def parse_quantity(value) -> int:
    """
    Parse a quantity cell. Non-digits are stripped; unparsable becomes 0.

    A trailing ".0" (spreadsheet exports) is dropped first so "15.0" is 15,
    not 150.
    """
    if value is None:
        return 0
    text = _TRAILING_ZERO_DECIMAL_RE.sub("", str(value).strip())
    digits = re.sub(r"[^\d]", "", text)
    if not digits:
        return 0
    return int(digits)


def parse_weight(value) -> Tuple[Optional[float], Optional[str]]:
    """Weight and, when written next to it, its unit ("2,5 kg" -> (2.5, "kg"))"""
    if value is None:
        return None, None
    text = str(value)
    unit_match = _WEIGHT_UNIT_RE.search(text)
    unit = unit_match.group(1).lower() if unit_match else None
    if unit_match:
        text = _WEIGHT_UNIT_RE.sub("", text)
    return parse_price(text), unit


def parse_days(value) -> Optional[int]:
    """First integer in a lead-time cell ("5-7 days" -> 5)"""
    if value is None:
        return None
    match = _INTEGER_RE.search(str(value))
    return int(match.group(0)) if match else None


def is_on_order(value) -> bool:
    """True when an availability cell explicitly says the item is on order"""
    if not value:
        return False
    text = re.sub(r"[\s_-]+", " ", str(value).strip().lower())
    return text in ("on order", "onorder", "backorder", "back order", "on request")
