"""Currency detection and amount parsing."""

import math
import re
from typing import Optional

# Multi-character symbols first so "C$" is not read as "$"
CURRENCY_SYMBOLS: list[tuple[str, str]] = [
    ("US$", "USD"),
    ("C$", "CAD"),
    ("A$", "AUD"),
    ("S$", "SGD"),
    ("RM", "MYR"),
    ("Rs.", "INR"),
    ("₹", "INR"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("$", "USD"),
]

CURRENCY_NAMES = {
    "dollar": "USD",
    "dollars": "USD",
    "euro": "EUR",
    "euros": "EUR",
    "pound": "GBP",
    "pounds": "GBP",
    "rupee": "INR",
    "rupees": "INR",
    "ringgit": "MYR",
    "yen": "JPY",
}

ISO_CODES = frozenset(
    {"USD", "EUR", "GBP", "CAD", "AUD", "INR", "JPY", "MYR", "SGD", "CHF", "CNY", "MXN", "NZD", "SEK"}
)

ISO_CODE_PATTERN = re.compile(r"\b(" + "|".join(sorted(ISO_CODES)) + r")\b")


def normalize_currency(value: Optional[str], default: str = "USD") -> str:
    """
    Map a currency symbol, name or code to an ISO 4217 code.

    Example:
        >>> normalize_currency("€")
        'EUR'
        >>> normalize_currency("usd")
        'USD'
    """
    if not value:
        return default

    cleaned = value.strip()
    if cleaned.upper() in ISO_CODES:
        return cleaned.upper()
    for symbol, code in CURRENCY_SYMBOLS:
        if cleaned == symbol:
            return code
    return CURRENCY_NAMES.get(cleaned.lower(), default)


def detect_currency(text: str, default: str = "USD") -> str:
    """Guess the currency of a receipt from explicit ISO codes, then symbols."""
    if not text:
        return default

    match = ISO_CODE_PATTERN.search(text)
    if match:
        return match.group(1)

    # A symbol only counts when it prefixes an amount
    for symbol, code in CURRENCY_SYMBOLS:
        if re.search(re.escape(symbol) + r"\s?\d", text):
            return code
    return default


def parse_amount(value: object) -> Optional[float]:
    """
    Parse a money amount such as ``"$1,234.50"`` or ``176.02``.

    Returns:
        Amount rounded to cents, or None when nothing numeric is present
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            amount = float(value)
        else:
            match = re.search(r"-?\d[\d,]*(?:\.\d+)?", str(value))
            if not match:
                return None
            amount = float(match.group(0).replace(",", ""))
    except (ValueError, OverflowError):
        return None
    # inf and nan are not amounts
    if not math.isfinite(amount):
        return None
    return round(amount, 2)
