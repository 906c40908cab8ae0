"""
Money Handling Module

Parses caller-supplied amounts into fixed-point Decimals with 2 decimal
places. NEVER uses float for monetary values: floats are converted through
their string form before any arithmetic.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, getcontext
from typing import Any
import re

from .errors import InvalidAmount

# High precision for intermediate arithmetic
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

_SYMBOL_CHARS = set("$€£¥ \t\u00a0\u2009")
_GROUPING_CHARS = set(",'_")

CURRENCY_CODES = ("ZAR", "USD", "EUR", "GBP", "JPY", "AUD", "CAD", "CHF", "CNY")
_MARKERS = "|".join(CURRENCY_CODES + ("R",))
# Currency marker left at either end: "R" (rand) or a known ISO code
_CURRENCY_MARKER = re.compile(rf"^(?:{_MARKERS})|(?:{_MARKERS})$", re.IGNORECASE)
_PLAIN_NUMBER = re.compile(r"[0-9]+(?:\.[0-9]+)?")


def quantize_amount(value: Decimal) -> Decimal:
    """Round to 2 decimal places using banker's rounding (idempotent)"""
    return value.quantize(CENTS, rounding=ROUND_HALF_EVEN)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        text = "".join(ch for ch in value.strip() if ch not in _SYMBOL_CHARS)
        text = _CURRENCY_MARKER.sub("", text)
        text = "".join(ch for ch in text if ch not in _GROUPING_CHARS)
        # Plain digits only: no signs, exponents or stray letters
        if not _PLAIN_NUMBER.fullmatch(text):
            raise InvalidAmount(f"Amount {value!r} is not a number")
        return Decimal(text)
    raise InvalidAmount(f"Unsupported amount type: {type(value).__name__}")


def parse_amount(value: Any) -> Decimal:
    """
    Normalize a caller-supplied amount.

    Accepts Decimal, int, float or text such as "1500", "1,500.00",
    "R 1 500.00" or "1500 ZAR". Text may carry currency symbols, "R" or one
    of CURRENCY_CODES at either end; what remains must be plain digits with
    an optional decimal point. The result is rounded once, half-even, to
    2 decimal places.

    Raises:
        InvalidAmount: if the value is not numeric, not finite, or <= 0
            after rounding
    """
    amount = _to_decimal(value)
    if not amount.is_finite():
        raise InvalidAmount(f"Amount {value!r} is not finite")

    try:
        amount = quantize_amount(amount)
    except InvalidOperation:
        raise InvalidAmount(f"Amount {value!r} is out of range")
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be greater than zero, got {amount}")
    return amount


def format_amount(amount: Decimal, currency: str) -> str:
    """Format for display, e.g. 'ZAR 1,950.00'"""
    return f"{currency} {quantize_amount(amount):,.2f}"
