"""
Currency and number formatting for the en-PK locale.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from clinic_portal.models import to_decimal

CURRENCY_SYMBOL = "Rs"
_NBSP = "\u00a0"


def format_number(value: Any, decimals: int = 0) -> str:
    """Group thousands with commas; half-up rounding."""
    amount = to_decimal(value)
    quantum = Decimal(1).scaleb(-decimals)
    rounded = amount.quantize(quantum, rounding=ROUND_HALF_UP)
    text = f"{abs(rounded):,.{decimals}f}"
    return f"-{text}" if rounded < 0 else text


def format_pkr(value: Any) -> str:
    """``Rs 6,500`` (no decimals), minus sign before the symbol."""
    text = format_number(value)
    if text.startswith("-"):
        return f"-{CURRENCY_SYMBOL}{_NBSP}{text[1:]}"
    return f"{CURRENCY_SYMBOL}{_NBSP}{text}"
