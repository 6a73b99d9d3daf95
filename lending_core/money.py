"""
Money Helpers Module

Decimal conversion and cent rounding for every monetary value in the engine.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any
import re

# High precision for intermediate amortization math
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# Plain digits, or groups of three separated by commas, with an optional fraction
AMOUNT_PATTERN = re.compile(r'^[+-]?(\d{1,3}(,\d{3})+|\d+)(\.\d+)?$')


def quantize_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or user-supplied value to Decimal

    Floats go through str() so 0.1 becomes Decimal('0.1') and not its
    binary expansion.

    Raises:
        ValueError: If value cannot be converted to a finite Decimal
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def decimal_from_string(value: str) -> Decimal:
    """
    Strictly convert a plain decimal string, optionally with comma thousands
    separators ("1,250.50" -> Decimal('1250.50'))

    Anything else (exponents, stray characters, other separator conventions)
    is rejected rather than reinterpreted.

    Raises:
        ValueError: If string is not a well-formed decimal amount
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    text = value.strip()
    if not AMOUNT_PATTERN.match(text):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    try:
        return Decimal(text.replace(',', ''))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_money(value: Decimal) -> str:
    """Format for logs and audit metadata"""
    return f"{quantize_money(value):,.2f}"
