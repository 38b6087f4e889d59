"""
Currency Conversion Module

The core keeps every amount as integer cents. Amounts entering from the
outside (decimal strings, Decimals, whole integers) are converted here with
ROUND_HALF_UP at two decimal places. NEVER uses float arithmetic.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS_PER_UNIT = 100
CENT = Decimal("0.01")

AmountLike = Union[Decimal, str, int]


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of an amount, e.g. "1,250.50" or "$10"

    Returns:
        Decimal value

    Raises:
        InvalidAmountError: If string cannot be converted to a finite Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidAmountError("Amount must be a non-empty string")

    # Strip currency symbols, whitespace and thousands separators
    clean_value = re.sub(r"[^\d.\-+]", "", value.strip().replace(",", ""))

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise InvalidAmountError(f"Cannot convert '{value}' to an amount")
    if not result.is_finite():
        raise InvalidAmountError(f"Cannot convert '{value}' to an amount")
    return result


def to_cents(amount: AmountLike) -> int:
    """
    Convert a decimal currency amount to integer cents.

    Args:
        amount: Decimal, decimal string, or whole-unit integer

    Returns:
        Amount in cents, rounded half up

    Raises:
        InvalidAmountError: If the value is not a valid amount
    """
    if isinstance(amount, bool):
        raise InvalidAmountError("Amount must be numeric")
    if isinstance(amount, int):
        return amount * CENTS_PER_UNIT
    if isinstance(amount, float):
        # Floats only arrive from JSON bodies; go through their repr
        amount = Decimal(repr(amount))
    elif isinstance(amount, str):
        amount = decimal_from_string(amount)
    elif not isinstance(amount, Decimal):
        raise InvalidAmountError(f"Unsupported amount type: {type(amount).__name__}")

    if not amount.is_finite():
        raise InvalidAmountError("Amount must be finite")
    rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    return int(rounded * CENTS_PER_UNIT)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal"""
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(CENT)


def format_cents(cents: int) -> str:
    """Format cents for display, e.g. -123456 -> '-$1,234.56'"""
    sign = "-" if cents < 0 else ""
    return f"{sign}${from_cents(abs(cents)):,.2f}"
