"""
Money Handling Module

Proper Decimal precision for monetary values. The ledger is single-currency,
so amounts are plain Decimals quantized to cents. NEVER uses float for
stored or compared monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any, Optional

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_amount(value: Any) -> Decimal:
    """
    Convert a value to a Decimal rounded to currency precision.

    Floats are converted through their string form so that 0.1 stays 0.10.

    Raises:
        ValueError: If the value is not a finite number or has more digits
            than the decimal context can hold at cent precision
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary amount: {value!r}")
    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {value!r}")
    if not value.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Monetary amount out of range: {value!r}")


def parse_amount(value: Any) -> Optional[Decimal]:
    """Like to_amount, but returns None for unparseable input"""
    try:
        return to_amount(value)
    except (ValueError, TypeError):
        return None


def is_multiple_of(amount: Decimal, step: Decimal) -> bool:
    """Check that amount is a whole multiple of step"""
    if step <= 0:
        return True
    return amount % step == 0


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{to_amount(amount):,.2f}"
