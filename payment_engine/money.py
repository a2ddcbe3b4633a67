"""
Money Module

Exact Decimal handling for balances and amounts. Amounts are quantized to
minor units (two decimal places). NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import InvalidRequest

# Set global decimal context for financial precision
getcontext().prec = 28

MINOR_UNIT = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int, float]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a value to a Decimal quantized to minor units.

    Floats are converted through their string form so 0.1 stays 0.10.

    Raises:
        InvalidRequest: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidRequest(f"Invalid amount: {value!r}")
    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value))
        except InvalidOperation:
            raise InvalidRequest(f"Invalid amount: {value!r}")
    if not value.is_finite():
        raise InvalidRequest(f"Invalid amount: {value!r}")
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_positive_amount(value: AmountLike) -> Decimal:
    """Convert to an amount and require it to be greater than zero"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidRequest("Amount must be positive", amount=str(amount))
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.2f}"
