"""
Monetary Amounts

Card balances and transfer amounts are exact Decimals with two fractional
digits. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import InvalidOperationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str]


def to_amount(value: AmountLike) -> Decimal:
    """Convert a value to a two-place Decimal amount"""
    if isinstance(value, float):
        raise InvalidOperationError("Monetary amounts must not be floats")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidOperationError(f"Invalid monetary amount: {value!r}")
    if not amount.is_finite():
        raise InvalidOperationError(f"Invalid monetary amount: {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidOperationError(f"Monetary amount out of range: {value!r}")


def to_positive_amount(value: AmountLike) -> Decimal:
    """Convert to an amount and require it to be strictly positive"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidOperationError("Amount must be positive")
    return amount
