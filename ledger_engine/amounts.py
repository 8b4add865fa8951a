"""
Fixed-Point Amount Module

All monetary values are Decimal with exactly two fractional digits and must
fit a decimal(19,2) column. NEVER uses float arithmetic.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# decimal(19,2): 17 integer digits
MAX_AMOUNT = Decimal('99999999999999999.99')

AmountLike = Union[Decimal, int, str, float]


def to_amount(value: AmountLike, field: str = "amount") -> Decimal:
    """
    Parse a caller-supplied value into a two-digit Decimal.

    Args:
        value: Decimal, int, str or float (floats go through str)
        field: Name used in error messages

    Returns:
        Decimal quantized to cents

    Raises:
        ValidationError: If the value is missing, not numeric, not finite,
            has more than two fractional digits or exceeds decimal(19,2)
    """
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal number")

    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number, got {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite")

    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT}")

    quantized = amount.quantize(CENT)
    if quantized != amount:
        raise ValidationError(f"{field} cannot have more than 2 decimal places: {value}")

    return quantized


def format_amount(amount: Decimal) -> str:
    """String form used in storage, logs and API responses"""
    return str(amount.quantize(CENT))
