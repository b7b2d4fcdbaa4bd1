"""
Money helpers.

All amounts are Decimal, quantized to cents with half-up rounding.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .exceptions import ValidationError

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

# Largest value a Numeric(12, 2) column holds
MAX_AMOUNT = Decimal('9999999999.99')


def as_decimal(value) -> Decimal:
    """Coerce int/float/str/None to Decimal without float artefacts."""
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value) -> Decimal:
    return as_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_amount(value, field: str, maximum: Decimal = MAX_AMOUNT) -> Decimal:
    """
    Parse caller-supplied input into a finite, non-negative Decimal.

    Raises ValidationError for anything that is not a number, is NaN or
    infinite, is negative, or would not fit the column.
    """
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a number', field)
    try:
        amount = as_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f'{field} must be a number', field)

    if not amount.is_finite():
        raise ValidationError(f'{field} must be a finite number', field)
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative', field)
    if amount > maximum or quantize_money(amount) > maximum:
        raise ValidationError(f'{field} cannot exceed {maximum}', field)
    return amount
