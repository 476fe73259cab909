"""
DECIMAL PRECISION & MONEY UTILITIES

All balance arithmetic is done in Decimal and rounded only at the
storage boundary. Amounts are stored as float in MongoDB.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation
from typing import Union
import logging

logger = logging.getLogger(__name__)

DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be used as an amount"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative amount is detected where it is not allowed"""
    pass


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal without rounding.
    Floats go through str() to avoid binary artefacts.
    """
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Invalid amount: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """Round to 2 decimal places (half up). Call at boundaries only."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Convert to float for MongoDB storage, rounding first."""
    return float(round_financial(value))


def validate_non_negative(value: Number, field_name: str) -> None:
    if to_decimal(value) < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Number, field_name: str) -> None:
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_subtract(a: Number, b: Number) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Number) -> Decimal:
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Number, percentage: Number) -> Decimal:
    """calculate_percentage(10000, 0.7) == 70"""
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')


def ceil_amount(value: Number) -> Decimal:
    """Round up to a whole currency unit (gateway fees are charged this way)."""
    return to_decimal(value).quantize(Decimal('1'), rounding=ROUND_CEILING)


def round_amount(value: Number) -> Decimal:
    """Round to a whole currency unit (half up)."""
    return to_decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP)


def format_amount(value: Number) -> str:
    """Integer string used inside gateway signatures (10000.0 -> '10000')."""
    amount = round_amount(value)
    return str(int(amount))
