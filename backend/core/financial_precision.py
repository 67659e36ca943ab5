"""
BILLING ENGINE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts, percents within 0-100)
4. Rounding at presentation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging

from core.billing_errors import InvalidAmountError, PercentOutOfRangeError

logger = logging.getLogger(__name__)

Numeric = Union[float, int, str, Decimal]

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

# Tolerance for comparing scheduled totals against contract amounts
BALANCE_EPSILON = Decimal('0.01')

ZERO = Decimal('0')
HUNDRED = Decimal('100')


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be represented as a Decimal"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    Call ONLY at presentation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """Round to 2 places and convert to float for storage / JSON."""
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    """Raise InvalidAmountError for negative or non-finite currency values."""
    decimal_value = to_decimal(value)
    if not decimal_value.is_finite() or decimal_value < ZERO:
        raise InvalidAmountError(field_name, value)
    return decimal_value


def validate_percent(value: Numeric, field_name: str) -> Decimal:
    """Raise PercentOutOfRangeError unless 0 <= value <= 100. NaN is out of range."""
    decimal_value = to_decimal(value)
    if not decimal_value.is_finite() or decimal_value < ZERO or decimal_value > HUNDRED:
        raise PercentOutOfRangeError(field_name, value)
    return decimal_value


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Division that returns 0 for a zero denominator"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return to_decimal(amount) * to_decimal(percentage) / HUNDRED


def percent_of(part: Numeric, whole: Numeric) -> Decimal:
    """part / whole * 100, or 0 when whole is 0."""
    return safe_divide(part, whole) * HUNDRED


def amounts_match(a: Numeric, b: Numeric, epsilon: Decimal = BALANCE_EPSILON) -> bool:
    """True when two currency values agree within epsilon."""
    return abs(to_decimal(a) - to_decimal(b)) <= epsilon
