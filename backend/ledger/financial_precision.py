"""
LEDGER: DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe conversion of stored values (float / int / Decimal128) to Decimal
3. Integer cents for persisted accumulators, so server-side $inc stays exact
4. Amount validation (strictly positive transaction amounts)
5. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
from bson import Decimal128
import logging

from ledger.errors import InvalidInputError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
CENTS_PER_UNIT = 100

Numeric = Union[float, int, str, Decimal, Decimal128]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    Missing values (None) count as zero, as accumulators may be absent on old documents.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise InvalidInputError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return _finite(Decimal(str(value)), value)
    if isinstance(value, str):
        try:
            return _finite(Decimal(value.strip()), value)
        except InvalidOperation:
            raise InvalidInputError(f"Invalid numeric value: {value!r}")
    raise InvalidInputError(f"Cannot convert {type(value)} to Decimal")


def _finite(decimal_value: Decimal, original) -> Decimal:
    if not decimal_value.is_finite():
        raise InvalidInputError(f"Invalid numeric value: {original!r}")
    return decimal_value


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half-up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def to_cents(value: Numeric) -> int:
    """Rounded amount as a whole number of cents"""
    return int(round_financial(value) * CENTS_PER_UNIT)


def from_cents(cents) -> Decimal:
    """Whole cents back to a 2-place Decimal. Missing values count as zero."""
    if cents is None:
        return Decimal('0.00')
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise InvalidInputError(f"Cents must be a whole number, got {cents!r}")
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(QUANTIZE_PATTERN)


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a financial value is strictly positive (> 0) once rounded.
    Returns the rounded Decimal. Raises InvalidInputError otherwise.
    """
    rounded = round_financial(value)
    if rounded <= Decimal('0'):
        raise InvalidInputError(f"{field_name} must be greater than 0")
    return rounded


def totals_match(stored: Numeric, expected: Numeric, tolerance: Decimal = QUANTIZE_PATTERN) -> bool:
    """Compare two amounts within tolerance (default 1 cent)."""
    return abs(to_decimal(stored) - to_decimal(expected)) < tolerance
