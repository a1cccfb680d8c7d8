"""
Money and Rounding Module

Fixed-point helpers shared by every component. All monetary values are
Decimals with two fractional digits, rounded half away from zero. No other
module quantizes amounts on its own.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Iterable, Union
import re

# High precision for intermediate rate arithmetic
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a value to Decimal without rounding.

    Floats are rejected: a float has already lost precision by the time it
    reaches this function.

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def round_money(value: Numeric) -> Decimal:
    """Round to two decimals, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Numeric]) -> Decimal:
    """Sum already-rounded amounts and return a two-decimal result"""
    total = ZERO
    for value in values:
        total += round_money(value)
    return round_money(total)


def monthly_rate(annual_rate: Numeric) -> Decimal:
    """
    Convert an annual percentage rate (36 for 36%) to the unrounded monthly
    fraction used by the amortization formulas.
    """
    return to_decimal(annual_rate) / MONTHS_PER_YEAR / HUNDRED


def monthly_interest(balance: Numeric, annual_rate: Numeric) -> Decimal:
    """One month of simple interest on a balance, rounded"""
    return round_money(to_decimal(balance) * monthly_rate(annual_rate))


def parse_amount(value: str) -> Decimal:
    """
    Parse an externally supplied amount string.

    Accepts both ``8.167,97`` and ``8,167.97`` styles. When both separators
    appear the right-most one is the decimal separator. A lone separator
    followed by exactly three digits is a thousands separator.

    Args:
        value: Raw amount text (currency symbols and spaces are ignored)

    Returns:
        Rounded Decimal amount

    Raises:
        ValueError: If the text is empty or not numeric
    """
    if value is None or not str(value).strip():
        raise ValueError("Amount must be a non-empty string")

    clean = re.sub(r'[^\d.,\-]', '', str(value).strip())
    if not clean or not re.search(r'\d', clean):
        raise ValueError(f"Cannot parse amount '{value}'")

    if ',' in clean and '.' in clean:
        if clean.rfind(',') > clean.rfind('.'):
            clean = clean.replace('.', '').replace(',', '.')
        else:
            clean = clean.replace(',', '')
    elif ',' in clean or '.' in clean:
        separator = ',' if ',' in clean else '.'
        parts = clean.split(separator)
        if len(parts) > 2 or len(parts[-1]) == 3:
            clean = clean.replace(separator, '')
        else:
            clean = clean.replace(separator, '.')

    return round_money(clean)
