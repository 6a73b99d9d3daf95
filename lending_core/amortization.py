"""
Amortization Module

Fixed-installment (French method) payment calculation. Pure and
deterministic: the same inputs always produce the same cent-rounded result.
"""

from decimal import Decimal
from typing import Union

from .money import quantize_money, to_decimal

Number = Union[Decimal, int, str]

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


def installment(principal: Number, annual_rate_percent: Number, term_months: int) -> Decimal:
    """
    Calculate the fixed periodic installment

    Standard formula: P * r(1+r)^n / ((1+r)^n - 1) with r = annual% / 100 / 12.

    Args:
        principal: Amount financed, must be > 0
        annual_rate_percent: Nominal annual rate in percent (12 means 12%), must be >= 0
        term_months: Number of installments, must be > 0

    Returns:
        Installment rounded half-up to cents, or Decimal('0') when the inputs
        are outside the preconditions. Zero means "not computable yet", never
        a real schedule amount.
    """
    try:
        principal = to_decimal(principal)
        rate = to_decimal(annual_rate_percent)
    except ValueError:
        return Decimal('0')
    if isinstance(term_months, bool) or not isinstance(term_months, int):
        return Decimal('0')

    if principal <= 0 or rate < 0 or term_months <= 0:
        return Decimal('0')

    if rate == 0:
        return quantize_money(principal / term_months)

    monthly_rate = rate / HUNDRED / MONTHS_PER_YEAR
    factor = (Decimal('1') + monthly_rate) ** term_months
    denominator = factor - Decimal('1')
    if denominator == 0:
        return quantize_money(principal / term_months)

    return quantize_money(principal * monthly_rate * factor / denominator)

