"""
Year fractions on ACT/365.25.

Time-to-expiry is signed, so expired instruments produce a negative year
fraction instead of an error.
"""

from datetime import date, datetime
from typing import Union


DAYS_PER_YEAR = 365.25


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def time_to_expiry(valuation_date: Union[date, datetime], expiry_date: Union[date, datetime]) -> float:
    """
    Signed year fraction from valuation to expiry.

    Examples:
        >>> from datetime import date
        >>> round(time_to_expiry(date(2024, 1, 1), date(2025, 1, 1)), 4)
        1.0021
    """
    return (_as_date(expiry_date) - _as_date(valuation_date)).days / DAYS_PER_YEAR


def year_fraction_to_days(year_fraction: float) -> int:
    """Convert a year fraction back to whole days."""
    return int(round(year_fraction * DAYS_PER_YEAR))
