"""Core utilities: errors and year fractions."""

from structpricer.core.errors import (
    PricingError,
    InvalidInputError,
    InstrumentNotFoundError,
    MarketDataUnavailableError,
    NumericalNonConvergenceError,
    UnsupportedModelError,
    NumericalInstabilityError,
)
from structpricer.core.day_count import (
    time_to_expiry,
    year_fraction_to_days,
)

__all__ = [
    "PricingError",
    "InvalidInputError",
    "InstrumentNotFoundError",
    "MarketDataUnavailableError",
    "NumericalNonConvergenceError",
    "UnsupportedModelError",
    "NumericalInstabilityError",
    "time_to_expiry",
    "year_fraction_to_days",
]
