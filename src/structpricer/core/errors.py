"""
Typed errors raised by the valuation engine.

All errors derive from PricingError so callers can catch the whole family.
Input problems additionally derive from ValueError so pydantic validators
and plain argument checks share one contract.
"""


class PricingError(Exception):
    """Base class for all valuation engine errors."""


class InvalidInputError(PricingError, ValueError):
    """Input rejected before any model runs (non-positive vol, bad weights, ...)."""


class InstrumentNotFoundError(PricingError, KeyError):
    """Requested instrument identifier is not known to the repository."""

    def __init__(self, instrument_id: str) -> None:
        super().__init__(instrument_id)
        self.instrument_id = instrument_id

    def __str__(self) -> str:
        return f"Instrument not found: {self.instrument_id}"


class MarketDataUnavailableError(PricingError):
    """Market snapshot lacks data required by the instrument."""


class NumericalNonConvergenceError(PricingError):
    """
    Iterative solver exhausted its budget.

    Carries the best estimate found so callers may degrade to a warning.
    """

    def __init__(self, message: str, best_estimate: float, iterations: int) -> None:
        super().__init__(message)
        self.best_estimate = best_estimate
        self.iterations = iterations


class UnsupportedModelError(PricingError):
    """Model cannot price the given instrument shape."""


class NumericalInstabilityError(PricingError, ArithmeticError):
    """NaN or infinity produced inside a lattice or simulation."""
