"""
Base pricing engine interface and result structures.

Defines the model tag, the abstract engine and the common result type
every engine returns, plus small helpers shared by all engines.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
import logging

import numpy as np

from structpricer.core.day_count import time_to_expiry
from structpricer.core.errors import InvalidInputError, NumericalInstabilityError
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    FRACTIONAL_LEVEL_CUTOFF,
    BarrierDirection,
    BarrierFeature,
    InstrumentBase,
)


logger = logging.getLogger(__name__)


class ModelType(str, Enum):
    """Available pricing models."""
    CLOSED_FORM = "closed_form"
    BINOMIAL = "binomial"
    MONTE_CARLO = "monte_carlo"


@dataclass
class ModelResult:
    """
    Output of a single pricing model run.

    Attributes:
        value: Instrument value (unit value times notional)
        unit_value: Value per unit of notional
        model: Model that produced the value
        std_error: Standard error of ``value`` (Monte Carlo only)
        confidence_95: 95% confidence half-width of ``value`` (Monte Carlo only)
        warnings: Non-fatal conditions met while pricing
        diagnostics: Model-specific details (paths, lattice depth, ...)
    """

    value: float
    unit_value: float
    model: ModelType
    std_error: float = 0.0
    confidence_95: float = 0.0
    computation_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize result to dictionary."""
        return {
            "value": self.value,
            "unit_value": self.unit_value,
            "model": self.model.value,
            "std_error": self.std_error,
            "confidence_95": self.confidence_95,
            "computation_time_ms": self.computation_time_ms,
            "warnings": list(self.warnings),
            "diagnostics": dict(self.diagnostics),
        }


class PricingEngine(ABC):
    """
    Abstract base class for pricing engines.

    Engines are pure: they read the instrument and snapshot and never
    mutate either. ``knocked_barriers`` carries the ids of barriers already
    recorded as hit before this valuation.
    """

    model_type: ModelType

    @abstractmethod
    def price(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        knocked_barriers: FrozenSet[str] = frozenset()
    ) -> ModelResult:
        """
        Price an instrument given market data.

        Args:
            instrument: Instrument to price
            market: Market data snapshot
            knocked_barriers: Ids of barriers with recorded hit-state

        Returns:
            ModelResult with value and diagnostics
        """
        pass


# ============================================================================
# Shared helpers
# ============================================================================

def resolve_level(level: float, initial_level: Optional[float], symbol: str = "") -> float:
    """
    Resolve a barrier or trigger level to an absolute price.

    Levels below 10 are fractions of the initial reference level; larger
    levels are absolute.

    Raises:
        InvalidInputError: Fractional level without an initial reference level
    """
    if level < FRACTIONAL_LEVEL_CUTOFF:
        if initial_level is None:
            raise InvalidInputError(
                f"Level {level} on {symbol or 'underlying'} is fractional but no initial level is fixed"
            )
        return level * initial_level
    return level


def barrier_bounds(
    instrument: InstrumentBase,
    barrier: BarrierFeature,
    market: MarketSnapshot
) -> Tuple[Optional[float], Optional[float]]:
    """
    Absolute (lower, upper) bounds of a barrier.

    Down barriers only have a lower bound, up barriers only an upper one.
    """
    symbol = instrument.barrier_symbol(barrier)
    market.get(symbol)  # raises for unknown symbols
    initial = instrument.initial_level(symbol)
    level = resolve_level(barrier.level, initial, symbol)
    direction = barrier.barrier_type.direction
    if direction == BarrierDirection.DOWN:
        return level, None
    if direction == BarrierDirection.UP:
        return None, level
    return level, resolve_level(barrier.upper_level, initial, symbol)


def is_breached(price, lower: Optional[float], upper: Optional[float]):
    """Breach test for scalars or arrays: at or beyond either bound."""
    hit = np.zeros_like(price, dtype=bool)
    if lower is not None:
        hit = hit | (price <= lower)
    if upper is not None:
        hit = hit | (price >= upper)
    return hit


def expiry_years(instrument: InstrumentBase, market: MarketSnapshot) -> float:
    """Signed ACT/365.25 time from snapshot date to expiry."""
    return time_to_expiry(market.valuation_date, instrument.expiry_date)


def check_finite(value: float, context: str) -> float:
    """Raise if a model produced NaN or infinity."""
    if not np.isfinite(value):
        raise NumericalInstabilityError(f"{context} produced a non-finite value: {value}")
    return float(value)
