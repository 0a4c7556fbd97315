"""
Model selection policy.

Maps an instrument's shape to the pricing model able to value it:
- Futures and plain single-name payoffs: closed form
- American/Bermudan options and single-name products with holder puts:
  binomial lattice
- Barriers, baskets and autocall schedules: Monte Carlo

The policy is pure and total: every instrument gets a model.
"""

from typing import Optional
import logging

from structpricer.engines.base import ModelType, PricingEngine
from structpricer.engines.binomial import BinomialConfig, BinomialEngine
from structpricer.engines.black_scholes import ClosedFormEngine
from structpricer.engines.monte_carlo import MonteCarloConfig, MonteCarloEngine
from structpricer.products.schema import (
    ExerciseStyle,
    FutureInstrument,
    InstrumentBase,
    OptionInstrument,
    StructuredProduct,
)


logger = logging.getLogger(__name__)


def select_model(instrument: InstrumentBase) -> ModelType:
    """
    Choose the pricing model for an instrument.

    Args:
        instrument: Any instrument variant

    Returns:
        ModelType to price it with
    """
    if isinstance(instrument, FutureInstrument):
        return ModelType.CLOSED_FORM

    if isinstance(instrument, OptionInstrument):
        early_exercise = instrument.exercise_style != ExerciseStyle.EUROPEAN
        if early_exercise:
            return ModelType.BINOMIAL
        if instrument.barriers:
            return ModelType.MONTE_CARLO
        return ModelType.CLOSED_FORM

    if isinstance(instrument, StructuredProduct):
        if instrument.is_basket:
            return ModelType.MONTE_CARLO
        if instrument.put_schedule:
            return ModelType.BINOMIAL
        if instrument.barriers or instrument.call_schedule:
            return ModelType.MONTE_CARLO
        return ModelType.CLOSED_FORM

    # unknown shapes are simulated
    return ModelType.MONTE_CARLO


def create_engine(
    model: ModelType,
    mc_config: Optional[MonteCarloConfig] = None,
    binomial_config: Optional[BinomialConfig] = None
) -> PricingEngine:
    """Instantiate the engine for a model type."""
    if model == ModelType.CLOSED_FORM:
        return ClosedFormEngine()
    if model == ModelType.BINOMIAL:
        return BinomialEngine(binomial_config)
    return MonteCarloEngine(mc_config)
