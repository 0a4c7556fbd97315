"""Pricing engines: closed form, binomial lattice and Monte Carlo."""

from structpricer.engines.base import ModelResult, ModelType, PricingEngine
from structpricer.engines.black_scholes import (
    ClosedFormEngine,
    Greeks,
    bs_price,
    bs_greeks,
    implied_volatility,
)
from structpricer.engines.binomial import BinomialConfig, BinomialEngine
from structpricer.engines.monte_carlo import MonteCarloConfig, MonteCarloEngine

__all__ = [
    "ModelResult",
    "ModelType",
    "PricingEngine",
    "ClosedFormEngine",
    "Greeks",
    "bs_price",
    "bs_greeks",
    "implied_volatility",
    "BinomialConfig",
    "BinomialEngine",
    "MonteCarloConfig",
    "MonteCarloEngine",
]
