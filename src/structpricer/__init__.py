"""
Structured Products Pricer - valuation and risk analytics library.

Prices options, futures and structured products (single name or basket,
with barriers, coupons and call/put schedules) and analyses their risk:
- Closed-form Black-Scholes, binomial lattice and Monte Carlo models
- Automatic model selection per instrument shape
- Analytic and finite-difference Greeks with Common Random Numbers
- Barrier monitoring with persistent hit-state and breach probabilities
- Scenario grids, named stress tests and SPAN-style margin

Example:
    >>> from structpricer import ValuationEngine, MarketSnapshot, validate_instrument_json
    >>> instrument = validate_instrument_json(definition)
    >>> result = ValuationEngine().valuate(instrument, snapshot)
    >>> print(f"Value: {result.value:.4f} ({result.model.value})")
"""

__version__ = "0.1.0"

# Errors
from structpricer.core.errors import (
    PricingError,
    InvalidInputError,
    InstrumentNotFoundError,
    MarketDataUnavailableError,
    NumericalNonConvergenceError,
    UnsupportedModelError,
    NumericalInstabilityError,
)

# Instruments
from structpricer.products.schema import (
    Instrument,
    OptionInstrument,
    FutureInstrument,
    StructuredProduct,
    UnderlyingAsset,
    BarrierFeature,
    BarrierType,
    ExerciseStyle,
    OptionType,
    BasketMode,
    ParticipationPayoff,
    LeveragedPayoff,
    CappedPayoff,
    DigitalPayoff,
    load_instrument,
    validate_instrument_json,
)

# Market data
from structpricer.market.market_data import MarketSnapshot, UnderlyingMarketData

# Engines
from structpricer.engines.base import ModelResult, ModelType
from structpricer.engines.black_scholes import ClosedFormEngine, bs_price, bs_greeks, implied_volatility
from structpricer.engines.binomial import BinomialConfig, BinomialEngine
from structpricer.engines.monte_carlo import MonteCarloConfig, MonteCarloEngine

# Orchestration
from structpricer.pricers.model_selector import select_model
from structpricer.pricers.valuation import (
    PortfolioValuation,
    ValuationEngine,
    ValuationOptions,
    ValuationResult,
)

# Risk
from structpricer.risk.greeks import BumpingConfig, GreeksCalculator, GreeksResult
from structpricer.risk.barriers import BarrierConfig, BarrierEvaluator, BarrierStateStore, BarrierStatus
from structpricer.risk.scenarios import ScenarioConfig, ScenarioEngine, StressScenario
from structpricer.risk.margin import MarginCalculator, MarginPosition, PositionSide, SpanScenario

# Service
from structpricer.service import InMemoryInstrumentRepository, ValuationService

__all__ = [
    # Version
    "__version__",
    # Errors
    "PricingError",
    "InvalidInputError",
    "InstrumentNotFoundError",
    "MarketDataUnavailableError",
    "NumericalNonConvergenceError",
    "UnsupportedModelError",
    "NumericalInstabilityError",
    # Instruments
    "Instrument",
    "OptionInstrument",
    "FutureInstrument",
    "StructuredProduct",
    "UnderlyingAsset",
    "BarrierFeature",
    "BarrierType",
    "ExerciseStyle",
    "OptionType",
    "BasketMode",
    "ParticipationPayoff",
    "LeveragedPayoff",
    "CappedPayoff",
    "DigitalPayoff",
    "load_instrument",
    "validate_instrument_json",
    # Market data
    "MarketSnapshot",
    "UnderlyingMarketData",
    # Engines
    "ModelResult",
    "ModelType",
    "ClosedFormEngine",
    "bs_price",
    "bs_greeks",
    "implied_volatility",
    "BinomialConfig",
    "BinomialEngine",
    "MonteCarloConfig",
    "MonteCarloEngine",
    # Orchestration
    "select_model",
    "PortfolioValuation",
    "ValuationEngine",
    "ValuationOptions",
    "ValuationResult",
    # Risk
    "BumpingConfig",
    "GreeksCalculator",
    "GreeksResult",
    "BarrierConfig",
    "BarrierEvaluator",
    "BarrierStateStore",
    "BarrierStatus",
    "ScenarioConfig",
    "ScenarioEngine",
    "StressScenario",
    "MarginCalculator",
    "MarginPosition",
    "PositionSide",
    "SpanScenario",
    # Service
    "InMemoryInstrumentRepository",
    "ValuationService",
]
