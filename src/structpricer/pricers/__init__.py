"""Model selection and the valuation orchestrator."""

from structpricer.pricers.model_selector import create_engine, select_model
from structpricer.pricers.valuation import (
    PortfolioValuation,
    ValuationEngine,
    ValuationOptions,
    ValuationResult,
)

__all__ = [
    "create_engine",
    "select_model",
    "PortfolioValuation",
    "ValuationEngine",
    "ValuationOptions",
    "ValuationResult",
]
