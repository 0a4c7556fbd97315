"""Market data snapshot and correlation utilities."""

from structpricer.market.market_data import MarketSnapshot, UnderlyingMarketData
from structpricer.market.correlation import (
    build_correlation_matrix,
    validate_and_fix_correlation,
    compute_cholesky,
)

__all__ = [
    "MarketSnapshot",
    "UnderlyingMarketData",
    "build_correlation_matrix",
    "validate_and_fix_correlation",
    "compute_cholesky",
]
