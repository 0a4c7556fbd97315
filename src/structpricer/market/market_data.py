"""
Immutable market data snapshot consumed by the valuation engine.

A snapshot holds, per underlying:
- Spot price
- Implied/historical volatility
- Continuous dividend yield
- Optional implied volatility history and term structure

plus a single continuously-compounded risk-free rate and pairwise
correlations keyed like "AAPL_MSFT".

Snapshots are never mutated; shocked copies are produced with
``with_shocks`` so scenario evaluations share no state.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, Mapping, Optional, Tuple, Union
import logging

from structpricer.core.errors import MarketDataUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnderlyingMarketData:
    """Market data for a single underlying."""

    symbol: str
    spot: float
    volatility: float
    dividend_yield: float = 0.0
    iv_history: Tuple[float, ...] = ()
    # (tenor in years, implied vol) pairs
    vol_term_structure: Tuple[Tuple[float, float], ...] = ()

    def shocked(
        self,
        spot_shift: float = 0.0,
        vol_shift: float = 0.0,
        vol_floor: Optional[float] = None
    ) -> "UnderlyingMarketData":
        """
        Return a copy with a relative spot shift and an absolute vol shift.

        Args:
            spot_shift: Relative spot move (0.1 = +10%)
            vol_shift: Absolute vol move (0.05 = +5 vol points)
            vol_floor: Optional lower bound for the shocked volatility

        Returns:
            New UnderlyingMarketData
        """
        vol = self.volatility + vol_shift
        if vol_floor is not None:
            vol = max(vol, vol_floor)
        return replace(self, spot=self.spot * (1.0 + spot_shift), volatility=vol)


@dataclass(frozen=True)
class MarketSnapshot:
    """Complete market data snapshot for one or more underlyings."""

    as_of: datetime
    underlyings: Mapping[str, UnderlyingMarketData] = field(default_factory=dict)
    risk_free_rate: float = 0.05
    correlations: Mapping[str, float] = field(default_factory=dict)

    @property
    def valuation_date(self) -> date:
        if isinstance(self.as_of, datetime):
            return self.as_of.date()
        return self.as_of

    def has(self, symbol: str) -> bool:
        return symbol in self.underlyings

    def get(self, symbol: str) -> UnderlyingMarketData:
        """Look up one underlying, raising if the snapshot lacks it."""
        try:
            return self.underlyings[symbol]
        except KeyError:
            raise MarketDataUnavailableError(
                f"No market data for underlying '{symbol}' as of {self.as_of}"
            ) from None

    def correlation(self, a: str, b: str) -> float:
        """Pairwise correlation, 1.0 on the diagonal and 0.0 when unknown."""
        if a == b:
            return 1.0
        for key in (f"{a}_{b}", f"{b}_{a}"):
            if key in self.correlations:
                return float(self.correlations[key])
        return 0.0

    def with_underlying(self, symbol: str, **changes) -> "MarketSnapshot":
        """Copy with one underlying's fields replaced."""
        updated = dict(self.underlyings)
        updated[symbol] = replace(self.get(symbol), **changes)
        return replace(self, underlyings=updated)

    def with_rate(self, rate: float) -> "MarketSnapshot":
        return replace(self, risk_free_rate=rate)

    def with_as_of(self, as_of: datetime) -> "MarketSnapshot":
        return replace(self, as_of=as_of)

    def with_shocks(
        self,
        spot_shift: Union[float, Mapping[str, float]] = 0.0,
        vol_shift: float = 0.0,
        rate_shift: float = 0.0,
        vol_floor: Optional[float] = None
    ) -> "MarketSnapshot":
        """
        Copy with shocks applied to every underlying.

        Args:
            spot_shift: Relative spot move for all underlyings, or a
                per-symbol mapping (symbols not listed are unshocked)
            vol_shift: Absolute vol move applied to all underlyings
            rate_shift: Absolute move in the risk-free rate
            vol_floor: Optional lower bound for shocked volatilities

        Returns:
            New MarketSnapshot
        """
        shocked: Dict[str, UnderlyingMarketData] = {}
        for symbol, data in self.underlyings.items():
            if isinstance(spot_shift, Mapping):
                move = float(spot_shift.get(symbol, 0.0))
            else:
                move = float(spot_shift)
            shocked[symbol] = data.shocked(move, vol_shift, vol_floor)
        return replace(
            self,
            underlyings=shocked,
            risk_free_rate=self.risk_free_rate + rate_shift,
        )
