"""
Greeks calculation, analytic or by finite-difference revaluation.

Implements:
- Analytic Black-Scholes Greeks (including vanna, volga, charm, color and
  lambda) for options and futures priced in closed form
- Central finite differences for every other model and instrument:
  - Delta/Gamma: relative spot bump (default 1%)
  - Vega/Volga: absolute vol bump (default 1 vol point)
  - Rho: absolute rate bump (default 1%)
  - Theta: one calendar day roll of the snapshot date

Monte Carlo revaluations reuse the engine's seed, so base and bumped runs
see the same random numbers (Common Random Numbers).
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, FrozenSet, List, Optional
import logging
import time

from structpricer.engines.base import ModelType, PricingEngine, expiry_years
from structpricer.engines.black_scholes import ClosedFormEngine, bs_greeks, future_greeks
from structpricer.engines.monte_carlo import MonteCarloEngine
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    ExerciseStyle,
    FutureInstrument,
    InstrumentBase,
    OptionInstrument,
)


logger = logging.getLogger(__name__)

# Reference level for basket deltas: a parallel move of every underlying
# is expressed per point of a basket index set to 100.
BASKET_INDEX_LEVEL = 100.0


@dataclass
class BumpingConfig:
    """Configuration for Greeks calculation via bumping."""

    # Spot bump for delta/gamma (relative, e.g., 0.01 = 1%)
    spot_bump: float = 0.01

    # Vol bump for vega (absolute, e.g., 0.01 = +1 vol point)
    vol_bump: float = 0.01

    # Rate bump for rho (absolute, e.g., 0.01 = 1%)
    rate_bump: float = 0.01

    # Calendar days rolled for theta
    time_bump_days: int = 1

    compute_rho: bool = True
    compute_theta: bool = True


@dataclass
class GreeksResult:
    """
    Sensitivities of an instrument's value.

    Raw units: vega per 1.00 of vol, rho per 1.00 of rate, theta per year.
    Cash-equivalent figures are derived properties.
    """

    instrument_id: str
    model: ModelType
    method: str                 # "analytic" or "finite_difference"
    price: float
    spot: float

    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: float = 0.0

    # Higher order, where the model supports them
    vanna: Optional[float] = None
    volga: Optional[float] = None
    charm: Optional[float] = None
    color: Optional[float] = None
    lambda_: Optional[float] = None

    warnings: List[str] = field(default_factory=list)
    computation_time_ms: float = 0.0
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def delta_cash(self) -> float:
        return self.delta * self.spot

    @property
    def gamma_cash(self) -> float:
        return self.gamma * self.spot**2 / 100.0

    @property
    def theta_daily(self) -> float:
        return self.theta / 365.0

    @property
    def vega_percent(self) -> float:
        return self.vega / 100.0

    @property
    def rho_percent(self) -> float:
        return self.rho / 100.0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize result to dictionary, including derived fields."""
        return {
            "instrument_id": self.instrument_id,
            "model": self.model.value,
            "method": self.method,
            "price": self.price,
            "spot": self.spot,
            "delta": self.delta,
            "gamma": self.gamma,
            "theta": self.theta,
            "vega": self.vega,
            "rho": self.rho,
            "vanna": self.vanna,
            "volga": self.volga,
            "charm": self.charm,
            "color": self.color,
            "lambda": self.lambda_,
            "delta_cash": self.delta_cash,
            "gamma_cash": self.gamma_cash,
            "theta_daily": self.theta_daily,
            "vega_percent": self.vega_percent,
            "rho_percent": self.rho_percent,
            "warnings": list(self.warnings),
            "computation_time_ms": self.computation_time_ms,
        }

    def print_summary(self) -> None:
        """Print formatted Greeks summary."""
        print("\n" + "=" * 60)
        print(f"GREEKS REPORT: {self.instrument_id}")
        print("=" * 60)

        print(f"\n--- BASE CASE ({self.model.value}, {self.method}) ---")
        print(f"  Price:        {self.price:,.4f}")
        print(f"  Spot:         {self.spot:,.4f}")

        print(f"\n--- FIRST ORDER ---")
        print(f"  Delta:        {self.delta:>12.6f}   cash {self.delta_cash:,.2f}")
        print(f"  Vega:         {self.vega:>12.6f}   per 1% {self.vega_percent:,.4f}")
        print(f"  Theta:        {self.theta:>12.6f}   daily {self.theta_daily:,.4f}")
        print(f"  Rho:          {self.rho:>12.6f}   per 1% {self.rho_percent:,.4f}")

        print(f"\n--- SECOND ORDER ---")
        print(f"  Gamma:        {self.gamma:>12.6f}   cash {self.gamma_cash:,.2f}")
        for name in ("vanna", "volga", "charm", "color", "lambda_"):
            value = getattr(self, name)
            if value is not None:
                print(f"  {name.rstrip('_').capitalize() + ':':<13} {value:>12.6f}")

        for w in self.warnings:
            print(f"  WARNING: {w}")
        print("=" * 60)


class GreeksCalculator:
    """
    Greeks for any instrument through a pricing engine.

    Closed-form options and futures get analytic Greeks; everything else is
    revalued under bumped snapshots with the same engine.
    """

    def __init__(self, engine: PricingEngine, config: Optional[BumpingConfig] = None) -> None:
        self.engine = engine
        self.config = config or BumpingConfig()

    def compute(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        knocked_barriers: FrozenSet[str] = frozenset()
    ) -> GreeksResult:
        """
        Compute Greeks of the instrument's total value (unit value times notional).

        Args:
            instrument: Instrument to analyse
            market: Base market snapshot
            knocked_barriers: Ids of barriers with recorded hit-state

        Returns:
            GreeksResult
        """
        start_time = time.perf_counter()
        if isinstance(self.engine, ClosedFormEngine) and self._has_analytic(instrument):
            result = self._analytic(instrument, market)
        else:
            result = self._finite_difference(instrument, market, knocked_barriers)
        result.computation_time_ms = (time.perf_counter() - start_time) * 1000

        for w in result.warnings:
            logger.warning(f"{instrument.instrument_id}: {w}")
        logger.debug(
            f"Greeks {instrument.instrument_id} ({result.method}): "
            f"delta={result.delta:.6f} gamma={result.gamma:.6f} vega={result.vega:.6f}"
        )
        return result

    @staticmethod
    def _has_analytic(instrument: InstrumentBase) -> bool:
        if isinstance(instrument, FutureInstrument):
            return True
        return (
            isinstance(instrument, OptionInstrument)
            and instrument.exercise_style == ExerciseStyle.EUROPEAN
            and not instrument.barriers
        )

    # ------------------------------------------------------------------------
    # Analytic
    # ------------------------------------------------------------------------

    def _analytic(self, instrument: InstrumentBase, market: MarketSnapshot) -> GreeksResult:
        data = market.get(instrument.underlying_symbols[0])
        S, sigma, q = data.spot, data.volatility, data.dividend_yield
        r = market.risk_free_rate
        T = expiry_years(instrument, market)
        warnings: List[str] = []
        if T <= 0:
            warnings.append("Instrument is expired; Greeks are zero")

        priced = self.engine.price(instrument, market)
        if isinstance(instrument, FutureInstrument):
            greeks = future_greeks(S, instrument.trade_price, T, r, q, instrument.contract_size)
            greeks = greeks.scaled(instrument.notional)
            higher = dict(vanna=None, volga=None, charm=greeks.charm, color=None)
        else:
            greeks = bs_greeks(S, instrument.strike, T, r, q, sigma, instrument.is_call)
            greeks = greeks.scaled(instrument.notional)
            higher = dict(vanna=greeks.vanna, volga=greeks.volga, charm=greeks.charm, color=greeks.color)

        return GreeksResult(
            instrument_id=instrument.instrument_id,
            model=ModelType.CLOSED_FORM,
            method="analytic",
            price=priced.value,
            spot=S,
            delta=greeks.delta,
            gamma=greeks.gamma,
            theta=greeks.theta,
            vega=greeks.vega,
            rho=greeks.rho,
            lambda_=greeks.lambda_,
            warnings=warnings + list(priced.warnings),
            **higher,
        )

    # ------------------------------------------------------------------------
    # Finite differences
    # ------------------------------------------------------------------------

    def _finite_difference(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        knocked_barriers: FrozenSet[str]
    ) -> GreeksResult:
        cfg = self.config
        warnings: List[str] = []
        diagnostics: Dict[str, Any] = {"revaluations": 0}

        if isinstance(self.engine, MonteCarloEngine) and self.engine.get_seed() is None:
            warnings.append("Monte Carlo engine has no fixed seed; finite differences are noisy")

        def value(snapshot: MarketSnapshot) -> float:
            diagnostics["revaluations"] += 1
            return self.engine.price(instrument, snapshot, knocked_barriers).value

        base_result = self.engine.price(instrument, market, knocked_barriers)
        diagnostics["revaluations"] += 1
        base = base_result.value
        warnings.extend(base_result.warnings)

        symbols = instrument.underlying_symbols
        if len(symbols) == 1:
            spot = market.get(symbols[0]).spot
        else:
            spot = BASKET_INDEX_LEVEL
        h = cfg.spot_bump * spot

        up = value(market.with_shocks(spot_shift=cfg.spot_bump))
        down = value(market.with_shocks(spot_shift=-cfg.spot_bump))
        delta = (up - down) / (2 * h)
        gamma = (up - 2 * base + down) / (h * h)

        min_vol = min(market.get(s).volatility for s in symbols)
        vol_up = value(market.with_shocks(vol_shift=cfg.vol_bump))
        if min_vol - cfg.vol_bump > 0:
            vol_down = value(market.with_shocks(vol_shift=-cfg.vol_bump))
            vega = (vol_up - vol_down) / (2 * cfg.vol_bump)
            volga = (vol_up - 2 * base + vol_down) / cfg.vol_bump**2
        else:
            warnings.append("Volatility too low for a central vega bump; using forward difference")
            vega = (vol_up - base) / cfg.vol_bump
            volga = None

        rho = 0.0
        if cfg.compute_rho:
            r = market.risk_free_rate
            rate_up = value(market.with_rate(r + cfg.rate_bump))
            rate_down = value(market.with_rate(r - cfg.rate_bump))
            rho = (rate_up - rate_down) / (2 * cfg.rate_bump)

        theta = 0.0
        if cfg.compute_theta:
            days = cfg.time_bump_days
            rolled = value(market.with_as_of(market.as_of + timedelta(days=days)))
            theta = (rolled - base) * 365.0 / days

        return GreeksResult(
            instrument_id=instrument.instrument_id,
            model=self.engine.model_type,
            method="finite_difference",
            price=base,
            spot=spot,
            delta=delta,
            gamma=gamma,
            theta=theta,
            vega=vega,
            rho=rho,
            volga=volga,
            lambda_=delta * spot / base if abs(base) > 1e-12 else None,
            warnings=warnings,
            diagnostics=diagnostics,
        )
