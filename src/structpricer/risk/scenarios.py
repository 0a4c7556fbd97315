"""
Scenario grid and named stress tests.

Grid: every (price shift, vol shift) combination is valued on its own
shocked copy of the snapshot, in parallel, with the same model, seed and
barrier hit-state as the base case. P&L is reported against the base.

Stress tests: named scenarios with per-underlying spot shifts, a vol
shift and a rate shift.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple
import logging
import os
import time

import numpy as np

from structpricer.engines.base import ModelType
from structpricer.market.market_data import MarketSnapshot
from structpricer.pricers.valuation import ValuationEngine, ValuationOptions
from structpricer.products.schema import InstrumentBase


logger = logging.getLogger(__name__)


DEFAULT_PRICE_SHIFTS = (-0.3, -0.2, -0.1, 0.0, 0.1, 0.2, 0.3)
DEFAULT_VOL_SHIFTS = (-0.05, 0.0, 0.05)


@dataclass
class ScenarioConfig:
    """Configuration for the scenario grid."""

    price_shifts: Tuple[float, ...] = DEFAULT_PRICE_SHIFTS
    vol_shifts: Tuple[float, ...] = DEFAULT_VOL_SHIFTS
    max_workers: Optional[int] = None
    vol_floor: float = 1e-4


@dataclass
class ScenarioResult:
    """One row of the P&L surface."""

    name: str
    price_shift: float
    vol_shift: float
    rate_shift: float
    shocked_spots: Dict[str, float]
    shocked_vols: Dict[str, float]
    value: float
    pnl: float
    pnl_pct: float
    warnings: List[str] = field(default_factory=list)


@dataclass
class ScenarioAnalysis:
    """Base value plus the full scenario grid."""

    instrument_id: str
    model: ModelType
    base_value: float
    results: List[ScenarioResult]
    price_shifts: Tuple[float, ...]
    vol_shifts: Tuple[float, ...]
    computation_time_ms: float = 0.0

    @property
    def worst_case(self) -> ScenarioResult:
        return min(self.results, key=lambda r: r.pnl)

    @property
    def best_case(self) -> ScenarioResult:
        return max(self.results, key=lambda r: r.pnl)

    def pnl_grid(self) -> np.ndarray:
        """P&L as [price shift, vol shift] matrix."""
        grid = np.array([r.pnl for r in self.results])
        return grid.reshape(len(self.price_shifts), len(self.vol_shifts))

    def print_report(self) -> None:
        """Print the P&L surface."""
        print("\n" + "=" * 70)
        print(f"SCENARIO ANALYSIS: {self.instrument_id} ({self.model.value})")
        print("=" * 70)
        print(f"  Base value: {self.base_value:,.4f}")
        header = "".join(f"{'Vol ' + format(v * 100, '+.0f') + '%':>14}" for v in self.vol_shifts)
        print(f"\n  {'Price':<10}{header}")
        grid = self.pnl_grid()
        for i, shift in enumerate(self.price_shifts):
            row = "".join(f"{pnl:>14,.2f}" for pnl in grid[i])
            print(f"  {shift * 100:>+6.0f}%   {row}")
        print(f"\n  Worst: {self.worst_case.name} ({self.worst_case.pnl:,.2f})")
        print(f"  Best:  {self.best_case.name} ({self.best_case.pnl:,.2f})")
        print("=" * 70)


@dataclass
class StressScenario:
    """Named stress: per-symbol spot shifts, vol shift and rate shift."""

    name: str
    underlying_shifts: Dict[str, float] = field(default_factory=dict)
    vol_shift: float = 0.0
    rate_shift: float = 0.0


@dataclass
class StressResult:
    name: str
    base_value: float
    stressed_value: float
    pnl: float
    pnl_pct: float
    warnings: List[str] = field(default_factory=list)


def scenario_name(price_shift: float, vol_shift: float) -> str:
    """Label such as "Price +10%, Vol -5%"."""
    return f"Price {price_shift * 100:+.0f}%, Vol {vol_shift * 100:+.0f}%"


def _pnl_pct(pnl: float, base: float) -> float:
    return pnl / abs(base) * 100.0 if abs(base) > 1e-12 else 0.0


class ScenarioEngine:
    """Re-runs the valuation orchestrator over shocked snapshots."""

    def __init__(
        self,
        valuation_engine: Optional[ValuationEngine] = None,
        config: Optional[ScenarioConfig] = None
    ) -> None:
        self.valuation_engine = valuation_engine or ValuationEngine()
        self.config = config or ScenarioConfig()

    def _cell_options(self, instrument: InstrumentBase, options: Optional[ValuationOptions]) -> ValuationOptions:
        """Pin the model and run simulations inline; cells are the parallel unit."""
        options = options or ValuationOptions()
        model = self.valuation_engine.resolve_model(instrument, options)
        return replace(
            options,
            model=model,
            include_greeks=False,
            include_barriers=False,
            mc=replace(options.mc, max_workers=1),
        )

    def _value(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        options: ValuationOptions,
        knocked: FrozenSet[str]
    ) -> Tuple[float, List[str]]:
        result = self.valuation_engine.price(instrument, market, options, knocked)
        return result.value, result.warnings

    def run_grid(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        options: Optional[ValuationOptions] = None
    ) -> ScenarioAnalysis:
        """
        Value the instrument over the price x vol shift grid.

        Returns:
            ScenarioAnalysis with one row per combination, price-major order
        """
        start_time = time.perf_counter()
        cfg = self.config
        cell_options = self._cell_options(instrument, options)
        knocked = self.valuation_engine.barrier_store.hit_ids(instrument)
        base_value, _ = self._value(instrument, market, cell_options, knocked)

        cells = [(ps, vs) for ps in cfg.price_shifts for vs in cfg.vol_shifts]

        def evaluate(cell: Tuple[float, float]) -> ScenarioResult:
            price_shift, vol_shift = cell
            warnings: List[str] = []
            floored = [
                s for s in instrument.underlying_symbols
                if market.get(s).volatility + vol_shift < cfg.vol_floor
            ]
            if floored:
                warnings.append(
                    f"Volatility floored at {cfg.vol_floor} for {', '.join(floored)}"
                )
            shocked = market.with_shocks(
                spot_shift=price_shift, vol_shift=vol_shift, vol_floor=cfg.vol_floor
            )
            value, value_warnings = self._value(instrument, shocked, cell_options, knocked)
            pnl = value - base_value
            return ScenarioResult(
                name=scenario_name(price_shift, vol_shift),
                price_shift=price_shift,
                vol_shift=vol_shift,
                rate_shift=0.0,
                shocked_spots={s: shocked.get(s).spot for s in instrument.underlying_symbols},
                shocked_vols={s: shocked.get(s).volatility for s in instrument.underlying_symbols},
                value=value,
                pnl=pnl,
                pnl_pct=_pnl_pct(pnl, base_value),
                warnings=warnings + value_warnings,
            )

        workers = min(cfg.max_workers or os.cpu_count() or 1, len(cells))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(evaluate, cells))

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Scenario grid for {instrument.instrument_id}: {len(results)} cells in {elapsed:.1f} ms"
        )
        return ScenarioAnalysis(
            instrument_id=instrument.instrument_id,
            model=cell_options.model,
            base_value=base_value,
            results=results,
            price_shifts=tuple(cfg.price_shifts),
            vol_shifts=tuple(cfg.vol_shifts),
            computation_time_ms=elapsed,
        )

    def stress_test(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        scenarios: Sequence[StressScenario],
        options: Optional[ValuationOptions] = None
    ) -> List[StressResult]:
        """Value the instrument under each named stress scenario."""
        cfg = self.config
        cell_options = self._cell_options(instrument, options)
        knocked = self.valuation_engine.barrier_store.hit_ids(instrument)
        base_value, _ = self._value(instrument, market, cell_options, knocked)

        def evaluate(scenario: StressScenario) -> StressResult:
            shocked = market.with_shocks(
                spot_shift=scenario.underlying_shifts,
                vol_shift=scenario.vol_shift,
                rate_shift=scenario.rate_shift,
                vol_floor=cfg.vol_floor,
            )
            value, warnings = self._value(instrument, shocked, cell_options, knocked)
            pnl = value - base_value
            logger.debug(f"Stress '{scenario.name}' on {instrument.instrument_id}: pnl {pnl:,.4f}")
            return StressResult(
                name=scenario.name,
                base_value=base_value,
                stressed_value=value,
                pnl=pnl,
                pnl_pct=_pnl_pct(pnl, base_value),
                warnings=warnings,
            )

        if not scenarios:
            return []
        workers = min(cfg.max_workers or os.cpu_count() or 1, len(scenarios))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(evaluate, scenarios))
