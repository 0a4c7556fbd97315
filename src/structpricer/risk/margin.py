"""
SPAN-style margin.

Each position is revalued under a small set of price/vol/time scenarios;
the SPAN margin is the largest absolute portfolio loss across them.
Positions on a known instrument are fully revalued, bare underlying
positions move linearly with price.

Per-position initial and maintenance margins are rate-based add-ons
scaled by (1 + volatility); the portfolio margin is the larger of the
SPAN figure and the sum of position margins.
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence
import logging
import time

from structpricer.core.errors import InvalidInputError
from structpricer.market.market_data import MarketSnapshot
from structpricer.pricers.valuation import ValuationEngine, ValuationOptions
from structpricer.products.schema import InstrumentBase


logger = logging.getLogger(__name__)


INITIAL_MARGIN_RATE = 0.15
MAINTENANCE_MARGIN_RATE = 0.10
SHORT_HEDGE_CREDIT = 0.10


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


@dataclass
class MarginPosition:
    """A position for margining; an unknown instrument needs an underlying symbol."""

    instrument_id: str
    quantity: float
    side: PositionSide = PositionSide.LONG
    underlying_symbol: Optional[str] = None

    @property
    def signed_quantity(self) -> float:
        qty = abs(self.quantity)
        return qty if self.side == PositionSide.LONG else -qty


@dataclass(frozen=True)
class SpanScenario:
    """Relative price shift, absolute vol shift and calendar-day roll."""

    name: str
    price_shift: float
    vol_shift: float = 0.0
    time_decay_days: int = 0


DEFAULT_SPAN_SCENARIOS = (
    SpanScenario("base", 0.0, 0.0, 0),
    SpanScenario("up15", 0.15, 0.05, 1),
    SpanScenario("down15", -0.15, 0.05, 1),
)


@dataclass
class PositionMargin:
    instrument_id: str
    underlying_symbol: str
    quantity: float
    notional: float
    initial_margin: float
    maintenance_margin: float
    risk_contribution: float
    hedge_credit: float
    scenario_pnl: Dict[str, float] = field(default_factory=dict)


@dataclass
class MarginResult:
    """Portfolio margin requirement."""

    initial_margin: float
    maintenance_margin: float
    span_margin: float
    worst_scenario: str
    scenario_pnl: Dict[str, float]
    position_margins: List[PositionMargin]
    warnings: List[str] = field(default_factory=list)
    computation_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_margin": self.initial_margin,
            "maintenance_margin": self.maintenance_margin,
            "span_margin": self.span_margin,
            "worst_scenario": self.worst_scenario,
            "scenario_pnl": dict(self.scenario_pnl),
            "position_margins": [vars(p).copy() for p in self.position_margins],
            "warnings": list(self.warnings),
            "computation_time_ms": self.computation_time_ms,
        }


class MarginCalculator:
    """Worst-case-scenario margin over a set of positions."""

    def __init__(
        self,
        valuation_engine: Optional[ValuationEngine] = None,
        options: Optional[ValuationOptions] = None
    ) -> None:
        self.valuation_engine = valuation_engine or ValuationEngine()
        self.options = options or ValuationOptions()

    def _shocked(self, market: MarketSnapshot, scenario: SpanScenario) -> MarketSnapshot:
        shocked = market.with_shocks(
            spot_shift=scenario.price_shift, vol_shift=scenario.vol_shift, vol_floor=1e-4
        )
        if scenario.time_decay_days:
            shocked = shocked.with_as_of(market.as_of + timedelta(days=scenario.time_decay_days))
        return shocked

    def calculate(
        self,
        positions: Sequence[MarginPosition],
        market: MarketSnapshot,
        instruments: Optional[Mapping[str, InstrumentBase]] = None,
        scenarios: Optional[Sequence[SpanScenario]] = None
    ) -> MarginResult:
        """
        Compute SPAN, initial and maintenance margin.

        Args:
            positions: Positions to margin
            market: Snapshot with a price and vol for every underlying
            instruments: Known instruments by id, fully revalued per scenario
            scenarios: Scenario set, defaults to base/up15/down15

        Raises:
            MarketDataUnavailableError: A position's underlying has no data
            InvalidInputError: A position has neither instrument nor symbol
        """
        start_time = time.perf_counter()
        instruments = instruments or {}
        scenarios = list(scenarios) if scenarios else list(DEFAULT_SPAN_SCENARIOS)
        warnings: List[str] = []

        # Simulations stay deterministic and inline across scenarios
        options = replace(
            self.options,
            include_greeks=False,
            include_barriers=False,
            mc=replace(self.options.mc, max_workers=1),
        )
        shocked_markets = {s.name: self._shocked(market, s) for s in scenarios}

        portfolio_pnl = {s.name: 0.0 for s in scenarios}
        position_margins: List[PositionMargin] = []

        for position in positions:
            instrument = instruments.get(position.instrument_id)
            symbol = position.underlying_symbol
            if symbol is None:
                if instrument is None:
                    raise InvalidInputError(
                        f"Position {position.instrument_id} has no known instrument or underlying"
                    )
                symbol = instrument.underlying_symbols[0]

            data = market.get(symbol)
            qty = position.signed_quantity
            pnl: Dict[str, float] = {}

            if instrument is not None:
                knocked = self.valuation_engine.barrier_store.hit_ids(instrument)
                base = self.valuation_engine.price(instrument, market, options, knocked)
                warnings.extend(f"{position.instrument_id}: {w}" for w in base.warnings)
                for scenario in scenarios:
                    shocked = self.valuation_engine.price(
                        instrument, shocked_markets[scenario.name], options, knocked
                    )
                    pnl[scenario.name] = qty * (shocked.value - base.value)
            else:
                for scenario in scenarios:
                    pnl[scenario.name] = qty * data.spot * scenario.price_shift

            for name, value in pnl.items():
                portfolio_pnl[name] += value

            notional = abs(qty * data.spot)
            initial = notional * INITIAL_MARGIN_RATE * (1.0 + data.volatility)
            maintenance = notional * MAINTENANCE_MARGIN_RATE * (1.0 + data.volatility)
            position_margins.append(
                PositionMargin(
                    instrument_id=position.instrument_id,
                    underlying_symbol=symbol,
                    quantity=qty,
                    notional=notional,
                    initial_margin=initial,
                    maintenance_margin=maintenance,
                    risk_contribution=notional * data.volatility,
                    hedge_credit=SHORT_HEDGE_CREDIT * initial if qty < 0 else 0.0,
                    scenario_pnl=pnl,
                )
            )

        worst = min(portfolio_pnl, key=portfolio_pnl.get) if portfolio_pnl else ""
        span = max((max(0.0, -v) for v in portfolio_pnl.values()), default=0.0)
        initial_total = max(span, sum(p.initial_margin for p in position_margins))
        maintenance_total = max(
            span * MAINTENANCE_MARGIN_RATE / INITIAL_MARGIN_RATE,
            sum(p.maintenance_margin for p in position_margins),
        )

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Margin for {len(position_margins)} positions: span={span:,.2f} "
            f"initial={initial_total:,.2f} maintenance={maintenance_total:,.2f}"
        )
        return MarginResult(
            initial_margin=initial_total,
            maintenance_margin=maintenance_total,
            span_margin=span,
            worst_scenario=worst,
            scenario_pnl=portfolio_pnl,
            position_margins=position_margins,
            warnings=warnings,
            computation_time_ms=elapsed,
        )
