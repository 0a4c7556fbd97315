"""
Valuation orchestrator.

Validates inputs, selects a model, prices, and optionally adds Greeks and
barrier statuses to one result. Also values portfolios in parallel.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, FrozenSet, List, Optional, Sequence
import logging
import os
import time

from structpricer.core.errors import InvalidInputError
from structpricer.engines.base import ModelResult, ModelType, barrier_bounds, expiry_years
from structpricer.engines.binomial import BinomialConfig
from structpricer.engines.monte_carlo import MonteCarloConfig
from structpricer.market.market_data import MarketSnapshot
from structpricer.pricers.model_selector import create_engine, select_model
from structpricer.products.schema import InstrumentBase, StructuredProduct
from structpricer.risk.barriers import BarrierConfig, BarrierEvaluator, BarrierStateStore, BarrierStatus
from structpricer.risk.greeks import BumpingConfig, GreeksCalculator, GreeksResult


logger = logging.getLogger(__name__)


@dataclass
class ValuationOptions:
    """Per-call valuation options."""

    # Force a model instead of the selector's choice
    model: Optional[ModelType] = None
    include_greeks: bool = False
    include_barriers: bool = True
    alert_threshold: Optional[float] = None

    mc: MonteCarloConfig = field(default_factory=MonteCarloConfig)
    binomial: BinomialConfig = field(default_factory=BinomialConfig)
    bumping: BumpingConfig = field(default_factory=BumpingConfig)


@dataclass
class ValuationResult:
    """Complete result of one valuation call."""

    instrument_id: str
    value: float
    unit_value: float
    model: ModelType
    valuation_date: date
    time_to_expiry: float
    std_error: float = 0.0
    confidence_95: float = 0.0
    computation_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    greeks: Optional[GreeksResult] = None
    barrier_statuses: List[BarrierStatus] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize result to dictionary."""
        return {
            "instrument_id": self.instrument_id,
            "value": self.value,
            "unit_value": self.unit_value,
            "model": self.model.value,
            "valuation_date": self.valuation_date.isoformat(),
            "time_to_expiry": self.time_to_expiry,
            "std_error": self.std_error,
            "confidence_95": self.confidence_95,
            "computation_time_ms": self.computation_time_ms,
            "warnings": list(self.warnings),
            "diagnostics": dict(self.diagnostics),
            "greeks": self.greeks.to_dict() if self.greeks else None,
            "barriers": [
                {
                    "barrier_id": s.barrier_id,
                    "state": s.state.value,
                    "distance_pct": s.distance_pct,
                    "breach_probability": s.breach_probability,
                }
                for s in self.barrier_statuses
            ],
        }


@dataclass
class PortfolioValuation:
    """Valuations of many instruments against one snapshot."""

    results: List[ValuationResult]
    total_value: float
    computation_time_ms: float = 0.0

    @property
    def warnings(self) -> List[str]:
        return [f"{r.instrument_id}: {w}" for r in self.results for w in r.warnings]


def _dedupe(messages: Sequence[str]) -> List[str]:
    seen = set()
    unique = []
    for m in messages:
        if m not in seen:
            seen.add(m)
            unique.append(m)
    return unique


class ValuationEngine:
    """
    Facade over model selection, pricing, Greeks and barrier evaluation.

    The barrier state store is the only state shared across calls.
    """

    def __init__(
        self,
        barrier_store: Optional[BarrierStateStore] = None,
        barrier_config: Optional[BarrierConfig] = None,
        max_workers: Optional[int] = None
    ) -> None:
        self.barrier_store = barrier_store if barrier_store is not None else BarrierStateStore()
        self.barrier_evaluator = BarrierEvaluator(self.barrier_store, barrier_config)
        self.max_workers = max_workers

    # ------------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------------

    def validate(self, instrument: InstrumentBase, market: MarketSnapshot) -> List[str]:
        """
        Reject unusable inputs and collect warnings for unusual ones.

        Raises:
            MarketDataUnavailableError: Snapshot lacks an underlying
            InvalidInputError: Non-positive volatility or spot, or a missing
                initial level where performance or a fractional level needs one

        Returns:
            Warnings for expired instruments and negative rates or dividends
        """
        warnings: List[str] = []
        for symbol in instrument.underlying_symbols:
            data = market.get(symbol)
            if data.volatility <= 0:
                raise InvalidInputError(
                    f"Volatility for {symbol} must be positive, got {data.volatility}"
                )
            if data.spot <= 0:
                raise InvalidInputError(f"Spot for {symbol} must be positive, got {data.spot}")
            if data.dividend_yield < 0:
                warnings.append(f"Negative dividend yield for {symbol}: {data.dividend_yield:.4%}")

        if isinstance(instrument, StructuredProduct):
            for asset in instrument.underlyings:
                if asset.initial_level is None:
                    raise InvalidInputError(
                        f"{instrument.instrument_id}: no initial level fixed for {asset.symbol}"
                    )
        for barrier in instrument.barrier_features:
            barrier_bounds(instrument, barrier, market)

        if market.risk_free_rate < 0:
            warnings.append(f"Negative risk-free rate: {market.risk_free_rate:.4%}")

        T = expiry_years(instrument, market)
        if T <= 0:
            warnings.append(
                f"Instrument {instrument.instrument_id} is expired; using intrinsic value"
            )

        for w in warnings:
            logger.warning(f"{instrument.instrument_id}: {w}")
        return warnings

    # ------------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------------

    def resolve_model(self, instrument: InstrumentBase, options: Optional[ValuationOptions] = None) -> ModelType:
        if options is not None and options.model is not None:
            return options.model
        return select_model(instrument)

    def price(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        options: Optional[ValuationOptions] = None,
        knocked_barriers: Optional[FrozenSet[str]] = None
    ) -> ModelResult:
        """
        Validate and price without Greeks or barrier side effects.

        Used for scenario and margin revaluations.
        """
        options = options or ValuationOptions()
        warnings = self.validate(instrument, market)
        if knocked_barriers is None:
            knocked_barriers = self.barrier_store.hit_ids(instrument)
        model = self.resolve_model(instrument, options)
        engine = create_engine(model, options.mc, options.binomial)
        result = engine.price(instrument, market, knocked_barriers)
        result.warnings = _dedupe(warnings + result.warnings)
        return result

    def valuate(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        options: Optional[ValuationOptions] = None
    ) -> ValuationResult:
        """
        Value one instrument.

        Args:
            instrument: Instrument to value
            market: Market snapshot
            options: Model override and optional Greeks/barrier evaluation

        Returns:
            ValuationResult with optional Greeks and barrier statuses
        """
        start_time = time.perf_counter()
        options = options or ValuationOptions()
        warnings = self.validate(instrument, market)

        model = self.resolve_model(instrument, options)
        engine = create_engine(model, options.mc, options.binomial)
        knocked = self.barrier_store.hit_ids(instrument)
        logger.debug(f"Valuing {instrument.instrument_id} with {model.value}")

        priced = engine.price(instrument, market, knocked)
        warnings.extend(priced.warnings)

        greeks = None
        if options.include_greeks:
            greeks = GreeksCalculator(engine, options.bumping).compute(instrument, market, knocked)
            warnings.extend(greeks.warnings)

        statuses: List[BarrierStatus] = []
        if options.include_barriers and instrument.barrier_features:
            statuses = self.barrier_evaluator.evaluate(
                instrument, market, alert_threshold=options.alert_threshold
            )
            for status in statuses:
                warnings.extend(status.warnings)

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Valued {instrument.instrument_id} = {priced.value:,.4f} "
            f"({model.value}, {elapsed:.1f} ms)"
        )

        return ValuationResult(
            instrument_id=instrument.instrument_id,
            value=priced.value,
            unit_value=priced.unit_value,
            model=model,
            valuation_date=market.valuation_date,
            time_to_expiry=expiry_years(instrument, market),
            std_error=priced.std_error,
            confidence_95=priced.confidence_95,
            computation_time_ms=elapsed,
            warnings=_dedupe(warnings),
            diagnostics=priced.diagnostics,
            greeks=greeks,
            barrier_statuses=statuses,
        )

    def valuate_portfolio(
        self,
        instruments: Sequence[InstrumentBase],
        market: MarketSnapshot,
        options: Optional[ValuationOptions] = None
    ) -> PortfolioValuation:
        """
        Value many instruments in parallel against one snapshot.

        The first failure is raised; results keep the input order.
        """
        start_time = time.perf_counter()
        options = options or ValuationOptions()
        if not instruments:
            return PortfolioValuation(results=[], total_value=0.0)

        # simulations run inline, the pool parallelises across instruments
        inner = replace(options, mc=replace(options.mc, max_workers=1))
        workers = min(self.max_workers or os.cpu_count() or 1, len(instruments))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.valuate, inst, market, inner) for inst in instruments]
            results = [f.result() for f in futures]

        total = sum(r.value for r in results)
        elapsed = (time.perf_counter() - start_time) * 1000
        logger.info(f"Valued portfolio of {len(results)} instruments = {total:,.2f} in {elapsed:.1f} ms")
        return PortfolioValuation(results=results, total_value=total, computation_time_ms=elapsed)
