"""
Library-level service facade.

Resolves instrument identifiers through a repository, obtains a market
snapshot, applies per-request overrides and delegates to the valuation
orchestrator and the risk modules. Results come back as pydantic
response records.
"""

from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Union
import logging
import time

import numpy as np

from structpricer.core.day_count import year_fraction_to_days
from structpricer.core.errors import (
    InstrumentNotFoundError,
    InvalidInputError,
    MarketDataUnavailableError,
    NumericalNonConvergenceError,
)
from structpricer.engines.base import expiry_years
from structpricer.engines.binomial import BinomialEngine
from structpricer.engines.black_scholes import IV_BOUNDS, implied_volatility, newton_implied_vol
from structpricer.market.market_data import MarketSnapshot, UnderlyingMarketData
from structpricer.pricers.model_selector import create_engine
from structpricer.pricers.valuation import ValuationEngine, ValuationOptions
from structpricer.products.schema import ExerciseStyle, InstrumentBase, OptionInstrument
from structpricer.risk.barriers import summarize
from structpricer.risk.greeks import GreeksCalculator
from structpricer.risk.margin import MarginCalculator, MarginPosition, SpanScenario
from structpricer.risk.scenarios import ScenarioConfig, ScenarioEngine
from structpricer.service.repository import InstrumentRepository
from structpricer.service.requests import (
    BarrierAlertView,
    BarrierMonitoringRequest,
    BarrierMonitoringResponse,
    BarrierStatusView,
    BreachProbabilityRequest,
    BreachProbabilityResponse,
    GreeksRequest,
    GreeksResponse,
    ImpliedVolatilityAnalysis,
    ImpliedVolatilityRequest,
    MarginCalculationRequest,
    MarginCalculationResult,
    MarketDataView,
    ModelResultsView,
    MonitoringSummaryView,
    PositionMarginView,
    ScenarioRow,
    StructuredProductValuationRequest,
    TermStructurePoint,
    UnderlyingView,
    ValuationResponse,
)


logger = logging.getLogger(__name__)


MarketProvider = Callable[[Optional[date]], MarketSnapshot]

# Volatility bump for binomial vega inside the implied volatility solver
_IV_VEGA_BUMP = 0.01


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class ValuationService:
    """
    Entry point for callers holding identifiers rather than objects.

    Args:
        repository: Instrument lookup
        market: A fixed snapshot, or a callable returning the snapshot for
            an optional valuation date
        engine: Shared orchestrator (owns the barrier hit-state)
        options: Default valuation options
        scenario_config: Grid used when a valuation asks for scenarios
    """

    def __init__(
        self,
        repository: InstrumentRepository,
        market: Union[MarketSnapshot, MarketProvider],
        engine: Optional[ValuationEngine] = None,
        options: Optional[ValuationOptions] = None,
        scenario_config: Optional[ScenarioConfig] = None
    ) -> None:
        self.repository = repository
        self._market_source = market
        self.engine = engine or ValuationEngine()
        self.options = options or ValuationOptions()
        self.scenario_config = scenario_config or ScenarioConfig()

    # ------------------------------------------------------------------------
    # Market handling
    # ------------------------------------------------------------------------

    def market(self, valuation_date: Optional[date] = None) -> MarketSnapshot:
        """Snapshot for the valuation date (defaults to the source's own date)."""
        if isinstance(self._market_source, MarketSnapshot):
            snapshot = self._market_source
            if valuation_date is not None and valuation_date != snapshot.valuation_date:
                snapshot = snapshot.with_as_of(datetime.combine(valuation_date, datetime.min.time()))
            return snapshot
        return self._market_source(valuation_date)

    @staticmethod
    def _with_overrides(
        market: MarketSnapshot,
        instrument: InstrumentBase,
        underlying_price: Optional[float] = None,
        volatility: Optional[float] = None,
        dividend_yield: Optional[float] = None,
        risk_free_rate: Optional[float] = None
    ) -> MarketSnapshot:
        """Apply request overrides; spot/vol/dividend overrides need a single underlying."""
        changes = {
            k: v for k, v in (
                ("spot", underlying_price),
                ("volatility", volatility),
                ("dividend_yield", dividend_yield),
            ) if v is not None
        }
        if changes:
            symbols = instrument.underlying_symbols
            if len(symbols) != 1:
                raise InvalidInputError(
                    f"Market overrides need a single-underlying instrument, "
                    f"{instrument.instrument_id} has {len(symbols)}"
                )
            symbol = symbols[0]
            if market.has(symbol):
                market = market.with_underlying(symbol, **changes)
            elif "spot" in changes and "volatility" in changes:
                underlyings = dict(market.underlyings)
                underlyings[symbol] = UnderlyingMarketData(symbol=symbol, **changes)
                market = replace(market, underlyings=underlyings)
            else:
                raise MarketDataUnavailableError(
                    f"No market data for '{symbol}' and no price and volatility given"
                )
        if risk_free_rate is not None:
            market = market.with_rate(risk_free_rate)
        return market

    def _options(self, **changes) -> ValuationOptions:
        return replace(self.options, **{k: v for k, v in changes.items() if v is not None})

    # ------------------------------------------------------------------------
    # Greeks
    # ------------------------------------------------------------------------

    def calculate_greeks(self, request: GreeksRequest) -> GreeksResponse:
        start_time = time.perf_counter()
        instrument = self.repository.get(request.instrument_id)
        market = self._with_overrides(
            self.market(),
            instrument,
            request.underlying_price,
            request.volatility,
            request.dividend_yield,
            request.risk_free_rate,
        )
        options = self._options(model=request.model)
        warnings = self.engine.validate(instrument, market)

        model = self.engine.resolve_model(instrument, options)
        engine = create_engine(model, options.mc, options.binomial)
        knocked = self.engine.barrier_store.hit_ids(instrument)
        greeks = GreeksCalculator(engine, options.bumping).compute(instrument, market, knocked)

        response = GreeksResponse.model_validate(greeks)
        return response.model_copy(update={
            "warnings": list(dict.fromkeys(warnings + greeks.warnings)),
            "calculation_time_ms": _elapsed_ms(start_time),
        })

    # ------------------------------------------------------------------------
    # Implied volatility
    # ------------------------------------------------------------------------

    def calculate_implied_volatility(self, request: ImpliedVolatilityRequest) -> ImpliedVolatilityAnalysis:
        """
        Invert an observed option price to a volatility and put it in context.

        European options are inverted in closed form; American and Bermudan
        options against the binomial lattice with a bumped vega. A solver
        that exhausts its budget returns its best estimate with a warning.
        """
        start_time = time.perf_counter()
        instrument = self.repository.get(request.instrument_id)
        if not isinstance(instrument, OptionInstrument) or instrument.barriers:
            raise InvalidInputError(
                f"Implied volatility needs a vanilla option, {instrument.instrument_id} is not one"
            )

        market = self._with_overrides(
            self.market(),
            instrument,
            underlying_price=request.underlying_price,
            dividend_yield=request.dividend_yield,
            risk_free_rate=request.risk_free_rate,
        )
        symbol = instrument.underlying
        data = market.get(symbol)
        r = market.risk_free_rate
        warnings: List[str] = []

        T = request.time_to_expiration
        if T is None:
            T = expiry_years(instrument, market)

        converged = True
        try:
            if instrument.exercise_style == ExerciseStyle.EUROPEAN:
                iv, iterations = implied_volatility(
                    request.option_price, data.spot, instrument.strike, T, r,
                    data.dividend_yield, instrument.is_call,
                )
            else:
                iv, iterations = self._lattice_implied_vol(instrument, market, request.option_price, T)
        except NumericalNonConvergenceError as e:
            iv, iterations, converged = e.best_estimate, e.iterations, False
            warnings.append(f"{e}; returning best estimate {iv:.4f}")
            logger.warning(f"{instrument.instrument_id}: {e}")

        analysis = ImpliedVolatilityAnalysis(
            instrument_id=instrument.instrument_id,
            implied_volatility=iv,
            converged=converged,
            iterations=iterations,
            term_structure=[
                TermStructurePoint(tenor_years=t, implied_volatility=v)
                for t, v in data.vol_term_structure
            ],
        )

        history = np.asarray(data.iv_history, dtype=float)
        if history.size:
            rank = float(np.mean(history < iv)) * 100.0
            std = float(np.std(history, ddof=1)) if history.size > 1 else 0.0
            analysis.iv_rank = rank
            analysis.iv_percentile = rank / 100.0
            analysis.confidence_95_lower = max(iv - 1.96 * std, 0.0)
            analysis.confidence_95_upper = iv + 1.96 * std
        else:
            warnings.append(f"No implied volatility history for {symbol}; rank and bounds unavailable")

        analysis.warnings = warnings
        analysis.calculation_time_ms = _elapsed_ms(start_time)
        return analysis

    def _lattice_implied_vol(
        self,
        option: OptionInstrument,
        market: MarketSnapshot,
        target: float,
        T: float
    ):
        if T <= 0:
            raise InvalidInputError("Cannot imply volatility for an expired option")
        # the lattice reads time from the snapshot date
        expiry = datetime.combine(option.expiry_date, datetime.min.time())
        market = market.with_as_of(expiry - timedelta(days=year_fraction_to_days(T)))
        lattice = BinomialEngine(self.options.binomial)
        symbol = option.underlying
        lo = IV_BOUNDS[0]

        def price(sigma: float) -> float:
            return lattice.price(option, market.with_underlying(symbol, volatility=sigma)).unit_value

        def vega(sigma: float) -> float:
            if sigma - _IV_VEGA_BUMP > lo:
                return (price(sigma + _IV_VEGA_BUMP) - price(sigma - _IV_VEGA_BUMP)) / (2 * _IV_VEGA_BUMP)
            return (price(sigma + _IV_VEGA_BUMP) - price(sigma)) / _IV_VEGA_BUMP

        return newton_implied_vol(target, price, vega)

    # ------------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------------

    def valuate_product(self, request: StructuredProductValuationRequest) -> ValuationResponse:
        start_time = time.perf_counter()
        instrument = self.repository.get(request.product_id)
        market = self.market(request.valuation_date)
        options = self._options(model=request.model_type, include_greeks=request.include_greeks)

        result = self.engine.valuate(instrument, market, options)
        warnings = list(result.warnings)

        scenario_rows = None
        if request.scenario_analysis:
            analysis = ScenarioEngine(self.engine, self.scenario_config).run_grid(
                instrument, market, options
            )
            scenario_rows = [ScenarioRow.model_validate(r) for r in analysis.results]

        greeks = None
        if result.greeks is not None:
            greeks = GreeksResponse.model_validate(result.greeks).model_copy(update={
                "warnings": list(result.greeks.warnings),
                "calculation_time_ms": result.greeks.computation_time_ms,
            })

        market_view = MarketDataView(
            as_of=market.as_of,
            risk_free_rate=market.risk_free_rate,
            underlyings={
                s: UnderlyingView.model_validate(market.get(s))
                for s in instrument.underlying_symbols
            },
        )
        return ValuationResponse(
            product_id=instrument.instrument_id,
            valuation_date=result.valuation_date,
            theoretical_value=result.value,
            market_data=market_view,
            model_results=ModelResultsView(
                model=result.model,
                unit_value=result.unit_value,
                std_error=result.std_error,
                confidence_95=result.confidence_95,
                time_to_expiry=result.time_to_expiry,
                diagnostics=result.diagnostics,
            ),
            greeks=greeks,
            barriers=[BarrierStatusView.model_validate(s) for s in result.barrier_statuses],
            scenario_analysis=scenario_rows,
            warnings=warnings,
            calculation_time_ms=_elapsed_ms(start_time),
        )

    def valuate_portfolio(self, portfolio_id: str, valuation_date: Optional[date] = None):
        """Value every member of a portfolio; returns a PortfolioValuation."""
        instruments = [self.repository.get(i) for i in self.repository.portfolio(portfolio_id)]
        return self.engine.valuate_portfolio(instruments, self.market(valuation_date), self.options)

    # ------------------------------------------------------------------------
    # Barriers
    # ------------------------------------------------------------------------

    def monitor_barriers(self, request: BarrierMonitoringRequest) -> BarrierMonitoringResponse:
        """
        Evaluate barriers of the requested products and portfolios.

        Hits are folded into the shared hit-state; newly hit barriers raise a
        BARRIER_HIT alert exactly once.
        """
        start_time = time.perf_counter()
        ids = list(request.product_ids)
        for portfolio_id in request.portfolio_ids:
            ids.extend(self.repository.portfolio(portfolio_id))
        if not request.product_ids and not request.portfolio_ids:
            ids = self.repository.instrument_ids()
        ids = list(dict.fromkeys(ids))

        market = self.market()
        evaluator = self.engine.barrier_evaluator
        statuses = []
        alerts = []
        warnings: List[str] = []
        for instrument_id in ids:
            instrument = self.repository.get(instrument_id)
            if not instrument.barrier_features:
                continue
            for status in evaluator.evaluate(instrument, market, alert_threshold=request.alert_threshold):
                statuses.append(status)
                alerts.extend(evaluator.alerts_for(status, request.alert_threshold))
                warnings.extend(f"{instrument_id}: {w}" for w in status.warnings)

        for alert in alerts:
            logger.info(f"[{alert.severity.value}] {alert.alert_type.value}: {alert.message}")

        return BarrierMonitoringResponse(
            active_barriers=[BarrierStatusView.model_validate(s) for s in statuses if not s.is_hit],
            hit_barriers=[BarrierStatusView.model_validate(s) for s in statuses if s.is_hit],
            alerts=[BarrierAlertView.model_validate(a) for a in alerts],
            summary=MonitoringSummaryView.model_validate(summarize(statuses)),
            warnings=warnings,
            calculation_time_ms=_elapsed_ms(start_time),
        )

    def calculate_breach_probability(self, request: BreachProbabilityRequest) -> BreachProbabilityResponse:
        """Breach probability of one barrier; does not touch the hit-state."""
        start_time = time.perf_counter()
        instrument = self.repository.get(request.instrument_id)
        if request.barrier_id not in {b.barrier_id for b in instrument.barrier_features}:
            raise InvalidInputError(
                f"Instrument {instrument.instrument_id} has no barrier {request.barrier_id}"
            )
        horizon = request.horizon_days / 365.25 if request.horizon_days is not None else None
        statuses = self.engine.barrier_evaluator.evaluate(
            instrument, self.market(), horizon_years=horizon, record=False
        )
        status = next(s for s in statuses if s.barrier_id == request.barrier_id)
        return BreachProbabilityResponse(
            instrument_id=instrument.instrument_id,
            barrier_id=status.barrier_id,
            current_level=status.current_level,
            barrier_level=status.barrier_level,
            distance_pct=status.distance_pct,
            breach_probability=status.breach_probability,
            confidence_95_lower=status.breach_probability_lower,
            confidence_95_upper=status.breach_probability_upper,
            horizon_years=status.horizon_years,
            warnings=list(status.warnings),
            calculation_time_ms=_elapsed_ms(start_time),
        )

    # ------------------------------------------------------------------------
    # Margin
    # ------------------------------------------------------------------------

    def _margin_market(self, request: MarginCalculationRequest) -> MarketSnapshot:
        """Service snapshot with the request's prices and volatilities laid over it."""
        base = self.market()
        underlyings: Dict[str, UnderlyingMarketData] = dict(base.underlyings)
        for symbol in set(request.underlying_prices) | set(request.volatilities):
            known = underlyings.get(symbol)
            spot = request.underlying_prices.get(symbol, known.spot if known else None)
            vol = request.volatilities.get(symbol, known.volatility if known else None)
            if spot is None or vol is None:
                raise MarketDataUnavailableError(
                    f"Margin request needs both a price and a volatility for '{symbol}'"
                )
            if known is not None:
                underlyings[symbol] = replace(known, spot=spot, volatility=vol)
            else:
                underlyings[symbol] = UnderlyingMarketData(symbol=symbol, spot=spot, volatility=vol)
        return replace(base, underlyings=underlyings)

    def calculate_margin(self, request: MarginCalculationRequest) -> MarginCalculationResult:
        start_time = time.perf_counter()
        market = self._margin_market(request)

        instruments: Dict[str, InstrumentBase] = {}
        positions: List[MarginPosition] = []
        for p in request.positions:
            try:
                instruments[p.instrument_id] = self.repository.get(p.instrument_id)
            except InstrumentNotFoundError:
                if p.underlying_symbol is None:
                    raise
            positions.append(MarginPosition(
                instrument_id=p.instrument_id,
                quantity=p.quantity,
                side=p.side,
                underlying_symbol=p.underlying_symbol,
            ))

        scenarios = None
        if request.scenario_shifts:
            scenarios = [
                SpanScenario(s.name, s.price_shift, s.vol_shift, s.time_decay_days)
                for s in request.scenario_shifts
            ]

        result = MarginCalculator(self.engine, self.options).calculate(
            positions, market, instruments, scenarios
        )
        return MarginCalculationResult(
            initial_margin=result.initial_margin,
            maintenance_margin=result.maintenance_margin,
            span_margin=result.span_margin,
            worst_scenario=result.worst_scenario,
            scenario_pnl=result.scenario_pnl,
            position_margins=[PositionMarginView.model_validate(p) for p in result.position_margins],
            warnings=result.warnings,
            calculation_time_ms=_elapsed_ms(start_time),
        )
