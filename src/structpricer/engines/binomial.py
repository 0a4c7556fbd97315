"""
Cox-Ross-Rubinstein (CRR) binomial lattice.

Supports:
- European, American and Bermudan options
- Single-name structured products with coupons, autocall triggers,
  holder put dates and capital protection
- Knock-out barriers by node truncation
- Knock-in barriers by a two-layer induction: a pending layer that takes
  the knocked-in layer's value wherever a knock-in is breached, so early
  exercise and put dates combine with knock-ins

Backward induction keeps one rolling array per layer, so a valuation costs
O(N^2) time and O(N) memory.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple
import logging
import time

import numpy as np

from structpricer.core.day_count import time_to_expiry
from structpricer.core.errors import (
    InvalidInputError,
    NumericalInstabilityError,
    UnsupportedModelError,
)
from structpricer.engines.base import (
    ModelResult,
    ModelType,
    PricingEngine,
    barrier_bounds,
    check_finite,
    expiry_years,
    is_breached,
    resolve_level,
)
from structpricer.engines.payoffs import expired_unit_value, initial_levels, option_payoff
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    ExerciseStyle,
    InstrumentBase,
    OptionInstrument,
    StructuredProduct,
)


logger = logging.getLogger(__name__)


@dataclass
class BinomialConfig:
    """Configuration for lattice pricing."""

    num_steps: int = 500


@dataclass
class _KnockOut:
    lower: Optional[float]
    upper: Optional[float]
    rebate: float
    steps: Optional[FrozenSet[int]]  # None: monitored at every node


@dataclass
class _LatticeSpec:
    """Everything backward induction needs, already mapped to steps."""

    terminal: Callable[[np.ndarray], np.ndarray]
    exercise: Optional[Callable[[np.ndarray], np.ndarray]] = None
    exercise_steps: FrozenSet[int] = frozenset()
    floors: Dict[int, float] = field(default_factory=dict)
    calls: Dict[int, Tuple[float, float]] = field(default_factory=dict)
    coupons: Dict[int, List[Tuple[float, Optional[float]]]] = field(default_factory=dict)
    knockouts: List[_KnockOut] = field(default_factory=list)
    knock_in: Optional["_KnockIn"] = None


@dataclass
class _KnockIn:
    """Switch from the pending layer to ``layer`` where any barrier is breached."""

    barriers: List[_KnockOut]
    layer: _LatticeSpec


class BinomialEngine(PricingEngine):
    """
    CRR lattice engine for single-underlying instruments.

    u = exp(sigma * sqrt(dt)), d = 1/u, p = (exp((r - q) dt) - d) / (u - d)
    """

    model_type = ModelType.BINOMIAL

    def __init__(self, config: Optional[BinomialConfig] = None) -> None:
        self.config = config or BinomialConfig()
        if self.config.num_steps < 1:
            raise InvalidInputError(f"num_steps must be >= 1, got {self.config.num_steps}")

    def price(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        knocked_barriers: FrozenSet[str] = frozenset()
    ) -> ModelResult:
        start_time = time.perf_counter()
        warnings: List[str] = []

        if not isinstance(instrument, (OptionInstrument, StructuredProduct)):
            raise UnsupportedModelError(
                f"Binomial lattice cannot price {type(instrument).__name__}"
            )
        if isinstance(instrument, StructuredProduct) and instrument.is_basket:
            raise UnsupportedModelError("Binomial lattice cannot price basket products")

        symbol = instrument.underlying_symbols[0]
        data = market.get(symbol)
        S, sigma, q = data.spot, data.volatility, data.dividend_yield
        r = market.risk_free_rate
        if sigma <= 0:
            raise InvalidInputError(f"Volatility must be positive, got {sigma}")
        if S <= 0:
            raise InvalidInputError(f"Spot price must be positive, got {S}")

        T = expiry_years(instrument, market)
        N = self.config.num_steps
        diagnostics = {"lattice_steps": N, "time_to_expiry": T}

        knocked_out = [
            b for b in instrument.barrier_features
            if b.barrier_type.is_knock_out and b.barrier_id in knocked_barriers
        ]
        if knocked_out:
            ids = ", ".join(b.barrier_id for b in knocked_out)
            warnings.append(f"Instrument {instrument.instrument_id} already knocked out by {ids}")
            unit = 0.0
        elif T <= 0:
            warnings.append(f"Instrument {instrument.instrument_id} is expired; using intrinsic value")
            unit = expired_unit_value(instrument, market, knocked_barriers)
        else:
            unit = self._price_lattice(instrument, market, S, T, r, q, sigma, N, knocked_barriers, diagnostics)

        unit = check_finite(unit, "Binomial lattice")
        elapsed = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Binomial {instrument.instrument_id}: {N} steps, unit value {unit:.6f}")

        return ModelResult(
            value=unit * instrument.notional,
            unit_value=unit,
            model=self.model_type,
            computation_time_ms=elapsed,
            warnings=warnings,
            diagnostics=diagnostics,
        )

    # ------------------------------------------------------------------------
    # Lattice construction
    # ------------------------------------------------------------------------

    def _price_lattice(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        S: float,
        T: float,
        r: float,
        q: float,
        sigma: float,
        N: int,
        knocked_barriers: FrozenSet[str],
        diagnostics: Dict
    ) -> float:
        dt = T / N
        u = np.exp(sigma * np.sqrt(dt))
        d = 1.0 / u
        p = (np.exp((r - q) * dt) - d) / (u - d)
        if not 0.0 <= p <= 1.0:
            raise NumericalInstabilityError(
                f"Risk-neutral probability {p:.4f} outside [0, 1]; increase num_steps"
            )
        diagnostics.update({"u": float(u), "d": float(d), "p": float(p)})

        valuation = market.valuation_date

        def step_of(when: date) -> Optional[int]:
            t = time_to_expiry(valuation, when)
            if t <= 0:
                return None
            return min(N, max(1, int(round(t / dt))))

        knock_outs: List[_KnockOut] = []
        knock_ins: List[_KnockOut] = []
        for barrier in instrument.barrier_features:
            if barrier.barrier_id in knocked_barriers:
                # recorded knock-ins are already active
                continue
            lower, upper = barrier_bounds(instrument, barrier, market)
            if barrier.is_european:
                dates = barrier.observation_dates or [instrument.expiry_date]
                steps = frozenset(s for s in (step_of(x) for x in dates) if s is not None)
            else:
                steps = None
            entry = _KnockOut(lower, upper, barrier.rebate, steps)
            if barrier.barrier_type.is_knock_out:
                knock_outs.append(entry)
            else:
                knock_ins.append(_KnockOut(lower, upper, 0.0, steps))
        if any(b.barrier_type.is_knock_in and b.barrier_id in knocked_barriers
               for b in instrument.barrier_features):
            knock_ins = []

        if isinstance(instrument, OptionInstrument):
            spec = self._option_spec(instrument, step_of, knock_outs, knock_ins)
        else:
            initial = float(initial_levels(instrument, market)[0])
            spec = self._structured_spec(instrument, initial, step_of, knock_outs, knock_ins)
        if spec.knock_in is not None:
            diagnostics["knock_in_layers"] = 2

        return self._backward_induction(spec, S, N, u, p, np.exp(-r * dt))

    def _option_spec(
        self,
        option: OptionInstrument,
        step_of: Callable[[date], Optional[int]],
        knock_outs: List[_KnockOut],
        knock_ins: List[_KnockOut]
    ) -> _LatticeSpec:
        payoff = lambda spots: option_payoff(option, spots)

        exercise_steps: FrozenSet[int] = frozenset()
        if option.exercise_style == ExerciseStyle.AMERICAN:
            exercise_steps = frozenset(range(self.config.num_steps + 1))
        elif option.exercise_style == ExerciseStyle.BERMUDAN:
            exercise_steps = frozenset(
                s for s in (step_of(x) for x in option.exercise_dates) if s is not None
            )

        full = _LatticeSpec(
            terminal=payoff,
            exercise=payoff,
            exercise_steps=exercise_steps,
            knockouts=knock_outs,
        )
        if not knock_ins:
            return full
        # nothing to exercise before the option knocks in
        return _LatticeSpec(
            terminal=np.zeros_like,
            knockouts=knock_outs,
            knock_in=_KnockIn(knock_ins, full),
        )

    def _structured_spec(
        self,
        product: StructuredProduct,
        initial: float,
        step_of: Callable[[date], Optional[int]],
        knock_outs: List[_KnockOut],
        knock_ins: List[_KnockOut]
    ) -> _LatticeSpec:
        protection = product.capital_protection or 0.0

        def perf_payoff(spots: np.ndarray) -> np.ndarray:
            return product.payoff.evaluate(spots / initial)

        coupons: Dict[int, List[Tuple[float, Optional[float]]]] = {}
        for coupon in product.coupons:
            step = step_of(coupon.payment_date)
            if step is None:
                continue
            threshold = None if coupon.barrier_level is None else coupon.barrier_level * initial
            coupons.setdefault(step, []).append((coupon.rate, threshold))

        calls: Dict[int, Tuple[float, float]] = {}
        for call in product.call_schedule:
            step = step_of(call.call_date)
            if step is not None:
                calls[step] = (resolve_level(call.trigger_level, initial), call.call_price)

        floors: Dict[int, float] = {}
        for put in product.put_schedule:
            step = step_of(put.put_date)
            if step is not None:
                floors[step] = max(floors.get(step, 0.0), put.put_price)

        full = _LatticeSpec(
            terminal=lambda spots: perf_payoff(spots) + protection,
            floors=floors,
            calls=calls,
            coupons=coupons,
            knockouts=knock_outs,
        )
        if not knock_ins:
            return full
        # performance is gated by the knock-in; protection, coupons, calls and puts are not
        return _LatticeSpec(
            terminal=lambda spots: np.full_like(spots, protection),
            floors=floors,
            calls=calls,
            coupons=coupons,
            knockouts=knock_outs,
            knock_in=_KnockIn(knock_ins, full),
        )

    # ------------------------------------------------------------------------
    # Backward induction
    # ------------------------------------------------------------------------

    @staticmethod
    def _apply_events(spec: _LatticeSpec, step: int, spots: np.ndarray, values: np.ndarray) -> np.ndarray:
        """Exercise, put floor, autocall, coupon, then knock-out at one step."""
        if spec.exercise is not None and step in spec.exercise_steps:
            values = np.maximum(values, spec.exercise(spots))
        if step in spec.floors:
            values = np.maximum(values, spec.floors[step])
        if step in spec.calls:
            trigger, call_price = spec.calls[step]
            values = np.where(spots >= trigger, call_price, values)
        for rate, threshold in spec.coupons.get(step, ()):
            if threshold is None:
                values = values + rate
            else:
                values = values + np.where(spots >= threshold, rate, 0.0)
        for ko in spec.knockouts:
            if ko.steps is None or step in ko.steps:
                values = np.where(is_breached(spots, ko.lower, ko.upper), ko.rebate, values)
        return values

    @staticmethod
    def _knock_in(
        knock_in: _KnockIn,
        step: int,
        spots: np.ndarray,
        pending: np.ndarray,
        active: np.ndarray
    ) -> np.ndarray:
        """Nodes where a knock-in is observed breached take the knocked-in value."""
        hit = np.zeros_like(spots, dtype=bool)
        for ki in knock_in.barriers:
            if ki.steps is None or step in ki.steps:
                hit = hit | is_breached(spots, ki.lower, ki.upper)
        return np.where(hit, active, pending)

    def _backward_induction(
        self,
        spec: _LatticeSpec,
        S: float,
        N: int,
        u: float,
        p: float,
        discount: float
    ) -> float:
        def roll(values: np.ndarray) -> np.ndarray:
            return discount * (p * values[:-1] + (1.0 - p) * values[1:])

        spots = S * u ** np.arange(N, -N - 1, -2, dtype=np.float64)
        values = self._apply_events(spec, N, spots, spec.terminal(spots))
        knock_in = spec.knock_in
        active = None
        if knock_in is not None:
            active = self._apply_events(knock_in.layer, N, spots, knock_in.layer.terminal(spots))
            values = self._knock_in(knock_in, N, spots, values, active)

        for step in range(N - 1, -1, -1):
            spots = S * u ** np.arange(step, -step - 1, -2, dtype=np.float64)
            values = self._apply_events(spec, step, spots, roll(values))
            if knock_in is not None:
                active = self._apply_events(knock_in.layer, step, spots, roll(active))
                values = self._knock_in(knock_in, step, spots, values, active)

        if not np.all(np.isfinite(values)):
            raise NumericalInstabilityError("Binomial lattice produced non-finite node values")
        return float(values[0])

