"""
Monte Carlo simulation engine.

Generates correlated GBM paths for one or more underlyings:
    S[i+1] = S[i] * exp((r - q - sigma^2 / 2) dt + sigma sqrt(dt) Z)

and evaluates, per path and in date order:
1. Barrier breaches against the full path (optionally with a Brownian
   bridge correction between grid points for continuous barriers)
2. Conditional coupons while the product is alive
3. Autocall triggers on call dates
4. Knock-out rebates, then the terminal payoff for surviving paths

Paths are simulated in independent blocks seeded from one SeedSequence,
so a fixed seed gives common random numbers across bumped revaluations.
Blocks run on a thread pool and are reduced by summation.
"""

from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, FrozenSet, List, Optional, Tuple
import logging
import math
import os
import time

import numpy as np
from numpy.random import Generator, SeedSequence, default_rng

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
)
from structpricer.engines.payoffs import (
    basket_performance,
    expired_unit_value,
    initial_levels,
    terminal_payoff,
)
from structpricer.market.correlation import build_correlation_matrix, compute_cholesky
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    FRACTIONAL_LEVEL_CUTOFF,
    ExerciseStyle,
    InstrumentBase,
    OptionInstrument,
    StructuredProduct,
)


logger = logging.getLogger(__name__)


Z_95 = 1.96


@dataclass
class MonteCarloConfig:
    """
    Configuration for Monte Carlo pricing.

    Attributes:
        num_paths: Paths to simulate
        num_steps: Time steps over the instrument's remaining life when the
            payoff is path dependent (a single exact step otherwise)
        seed: Root seed; None draws fresh entropy
        antithetic: Pair every normal draw with its negation
        block_size: Paths per independently seeded block
        max_workers: Thread pool size, defaults to the CPU count
        brownian_bridge: Correct continuous barriers for crossings between steps
        deadline_seconds: Wall-clock budget; unfinished blocks are dropped
        max_path_steps: Budget on paths * steps; caps the path count
    """

    num_paths: int = 100_000
    num_steps: int = 252
    seed: Optional[int] = 42
    antithetic: bool = True
    block_size: int = 5_000
    max_workers: Optional[int] = None
    brownian_bridge: bool = True
    deadline_seconds: Optional[float] = None
    max_path_steps: Optional[int] = None


@dataclass
class _BarrierPlan:
    asset: int
    lower: Optional[float]
    upper: Optional[float]
    knock_out: bool
    rebate: float
    steps: Optional[np.ndarray]  # None: every grid point
    recorded_hit: bool


@dataclass
class _SimulationPlan:
    """Simulation inputs resolved to arrays and grid steps."""

    instrument: InstrumentBase
    spots: np.ndarray
    vols: np.ndarray
    divs: np.ndarray
    rate: float
    T: float
    num_steps: int
    chol: np.ndarray
    initials: np.ndarray
    barriers: List[_BarrierPlan] = field(default_factory=list)
    # step -> [(rate, performance threshold or None)]
    coupons: Dict[int, List[Tuple[float, Optional[float]]]] = field(default_factory=dict)
    # step -> (performance trigger, call price)
    calls: Dict[int, Tuple[float, float]] = field(default_factory=dict)
    protection: float = 0.0

    @property
    def dt(self) -> float:
        return self.T / self.num_steps

    def discount(self, step) -> np.ndarray:
        return np.exp(-self.rate * np.asarray(step) * self.dt)


@dataclass
class _BlockStats:
    """
    Sufficient statistics of one block; blocks reduce by summation.

    The error samples are antithetic pair means when pairing is on, so the
    standard error sees the pairs' correlation.
    """

    n: int = 0
    sum_pv: float = 0.0
    n_samples: int = 0
    sum_sample: float = 0.0
    sum_sample_sq: float = 0.0
    knocked_in: int = 0
    knocked_out: int = 0
    called: int = 0
    coupons: float = 0.0

    def __add__(self, other: "_BlockStats") -> "_BlockStats":
        return _BlockStats(
            n=self.n + other.n,
            sum_pv=self.sum_pv + other.sum_pv,
            n_samples=self.n_samples + other.n_samples,
            sum_sample=self.sum_sample + other.sum_sample,
            sum_sample_sq=self.sum_sample_sq + other.sum_sample_sq,
            knocked_in=self.knocked_in + other.knocked_in,
            knocked_out=self.knocked_out + other.knocked_out,
            called=self.called + other.called,
            coupons=self.coupons + other.coupons,
        )


def _bridge_hit_probability(
    s_start: np.ndarray,
    s_end: np.ndarray,
    level: float,
    vol: float,
    dt: float,
    down: bool
) -> np.ndarray:
    """
    Probability that a Brownian bridge in log-space crosses ``level``
    between two grid points that are both on the safe side:
        exp(-2 ln(S_start/H) ln(S_end/H) / (vol^2 dt))
    """
    if down:
        a = np.log(s_start / level)
        b = np.log(s_end / level)
    else:
        a = np.log(level / s_start)
        b = np.log(level / s_end)
    safe = (a > 0) & (b > 0)
    exponent = -2.0 * np.where(safe, a * b, 0.0) / (vol * vol * dt)
    return np.where(safe, np.exp(np.minimum(exponent, 0.0)), 1.0)


def _pair_means(pv: np.ndarray) -> np.ndarray:
    """Average each path with its antithetic partner; an odd last path stands alone."""
    half = (len(pv) + 1) // 2
    pairs = len(pv) - half
    return np.concatenate([(pv[:pairs] + pv[half:]) / 2.0, pv[pairs:half]])


class MonteCarloEngine(PricingEngine):
    """Path simulation engine for barrier, callable and basket instruments."""

    model_type = ModelType.MONTE_CARLO

    def __init__(self, config: Optional[MonteCarloConfig] = None) -> None:
        self.config = config or MonteCarloConfig()
        if self.config.num_paths < 2:
            raise InvalidInputError(f"num_paths must be >= 2, got {self.config.num_paths}")
        if self.config.num_steps < 1:
            raise InvalidInputError(f"num_steps must be >= 1, got {self.config.num_steps}")
        if self.config.block_size < 2:
            raise InvalidInputError(f"block_size must be >= 2, got {self.config.block_size}")

    def get_seed(self) -> Optional[int]:
        return self.config.seed

    def set_seed(self, seed: int) -> None:
        self.config.seed = seed

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

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
                f"Monte Carlo cannot price {type(instrument).__name__}"
            )
        if isinstance(instrument, OptionInstrument) and instrument.exercise_style != ExerciseStyle.EUROPEAN:
            raise UnsupportedModelError(
                f"Monte Carlo cannot price {instrument.exercise_style.value} exercise"
            )
        if isinstance(instrument, StructuredProduct) and instrument.put_schedule:
            warnings.append("Put schedule ignored by Monte Carlo; holder puts need the binomial model")

        for symbol in instrument.underlying_symbols:
            data = market.get(symbol)
            if data.volatility <= 0:
                raise InvalidInputError(f"Volatility for {symbol} must be positive, got {data.volatility}")
            if data.spot <= 0:
                raise InvalidInputError(f"Spot for {symbol} must be positive, got {data.spot}")

        T = expiry_years(instrument, market)
        knocked_out = [
            b.barrier_id for b in instrument.barrier_features
            if b.barrier_type.is_knock_out and b.barrier_id in knocked_barriers
        ]

        if knocked_out or T <= 0:
            if knocked_out:
                warnings.append(
                    f"Instrument {instrument.instrument_id} already knocked out by {', '.join(knocked_out)}"
                )
                unit = 0.0
            else:
                warnings.append(f"Instrument {instrument.instrument_id} is expired; using intrinsic value")
                unit = expired_unit_value(instrument, market, knocked_barriers)
            return ModelResult(
                value=unit * instrument.notional,
                unit_value=unit,
                model=self.model_type,
                computation_time_ms=(time.perf_counter() - start_time) * 1000,
                warnings=warnings,
                diagnostics={"num_paths": 0, "time_to_expiry": T},
            )

        plan = self._build_plan(instrument, market, T, knocked_barriers, warnings)
        stats, blocks_done, blocks_planned = self._run_blocks(plan, warnings)

        n = stats.n
        mean = stats.sum_pv / n
        m = stats.n_samples
        sample_mean = stats.sum_sample / m
        variance = max(stats.sum_sample_sq - m * sample_mean * sample_mean, 0.0) / max(m - 1, 1)
        std_error = math.sqrt(variance / m)
        mean = check_finite(mean, "Monte Carlo simulation")
        notional = instrument.notional
        elapsed = (time.perf_counter() - start_time) * 1000

        logger.debug(
            f"Monte Carlo {instrument.instrument_id}: {n:,} paths x {plan.num_steps} steps, "
            f"unit value {mean:.6f} +/- {std_error:.6f} in {elapsed:.1f} ms"
        )

        return ModelResult(
            value=mean * notional,
            unit_value=mean,
            model=self.model_type,
            std_error=std_error * notional,
            confidence_95=Z_95 * std_error * notional,
            computation_time_ms=elapsed,
            warnings=warnings,
            diagnostics={
                "num_paths": n,
                "num_steps": plan.num_steps,
                "time_to_expiry": T,
                "blocks_completed": blocks_done,
                "blocks_planned": blocks_planned,
                "antithetic": self.config.antithetic,
                "seed": self.config.seed,
                "knock_in_probability": stats.knocked_in / n,
                "knock_out_probability": stats.knocked_out / n,
                "autocall_probability": stats.called / n,
                "expected_coupon_count": stats.coupons / n,
            },
        )

    # ------------------------------------------------------------------------
    # Plan construction
    # ------------------------------------------------------------------------

    def _build_plan(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        T: float,
        knocked_barriers: FrozenSet[str],
        warnings: List[str]
    ) -> _SimulationPlan:
        symbols = list(instrument.underlying_symbols)
        data = [market.get(s) for s in symbols]
        initials = initial_levels(instrument, market)

        if len(symbols) > 1:
            corr = build_correlation_matrix(symbols, market)
            chol = compute_cholesky(corr, warnings=warnings)
        else:
            chol = np.eye(1)

        path_dependent = bool(instrument.barrier_features) or (
            isinstance(instrument, StructuredProduct)
            and bool(instrument.coupons or instrument.call_schedule)
        )
        num_steps = self.config.num_steps if path_dependent else 1

        plan = _SimulationPlan(
            instrument=instrument,
            spots=np.array([d.spot for d in data]),
            vols=np.array([d.volatility for d in data]),
            divs=np.array([d.dividend_yield for d in data]),
            rate=market.risk_free_rate,
            T=T,
            num_steps=num_steps,
            chol=chol,
            initials=initials,
        )
        valuation = market.valuation_date

        def step_of(when: date) -> Optional[int]:
            t = time_to_expiry(valuation, when)
            if t <= 0:
                return None
            return min(num_steps, max(1, int(round(t / plan.dt))))

        for barrier in instrument.barrier_features:
            lower, upper = barrier_bounds(instrument, barrier, market)
            steps = None
            if barrier.is_european:
                dates = barrier.observation_dates or [instrument.expiry_date]
                steps = np.array(sorted({s for s in map(step_of, dates) if s is not None}), dtype=np.int64)
            plan.barriers.append(_BarrierPlan(
                asset=symbols.index(instrument.barrier_symbol(barrier)),
                lower=lower,
                upper=upper,
                knock_out=barrier.barrier_type.is_knock_out,
                rebate=barrier.rebate,
                steps=steps,
                recorded_hit=barrier.barrier_id in knocked_barriers,
            ))

        if isinstance(instrument, StructuredProduct):
            for coupon in instrument.coupons:
                step = step_of(coupon.payment_date)
                if step is not None:
                    plan.coupons.setdefault(step, []).append((coupon.rate, coupon.barrier_level))
            for call in instrument.call_schedule:
                step = step_of(call.call_date)
                if step is None:
                    continue
                trigger = call.trigger_level
                if trigger >= FRACTIONAL_LEVEL_CUTOFF:
                    trigger = trigger / initials[0]
                plan.calls[step] = (trigger, call.call_price)
            plan.protection = instrument.capital_protection or 0.0

        return plan

    # ------------------------------------------------------------------------
    # Block scheduling
    # ------------------------------------------------------------------------

    def _block_sizes(self, num_steps: int, warnings: List[str]) -> List[int]:
        num_paths = self.config.num_paths
        budget = self.config.max_path_steps
        if budget is not None and num_paths * num_steps > budget:
            capped = max(2, budget // num_steps)
            message = (
                f"Path-step budget {budget:,} caps Monte Carlo at {capped:,} "
                f"of {num_paths:,} paths"
            )
            logger.warning(message)
            warnings.append(message)
            num_paths = capped

        block = self.config.block_size
        sizes = [block] * (num_paths // block)
        if num_paths % block:
            sizes.append(num_paths % block)
        if len(sizes) > 1 and sizes[-1] < 2:
            sizes[-2] += sizes.pop()
        return sizes

    def _run_blocks(self, plan: _SimulationPlan, warnings: List[str]) -> Tuple[_BlockStats, int, int]:
        sizes = self._block_sizes(plan.num_steps, warnings)
        seeds = SeedSequence(self.config.seed).spawn(len(sizes))
        deadline = self.config.deadline_seconds
        started = time.perf_counter()
        workers = self.config.max_workers or os.cpu_count() or 1

        results: Dict[int, _BlockStats] = {}
        if workers == 1 or len(sizes) == 1:
            for i, (size, seed) in enumerate(zip(sizes, seeds)):
                if results and deadline is not None and time.perf_counter() - started > deadline:
                    break
                results[i] = self._simulate_block(plan, size, default_rng(seed))
        else:
            executor = ThreadPoolExecutor(max_workers=min(workers, len(sizes)))
            try:
                futures = {
                    executor.submit(self._simulate_block, plan, size, default_rng(seed)): i
                    for i, (size, seed) in enumerate(zip(sizes, seeds))
                }
                pending = set(futures)
                while pending:
                    timeout = None
                    if deadline is not None and results:
                        timeout = max(deadline - (time.perf_counter() - started), 0.0)
                    done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                    for future in done:
                        results[futures[future]] = future.result()
                    if not done:
                        break
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        if len(results) < len(sizes):
            completed = sum(sizes[i] for i in results)
            message = (
                f"Monte Carlo deadline of {deadline}s reached after {completed:,} "
                f"of {sum(sizes):,} paths"
            )
            logger.warning(message)
            warnings.append(message)

        total = _BlockStats()
        for i in sorted(results):
            total = total + results[i]
        return total, len(results), len(sizes)

    # ------------------------------------------------------------------------
    # Path simulation and payoff evaluation
    # ------------------------------------------------------------------------

    def _simulate_paths(self, plan: _SimulationPlan, n_paths: int, rng: Generator) -> np.ndarray:
        """Simulate spot paths [n_paths, num_steps + 1, num_assets]."""
        n_assets = len(plan.spots)
        if self.config.antithetic:
            half = (n_paths + 1) // 2
            z = rng.standard_normal((half, plan.num_steps, n_assets))
            z = np.concatenate([z, -z], axis=0)[:n_paths]
        else:
            z = rng.standard_normal((n_paths, plan.num_steps, n_assets))

        if n_assets > 1:
            z = np.einsum("psj,ij->psi", z, plan.chol)

        dt = plan.dt
        drift = (plan.rate - plan.divs - 0.5 * plan.vols**2) * dt
        diffusion = plan.vols * np.sqrt(dt)
        log_paths = np.cumsum(drift + diffusion * z, axis=1)

        paths = np.empty((n_paths, plan.num_steps + 1, n_assets))
        paths[:, 0, :] = plan.spots
        paths[:, 1:, :] = plan.spots * np.exp(log_paths)
        return paths

    def _first_hit_step(
        self,
        plan: _SimulationPlan,
        barrier: _BarrierPlan,
        paths: np.ndarray,
        rng: Generator
    ) -> np.ndarray:
        """First grid step at which each path breaches, num_steps + 1 if never."""
        never = plan.num_steps + 1
        asset_path = paths[:, :, barrier.asset]
        steps = barrier.steps if barrier.steps is not None else np.arange(plan.num_steps + 1)
        if len(steps) == 0:
            return np.full(paths.shape[0], never)

        breached = is_breached(asset_path[:, steps], barrier.lower, barrier.upper)

        if barrier.steps is None and self.config.brownian_bridge and plan.num_steps > 1:
            vol = plan.vols[barrier.asset]
            s_start, s_end = asset_path[:, :-1], asset_path[:, 1:]
            survive = np.ones_like(s_start)
            if barrier.lower is not None:
                survive *= 1.0 - _bridge_hit_probability(s_start, s_end, barrier.lower, vol, plan.dt, True)
            if barrier.upper is not None:
                survive *= 1.0 - _bridge_hit_probability(s_start, s_end, barrier.upper, vol, plan.dt, False)
            crossed = rng.random(s_start.shape) > survive
            # a crossing inside (k-1, k) is booked at step k
            breached[:, 1:] |= crossed

        any_hit = breached.any(axis=1)
        first = steps[np.argmax(breached, axis=1)]
        return np.where(any_hit, first, never)

    def _performance(self, plan: _SimulationPlan, spots: np.ndarray) -> np.ndarray:
        instrument = plan.instrument
        if isinstance(instrument, StructuredProduct):
            return basket_performance(instrument, spots, plan.initials)
        return spots[..., 0] / plan.initials[0]

    def _simulate_block(self, plan: _SimulationPlan, n_paths: int, rng: Generator) -> _BlockStats:
        paths = self._simulate_paths(plan, n_paths, rng)
        K = plan.num_steps
        never = K + 1

        ko_step = np.full(n_paths, never)
        ko_rebate = np.zeros(n_paths)
        has_knock_in = False
        knocked_in = np.zeros(n_paths, dtype=bool)

        for barrier in plan.barriers:
            if barrier.knock_out:
                if barrier.recorded_hit:
                    hit = np.full(n_paths, -1)
                else:
                    hit = self._first_hit_step(plan, barrier, paths, rng)
                earlier = hit < ko_step
                ko_rebate = np.where(earlier, barrier.rebate, ko_rebate)
                ko_step = np.minimum(ko_step, hit)
            else:
                has_knock_in = True
                if barrier.recorded_hit:
                    knocked_in[:] = True
                else:
                    knocked_in |= self._first_hit_step(plan, barrier, paths, rng) <= K

        pv = np.zeros(n_paths)
        called = np.zeros(n_paths, dtype=bool)
        coupon_count = np.zeros(n_paths)

        for step in sorted(set(plan.coupons) | set(plan.calls)):
            alive = (ko_step > step) & ~called
            perf = self._performance(plan, paths[:, step, :])
            df = plan.discount(step)
            for rate, threshold in plan.coupons.get(step, ()):
                pays = alive if threshold is None else alive & (perf >= threshold)
                pv += np.where(pays, rate * df, 0.0)
                coupon_count += pays
            if step in plan.calls:
                trigger, call_price = plan.calls[step]
                triggered = alive & (perf >= trigger)
                pv += np.where(triggered, call_price * df, 0.0)
                called |= triggered

        knocked = (ko_step >= 0) & (ko_step <= K) & ~called
        pv += np.where(knocked, ko_rebate * plan.discount(np.clip(ko_step, 0, K)), 0.0)

        survive = ~called & (ko_step > K)
        payoff = terminal_payoff(plan.instrument, paths[:, K, :], plan.initials)
        if has_knock_in:
            payoff = np.where(knocked_in, payoff, 0.0)
        pv += np.where(survive, (payoff + plan.protection) * plan.discount(K), 0.0)

        if not np.all(np.isfinite(pv)):
            raise NumericalInstabilityError("Monte Carlo produced non-finite path values")

        samples = _pair_means(pv) if self.config.antithetic else pv
        return _BlockStats(
            n=n_paths,
            sum_pv=float(pv.sum()),
            n_samples=len(samples),
            sum_sample=float(samples.sum()),
            sum_sample_sq=float((samples * samples).sum()),
            knocked_in=int(knocked_in.sum()) if has_knock_in else 0,
            knocked_out=int(((ko_step >= 0) & (ko_step <= K)).sum()),
            called=int(called.sum()),
            coupons=float(coupon_count.sum()),
        )
