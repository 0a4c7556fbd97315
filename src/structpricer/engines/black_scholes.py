"""
Black-Scholes analytical pricing formulas and Greeks.

Implements closed-form solutions for:
- European calls and puts with continuous dividend yield
- Cash-or-nothing digitals (used by structured product payoffs)
- Futures (forward value against the trade price)
- Single-name structured products without path dependence

Greeks are returned in raw units: vega per 1.00 of volatility, rho per
1.00 of rate, theta per year.
"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Tuple
import logging
import time

import numpy as np
from scipy.stats import norm

from structpricer.core.day_count import time_to_expiry
from structpricer.core.errors import (
    InvalidInputError,
    NumericalNonConvergenceError,
    UnsupportedModelError,
)
from structpricer.engines.base import (
    ModelResult,
    ModelType,
    PricingEngine,
    check_finite,
    expiry_years,
)
from structpricer.engines.payoffs import initial_levels, option_payoff
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    CappedPayoff,
    DigitalPayoff,
    ExerciseStyle,
    FutureInstrument,
    InstrumentBase,
    LeveragedPayoff,
    OptionInstrument,
    ParticipationPayoff,
    StructuredProduct,
)


logger = logging.getLogger(__name__)


IV_INITIAL_GUESS = 0.3
IV_TOLERANCE = 1e-4
IV_MAX_ITERATIONS = 100
IV_BOUNDS = (0.001, 3.0)


@dataclass
class Greeks:
    """Option Greeks (sensitivities), raw units."""
    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: float = 0.0
    vanna: float = 0.0
    volga: float = 0.0
    charm: float = 0.0
    color: float = 0.0
    lambda_: float = 0.0

    def scaled(self, factor: float) -> "Greeks":
        """Greeks of ``factor`` units (lambda is scale free)."""
        return Greeks(
            delta=self.delta * factor,
            gamma=self.gamma * factor,
            theta=self.theta * factor,
            vega=self.vega * factor,
            rho=self.rho * factor,
            vanna=self.vanna * factor,
            volga=self.volga * factor,
            charm=self.charm * factor,
            color=self.color * factor,
            lambda_=self.lambda_,
        )


def _check_inputs(S: float, sigma: float) -> None:
    if sigma <= 0:
        raise InvalidInputError(f"Volatility must be positive, got {sigma}")
    if S <= 0:
        raise InvalidInputError(f"Spot price must be positive, got {S}")


def d1(S: float, K: float, T: float, r: float, q: float, sigma: float) -> float:
    """
    Calculate d1 in Black-Scholes formula.

    Args:
        S: Spot price
        K: Strike price
        T: Time to expiry (years), positive
        r: Risk-free rate (continuous)
        q: Dividend yield (continuous)
        sigma: Volatility, positive

    Returns:
        d1 value
    """
    return (np.log(S / K) + (r - q + 0.5 * sigma**2) * T) / (sigma * np.sqrt(T))


def d2(S: float, K: float, T: float, r: float, q: float, sigma: float) -> float:
    """Calculate d2 = d1 - sigma * sqrt(T)."""
    return d1(S, K, T, r, q, sigma) - sigma * np.sqrt(T)


def bs_price(
    S: float,
    K: float,
    T: float,
    r: float,
    q: float,
    sigma: float,
    is_call: bool = True
) -> float:
    """
    Black-Scholes European option price.

    Args:
        S: Spot price
        K: Strike price
        T: Time to expiry (years); intrinsic value when T <= 0
        r: Risk-free rate (continuous)
        q: Dividend yield (continuous)
        sigma: Volatility
        is_call: True for call, False for put

    Returns:
        Option price

    Raises:
        InvalidInputError: If sigma or S is not positive
    """
    _check_inputs(S, sigma)
    if T <= 0:
        return max(S - K, 0.0) if is_call else max(K - S, 0.0)

    d1_val = d1(S, K, T, r, q, sigma)
    d2_val = d1_val - sigma * np.sqrt(T)
    if is_call:
        return float(S * np.exp(-q * T) * norm.cdf(d1_val) - K * np.exp(-r * T) * norm.cdf(d2_val))
    return float(K * np.exp(-r * T) * norm.cdf(-d2_val) - S * np.exp(-q * T) * norm.cdf(-d1_val))


def bs_digital_price(
    S: float,
    K: float,
    T: float,
    r: float,
    q: float,
    sigma: float,
    is_call: bool = True
) -> float:
    """Cash-or-nothing digital paying 1 when S_T >= K (call) or S_T < K (put)."""
    _check_inputs(S, sigma)
    if T <= 0:
        if is_call:
            return 1.0 if S >= K else 0.0
        return 1.0 if S < K else 0.0
    d2_val = d2(S, K, T, r, q, sigma)
    return float(np.exp(-r * T) * norm.cdf(d2_val if is_call else -d2_val))


def bs_vega(S: float, K: float, T: float, r: float, q: float, sigma: float) -> float:
    """Vega per 1.00 of volatility."""
    if T <= 0:
        return 0.0
    return float(S * np.exp(-q * T) * norm.pdf(d1(S, K, T, r, q, sigma)) * np.sqrt(T))


def bs_greeks(
    S: float,
    K: float,
    T: float,
    r: float,
    q: float,
    sigma: float,
    is_call: bool = True
) -> Greeks:
    """
    Calculate Black-Scholes Greeks including second and third order terms.

    At or past expiry all Greeks are zero.

    Returns:
        Greeks in raw units
    """
    _check_inputs(S, sigma)
    if T <= 0:
        return Greeks()

    sqrt_T = np.sqrt(T)
    d1_val = d1(S, K, T, r, q, sigma)
    d2_val = d1_val - sigma * sqrt_T
    disc_q = np.exp(-q * T)
    disc_r = np.exp(-r * T)
    pdf_d1 = norm.pdf(d1_val)
    sig_sqrt_T = sigma * sqrt_T

    gamma = disc_q * pdf_d1 / (S * sig_sqrt_T)
    vega = S * disc_q * pdf_d1 * sqrt_T
    decay = -S * disc_q * pdf_d1 * sigma / (2 * sqrt_T)

    if is_call:
        delta = disc_q * norm.cdf(d1_val)
        theta = decay - r * K * disc_r * norm.cdf(d2_val) + q * S * disc_q * norm.cdf(d1_val)
        rho = K * T * disc_r * norm.cdf(d2_val)
        carry = q * norm.cdf(d1_val)
    else:
        delta = -disc_q * norm.cdf(-d1_val)
        theta = decay + r * K * disc_r * norm.cdf(-d2_val) - q * S * disc_q * norm.cdf(-d1_val)
        rho = -K * T * disc_r * norm.cdf(-d2_val)
        carry = q * (norm.cdf(d1_val) - 1.0)

    drift_term = 2 * (r - q) * T - d2_val * sig_sqrt_T
    charm = disc_q * (carry - pdf_d1 * drift_term / (2 * T * sig_sqrt_T))
    color = -disc_q * pdf_d1 / (2 * S * T * sig_sqrt_T) * (
        2 * q * T + 1 + drift_term * d1_val / sig_sqrt_T
    )
    vanna = -disc_q * pdf_d1 * d2_val / sigma
    volga = vega * d1_val * d2_val / sigma

    price = bs_price(S, K, T, r, q, sigma, is_call)
    lambda_ = delta * S / price if price > 1e-12 else 0.0

    return Greeks(
        delta=float(delta),
        gamma=float(gamma),
        theta=float(theta),
        vega=float(vega),
        rho=float(rho),
        vanna=float(vanna),
        volga=float(volga),
        charm=float(charm),
        color=float(color),
        lambda_=float(lambda_),
    )


def future_greeks(S: float, K: float, T: float, r: float, q: float, contract_size: float) -> Greeks:
    """Greeks of the forward value (S e^{-qT} - K e^{-rT}) * contract_size."""
    if T <= 0:
        return Greeks()
    disc_q = np.exp(-q * T)
    disc_r = np.exp(-r * T)
    return Greeks(
        delta=float(disc_q * contract_size),
        theta=float((q * S * disc_q - r * K * disc_r) * contract_size),
        rho=float(K * T * disc_r * contract_size),
        charm=float(q * disc_q * contract_size),
        lambda_=float(S * disc_q / (S * disc_q - K * disc_r)) if abs(S * disc_q - K * disc_r) > 1e-12 else 0.0,
    )


# ============================================================================
# Implied volatility
# ============================================================================

def newton_implied_vol(
    target_price: float,
    price_fn: Callable[[float], float],
    vega_fn: Callable[[float], float],
    initial_guess: float = IV_INITIAL_GUESS,
    tol: float = IV_TOLERANCE,
    max_iter: int = IV_MAX_ITERATIONS,
    bounds: Tuple[float, float] = IV_BOUNDS
) -> Tuple[float, int]:
    """
    Newton-Raphson root finding on volatility.

    Args:
        target_price: Observed price to reproduce
        price_fn: Model price as a function of volatility
        vega_fn: dPrice/dVol as a function of volatility
        initial_guess: Starting volatility
        tol: Absolute price tolerance
        max_iter: Iteration budget
        bounds: Volatility is clamped to this interval after every step

    Returns:
        (implied volatility, iterations used)

    Raises:
        NumericalNonConvergenceError: Budget exhausted or vega vanished;
            carries the best estimate seen
    """
    lo, hi = bounds
    sigma = min(max(initial_guess, lo), hi)
    best_sigma, best_diff = sigma, np.inf

    for iteration in range(max_iter):
        diff = price_fn(sigma) - target_price
        if abs(diff) < best_diff:
            best_sigma, best_diff = sigma, abs(diff)
        if abs(diff) < tol:
            return sigma, iteration

        vega = vega_fn(sigma)
        if vega < 1e-12:
            logger.debug(f"Vega vanished at sigma={sigma:.6f}, stopping")
            break
        sigma = min(max(sigma - diff / vega, lo), hi)

    raise NumericalNonConvergenceError(
        f"Implied volatility did not converge (best |price diff| = {best_diff:.3e})",
        best_estimate=best_sigma,
        iterations=max_iter,
    )


def implied_volatility(
    price: float,
    S: float,
    K: float,
    T: float,
    r: float,
    q: float,
    is_call: bool = True,
    initial_guess: float = IV_INITIAL_GUESS,
    tol: float = IV_TOLERANCE,
    max_iter: int = IV_MAX_ITERATIONS
) -> Tuple[float, int]:
    """
    Black-Scholes implied volatility by Newton-Raphson.

    Returns:
        (implied volatility, iterations used)
    """
    if T <= 0:
        raise InvalidInputError("Cannot imply volatility for an expired option")
    if price <= 0:
        raise InvalidInputError(f"Option price must be positive, got {price}")

    return newton_implied_vol(
        price,
        lambda s: bs_price(S, K, T, r, q, s, is_call),
        lambda s: bs_vega(S, K, T, r, q, s),
        initial_guess=initial_guess,
        tol=tol,
        max_iter=max_iter,
    )


# ============================================================================
# Engine
# ============================================================================

class ClosedFormEngine(PricingEngine):
    """
    Analytic pricing for European options, futures and single-name
    structured products without barriers or call/put schedules.
    """

    model_type = ModelType.CLOSED_FORM

    def price(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        knocked_barriers: FrozenSet[str] = frozenset()
    ) -> ModelResult:
        start_time = time.perf_counter()
        warnings: List[str] = []
        T = expiry_years(instrument, market)
        if T <= 0:
            warnings.append(f"Instrument {instrument.instrument_id} is expired; using intrinsic value")

        if isinstance(instrument, OptionInstrument):
            unit = self._price_option(instrument, market, T)
        elif isinstance(instrument, FutureInstrument):
            unit = self._price_future(instrument, market, T)
        elif isinstance(instrument, StructuredProduct):
            unit = self._price_structured(instrument, market, T)
        else:
            raise UnsupportedModelError(
                f"Closed form cannot price {type(instrument).__name__}"
            )

        unit = check_finite(unit, "Closed-form pricing")
        elapsed = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Closed form {instrument.instrument_id}: unit value {unit:.6f}")

        return ModelResult(
            value=unit * instrument.notional,
            unit_value=unit,
            model=self.model_type,
            computation_time_ms=elapsed,
            warnings=warnings,
            diagnostics={"time_to_expiry": T},
        )

    def _price_option(self, option: OptionInstrument, market: MarketSnapshot, T: float) -> float:
        if option.exercise_style != ExerciseStyle.EUROPEAN:
            raise UnsupportedModelError(
                f"Closed form cannot price {option.exercise_style.value} exercise"
            )
        if option.barriers:
            raise UnsupportedModelError("Closed form cannot price barrier options")
        data = market.get(option.underlying)
        if T <= 0:
            _check_inputs(data.spot, data.volatility)
            return float(option_payoff(option, np.array(data.spot)))
        return bs_price(
            data.spot, option.strike, T, market.risk_free_rate,
            data.dividend_yield, data.volatility, option.is_call,
        )

    def _price_future(self, future: FutureInstrument, market: MarketSnapshot, T: float) -> float:
        data = market.get(future.underlying)
        if T <= 0:
            return (data.spot - future.trade_price) * future.contract_size
        r, q = market.risk_free_rate, data.dividend_yield
        forward_value = data.spot * np.exp(-q * T) - future.trade_price * np.exp(-r * T)
        return float(forward_value * future.contract_size)

    def _price_structured(self, product: StructuredProduct, market: MarketSnapshot, T: float) -> float:
        if product.is_basket:
            raise UnsupportedModelError("Closed form cannot price basket products")
        if product.barriers or product.call_schedule or product.put_schedule:
            raise UnsupportedModelError(
                "Closed form cannot price barrier, callable or puttable products"
            )

        symbol = product.underlying_symbols[0]
        data = market.get(symbol)
        S, sigma, q = data.spot, data.volatility, data.dividend_yield
        r = market.risk_free_rate
        _check_inputs(S, sigma)
        initial = float(initial_levels(product, market)[0])
        payoff = product.payoff

        if T <= 0:
            value = float(payoff.evaluate(np.array(S / initial)))
        elif isinstance(payoff, ParticipationPayoff):
            value = payoff.rate * bs_price(S, initial, T, r, q, sigma) / initial
        elif isinstance(payoff, LeveragedPayoff):
            value = payoff.factor * bs_price(S, initial, T, r, q, sigma) / initial
        elif isinstance(payoff, CappedPayoff):
            upper = initial * (1.0 + payoff.cap)
            value = (bs_price(S, initial, T, r, q, sigma) - bs_price(S, upper, T, r, q, sigma)) / initial
        elif isinstance(payoff, DigitalPayoff):
            value = payoff.payout * bs_digital_price(S, payoff.threshold * initial, T, r, q, sigma)
        else:
            raise UnsupportedModelError(f"No closed form for payoff {payoff.payoff_type}")

        for coupon in product.coupons:
            t = time_to_expiry(market.valuation_date, coupon.payment_date)
            if t <= 0:
                continue
            if coupon.barrier_level is None:
                value += coupon.rate * np.exp(-r * t)
            else:
                strike = coupon.barrier_level * initial
                value += coupon.rate * bs_digital_price(S, strike, t, r, q, sigma)

        if product.capital_protection is not None:
            value += product.capital_protection * np.exp(-r * max(T, 0.0))

        return float(value)
