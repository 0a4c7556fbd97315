"""
Vectorised terminal payoffs shared by all engines.

Payoffs are expressed per unit of notional; callers scale by notional.
"""

from typing import FrozenSet, Sequence

import numpy as np

from structpricer.core.errors import InvalidInputError
from structpricer.engines.base import barrier_bounds, is_breached
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    BasketMode,
    FutureInstrument,
    InstrumentBase,
    OptionInstrument,
    StructuredProduct,
)


def initial_levels(instrument: InstrumentBase, market: MarketSnapshot) -> np.ndarray:
    """
    Initial reference level per underlying.

    Structured performance is measured against these, so every structured
    underlying must fix one. Options and futures pay on absolute levels and
    get the current spot as a placeholder.
    """
    levels = []
    for symbol in instrument.underlying_symbols:
        spot = market.get(symbol).spot
        initial = instrument.initial_level(symbol)
        if initial is None:
            if isinstance(instrument, StructuredProduct):
                raise InvalidInputError(
                    f"{instrument.instrument_id}: no initial level fixed for {symbol}"
                )
            initial = spot
        levels.append(initial)
    return np.array(levels, dtype=np.float64)


def basket_performance(
    product: StructuredProduct,
    spots: np.ndarray,
    initials: np.ndarray
) -> np.ndarray:
    """
    Combine per-asset performances into one basket performance.

    Args:
        product: Structured product
        spots: Prices [..., num_assets]
        initials: Initial levels [num_assets]

    Returns:
        Performance array with the asset axis removed
    """
    perf = spots / initials
    if not product.is_basket:
        return perf[..., 0]
    if product.basket_mode == BasketMode.WORST_OF:
        return perf.min(axis=-1)
    if product.basket_mode == BasketMode.BEST_OF:
        return perf.max(axis=-1)
    return perf @ product.weights


def option_payoff(option: OptionInstrument, spot: np.ndarray) -> np.ndarray:
    if option.is_call:
        return np.maximum(spot - option.strike, 0.0)
    return np.maximum(option.strike - spot, 0.0)


def terminal_payoff(
    instrument: InstrumentBase,
    spots: np.ndarray,
    initials: Sequence[float]
) -> np.ndarray:
    """
    Performance payoff at expiry, excluding coupons and capital protection.

    Args:
        instrument: Option or structured product
        spots: Terminal prices [..., num_assets]
        initials: Initial levels [num_assets]

    Returns:
        Unit payoff array with the asset axis removed
    """
    if isinstance(instrument, OptionInstrument):
        return option_payoff(instrument, spots[..., 0])
    if isinstance(instrument, StructuredProduct):
        perf = basket_performance(instrument, spots, np.asarray(initials))
        return instrument.payoff.evaluate(perf)
    if isinstance(instrument, FutureInstrument):
        return (spots[..., 0] - instrument.trade_price) * instrument.contract_size
    raise TypeError(f"No payoff for {type(instrument).__name__}")


def expired_unit_value(
    instrument: InstrumentBase,
    market: MarketSnapshot,
    knocked_barriers: FrozenSet[str] = frozenset()
) -> float:
    """
    Intrinsic unit value of an instrument at or past expiry.

    A knock-out breached at the current spot pays its rebate; the
    performance payoff needs some knock-in to be breached now or already
    recorded as hit.
    """
    spots = np.array([market.get(s).spot for s in instrument.underlying_symbols])
    symbols = list(instrument.underlying_symbols)
    has_knock_in = False
    knocked_in = False
    for barrier in instrument.barrier_features:
        lower, upper = barrier_bounds(instrument, barrier, market)
        spot = spots[symbols.index(instrument.barrier_symbol(barrier))]
        breached = bool(is_breached(np.array(spot), lower, upper))
        if barrier.barrier_type.is_knock_out and breached:
            return barrier.rebate
        if barrier.barrier_type.is_knock_in:
            has_knock_in = True
            knocked_in = knocked_in or breached or barrier.barrier_id in knocked_barriers

    payoff = float(terminal_payoff(instrument, spots[None, :], initial_levels(instrument, market))[0])
    if has_knock_in and not knocked_in:
        payoff = 0.0
    if isinstance(instrument, StructuredProduct):
        payoff += instrument.capital_protection or 0.0
    return payoff
