"""
Shared pytest fixtures for structpricer tests.

Provides a standard snapshot and a handful of instruments covering every
variant and model path.
"""

import pytest
from datetime import date, datetime, timedelta

from structpricer.engines.binomial import BinomialConfig
from structpricer.engines.monte_carlo import MonteCarloConfig
from structpricer.market.market_data import MarketSnapshot, UnderlyingMarketData
from structpricer.pricers.valuation import ValuationOptions
from structpricer.products.schema import (
    BarrierFeature,
    BarrierType,
    BasketMode,
    CallDate,
    CouponPayment,
    ExerciseStyle,
    FutureInstrument,
    OptionInstrument,
    OptionType,
    StructuredProduct,
    UnderlyingAsset,
)


VALUATION_DATE = date(2024, 1, 15)


@pytest.fixture
def valuation_date() -> date:
    """Standard valuation date for tests."""
    return VALUATION_DATE


@pytest.fixture
def expiry_date(valuation_date: date) -> date:
    """One year (366 days, 2024 is a leap year) after valuation."""
    return valuation_date + timedelta(days=366)


@pytest.fixture
def market(valuation_date: date) -> MarketSnapshot:
    """Snapshot with two uncorrelated-by-default names and a correlated pair."""
    return MarketSnapshot(
        as_of=datetime.combine(valuation_date, datetime.min.time()),
        underlyings={
            "AAPL": UnderlyingMarketData(
                symbol="AAPL",
                spot=100.0,
                volatility=0.20,
                iv_history=(0.18, 0.22, 0.25, 0.30, 0.19, 0.21, 0.35, 0.28),
                vol_term_structure=((0.25, 0.19), (0.5, 0.20), (1.0, 0.22)),
            ),
            "MSFT": UnderlyingMarketData(symbol="MSFT", spot=380.0, volatility=0.28, dividend_yield=0.01),
            "GOOGL": UnderlyingMarketData(symbol="GOOGL", spot=140.0, volatility=0.30),
        },
        risk_free_rate=0.05,
        correlations={"AAPL_MSFT": 0.7, "AAPL_GOOGL": 0.6, "GOOGL_MSFT": 0.65},
    )


@pytest.fixture
def fast_options() -> ValuationOptions:
    """Valuation options sized for quick tests."""
    return ValuationOptions(
        mc=MonteCarloConfig(num_paths=10_000, num_steps=50, seed=42, block_size=5_000, max_workers=1),
        binomial=BinomialConfig(num_steps=200),
    )


@pytest.fixture
def european_call(valuation_date: date, expiry_date: date) -> OptionInstrument:
    return OptionInstrument(
        instrument_id="OPT-CALL-001",
        issue_date=valuation_date - timedelta(days=30),
        expiry_date=expiry_date,
        underlying="AAPL",
        strike=100.0,
        option_type=OptionType.CALL,
    )


@pytest.fixture
def european_put(valuation_date: date, expiry_date: date) -> OptionInstrument:
    return OptionInstrument(
        instrument_id="OPT-PUT-001",
        issue_date=valuation_date - timedelta(days=30),
        expiry_date=expiry_date,
        underlying="AAPL",
        strike=100.0,
        option_type=OptionType.PUT,
    )


@pytest.fixture
def american_put(valuation_date: date, expiry_date: date) -> OptionInstrument:
    return OptionInstrument(
        instrument_id="OPT-AMPUT-001",
        issue_date=valuation_date - timedelta(days=30),
        expiry_date=expiry_date,
        underlying="AAPL",
        strike=100.0,
        option_type=OptionType.PUT,
        exercise_style=ExerciseStyle.AMERICAN,
    )


@pytest.fixture
def future(valuation_date: date, expiry_date: date) -> FutureInstrument:
    return FutureInstrument(
        instrument_id="FUT-001",
        issue_date=valuation_date - timedelta(days=30),
        expiry_date=expiry_date,
        underlying="AAPL",
        trade_price=98.0,
        contract_size=100.0,
    )


@pytest.fixture
def barrier_note(valuation_date: date, expiry_date: date) -> StructuredProduct:
    """
    Down-and-out participation note on a name fixed at 140.

    Barrier at 70% of the initial level, i.e. 98.
    """
    return StructuredProduct(
        instrument_id="SP-DAO-001",
        issue_date=valuation_date - timedelta(days=180),
        expiry_date=expiry_date,
        notional=1_000.0,
        underlyings=[UnderlyingAsset(symbol="GOOGL", initial_level=140.0)],
        barriers=[
            BarrierFeature(
                barrier_id="GOOGL-DAO-70",
                barrier_type=BarrierType.DOWN_AND_OUT,
                level=0.70,
            )
        ],
        capital_protection=0.9,
    )


@pytest.fixture
def autocallable_basket(valuation_date: date, expiry_date: date) -> StructuredProduct:
    """Worst-of basket with quarterly coupons, autocalls and a 60% knock-in."""
    quarters = [valuation_date + timedelta(days=91 * i) for i in range(1, 4)] + [expiry_date]
    return StructuredProduct(
        instrument_id="SP-WO-001",
        issue_date=valuation_date - timedelta(days=1),
        expiry_date=expiry_date,
        notional=1_000_000.0,
        underlyings=[
            UnderlyingAsset(symbol="AAPL", weight=50.0, initial_level=100.0),
            UnderlyingAsset(symbol="MSFT", weight=50.0, initial_level=380.0),
        ],
        basket_mode=BasketMode.WORST_OF,
        barriers=[
            BarrierFeature(
                barrier_id="WO-KI-60",
                barrier_type=BarrierType.DOWN_AND_IN,
                level=0.60,
                underlying_symbol="AAPL",
            )
        ],
        coupons=[CouponPayment(payment_date=d, rate=0.02, barrier_level=0.8) for d in quarters],
        call_schedule=[CallDate(call_date=d, trigger_level=1.0) for d in quarters[:-1]],
        capital_protection=1.0,
    )
