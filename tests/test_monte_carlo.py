"""
Tests for the Monte Carlo engine.

Validates:
- Unbiasedness against the closed form (confidence interval coverage)
- Standard error over antithetic pairs
- Determinism with a fixed seed
- Barrier parity and path-dependent diagnostics
- Path budget and deadline warnings
"""

import numpy as np
import pytest
from datetime import timedelta

from structpricer.core.errors import InvalidInputError, UnsupportedModelError
from structpricer.engines.black_scholes import ClosedFormEngine
from structpricer.engines.monte_carlo import MonteCarloConfig, MonteCarloEngine, _pair_means
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import (
    BarrierFeature,
    BarrierType,
    BasketMode,
    OptionInstrument,
    StructuredProduct,
)


def _with_barrier(option: OptionInstrument, barrier_type: BarrierType, level: float) -> OptionInstrument:
    return option.model_copy(update={
        "instrument_id": f"{option.instrument_id}-{barrier_type.value}",
        "barriers": [BarrierFeature(barrier_id="B1", barrier_type=barrier_type, level=level)],
    })


class TestUnbiasedness:

    def test_confidence_interval_coverage(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        """At least 90% of independent runs cover the closed-form price."""
        exact = ClosedFormEngine().price(european_call, market).value
        covered = 0
        for seed in range(50):
            engine = MonteCarloEngine(MonteCarloConfig(num_paths=20_000, seed=seed, max_workers=1))
            result = engine.price(european_call, market)
            if abs(result.value - exact) <= result.confidence_95:
                covered += 1
        assert covered >= 45

    def test_put_close_to_closed_form(self, european_put: OptionInstrument, market: MarketSnapshot) -> None:
        exact = ClosedFormEngine().price(european_put, market).value
        result = MonteCarloEngine(MonteCarloConfig(num_paths=100_000, seed=7)).price(european_put, market)
        assert abs(result.value - exact) < 4 * result.std_error


class TestStandardError:

    def test_antithetic_error_uses_pair_means(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        # deep in the money the payoff is nearly linear, so pairs are strongly anti-correlated
        deep = european_call.model_copy(update={"strike": 60.0})
        config = dict(num_paths=20_000, num_steps=10, seed=3, max_workers=1)
        paired = MonteCarloEngine(MonteCarloConfig(antithetic=True, **config)).price(deep, market)
        independent = MonteCarloEngine(MonteCarloConfig(antithetic=False, **config)).price(deep, market)

        assert 0 < paired.std_error < 0.5 * independent.std_error
        assert paired.confidence_95 == pytest.approx(1.96 * paired.std_error)

    def test_pair_means_keep_odd_path(self) -> None:
        pv = np.array([1.0, 2.0, 3.0, 5.0, 7.0])
        # pairs (0, 3) and (1, 4); path 2 has no partner
        assert list(_pair_means(pv)) == [3.0, 4.5, 3.0]


class TestDeterminism:

    def test_same_seed_same_value(self, barrier_note: StructuredProduct, market: MarketSnapshot) -> None:
        config = dict(num_paths=10_000, num_steps=50, seed=123)
        a = MonteCarloEngine(MonteCarloConfig(max_workers=1, **config)).price(barrier_note, market)
        b = MonteCarloEngine(MonteCarloConfig(max_workers=4, **config)).price(barrier_note, market)
        # block seeds do not depend on scheduling
        assert a.value == pytest.approx(b.value, rel=1e-12)

    def test_different_seed_differs(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        a = MonteCarloEngine(MonteCarloConfig(num_paths=10_000, seed=1)).price(european_call, market)
        b = MonteCarloEngine(MonteCarloConfig(num_paths=10_000, seed=2)).price(european_call, market)
        assert a.value != b.value

    def test_seed_accessors(self) -> None:
        engine = MonteCarloEngine(MonteCarloConfig(seed=5))
        assert engine.get_seed() == 5
        engine.set_seed(9)
        assert engine.get_seed() == 9


class TestBarriers:

    def test_knock_in_plus_knock_out_near_vanilla(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        config = MonteCarloConfig(num_paths=20_000, num_steps=100, seed=11, max_workers=1)
        engine = MonteCarloEngine(config)
        out = engine.price(_with_barrier(european_call, BarrierType.DOWN_AND_OUT, 85.0), market)
        knock_in = engine.price(_with_barrier(european_call, BarrierType.DOWN_AND_IN, 85.0), market)
        exact = ClosedFormEngine().price(european_call, market).value

        # same paths and bridge draws: the two legs partition every path
        assert out.value + knock_in.value == pytest.approx(exact, abs=2 * (out.confidence_95 + knock_in.confidence_95))
        assert out.diagnostics["knock_out_probability"] == pytest.approx(
            knock_in.diagnostics["knock_in_probability"], abs=1e-12
        )

    def test_brownian_bridge_lowers_knock_out_value(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        option = _with_barrier(european_call, BarrierType.DOWN_AND_OUT, 90.0)
        base = dict(num_paths=20_000, num_steps=12, seed=3, max_workers=1)
        discrete = MonteCarloEngine(MonteCarloConfig(brownian_bridge=False, **base)).price(option, market)
        bridged = MonteCarloEngine(MonteCarloConfig(brownian_bridge=True, **base)).price(option, market)
        assert bridged.value < discrete.value

    def test_recorded_knock_out(self, barrier_note: StructuredProduct, market: MarketSnapshot) -> None:
        result = MonteCarloEngine(MonteCarloConfig(num_paths=1_000)).price(
            barrier_note, market, frozenset({"GOOGL-DAO-70"})
        )
        assert result.value == 0.0
        assert result.diagnostics["num_paths"] == 0

    def test_breached_knock_out_pays_rebate(self, barrier_note: StructuredProduct, market: MarketSnapshot) -> None:
        note = barrier_note.model_copy(update={
            "barriers": [barrier_note.barriers[0].model_copy(update={"rebate": 0.05})],
        })
        crashed = market.with_underlying("GOOGL", spot=90.0)
        result = MonteCarloEngine(MonteCarloConfig(num_paths=2_000, num_steps=20)).price(note, crashed)
        assert result.unit_value == pytest.approx(0.05)
        assert result.diagnostics["knock_out_probability"] == pytest.approx(1.0)


class TestStructured:

    def test_autocallable_diagnostics(self, autocallable_basket: StructuredProduct, market: MarketSnapshot) -> None:
        config = MonteCarloConfig(num_paths=10_000, num_steps=60, seed=42, max_workers=1)
        result = MonteCarloEngine(config).price(autocallable_basket, market)
        diag = result.diagnostics

        assert 0.0 < diag["autocall_probability"] < 1.0
        assert 0.0 <= diag["knock_in_probability"] < 1.0
        assert 0.0 < diag["expected_coupon_count"] <= 4.0
        assert result.std_error > 0
        assert result.confidence_95 == pytest.approx(1.96 * result.std_error)
        # protected at par, coupons only add
        assert result.unit_value > 0.85

    def test_worst_of_below_best_of(self, autocallable_basket: StructuredProduct, market: MarketSnapshot) -> None:
        plain = autocallable_basket.model_copy(update={
            "barriers": [], "coupons": [], "call_schedule": [], "capital_protection": None,
        })
        best = plain.model_copy(update={"basket_mode": BasketMode.BEST_OF})
        engine = MonteCarloEngine(MonteCarloConfig(num_paths=20_000, seed=42, max_workers=1))
        assert engine.price(plain, market).value < engine.price(best, market).value

    def test_put_schedule_ignored_with_warning(self, market: MarketSnapshot, barrier_note: StructuredProduct) -> None:
        from structpricer.products.schema import PutDate
        note = barrier_note.model_copy(update={
            "put_schedule": [PutDate(put_date=barrier_note.expiry_date - timedelta(days=90), put_price=0.95)],
        })
        result = MonteCarloEngine(MonteCarloConfig(num_paths=2_000, num_steps=20)).price(note, market)
        assert any("Put schedule ignored" in w for w in result.warnings)


class TestBudgets:

    def test_path_step_budget_caps_paths(self, barrier_note: StructuredProduct, market: MarketSnapshot) -> None:
        config = MonteCarloConfig(num_paths=10_000, num_steps=50, max_path_steps=100_000, max_workers=1)
        result = MonteCarloEngine(config).price(barrier_note, market)
        assert result.diagnostics["num_paths"] == 2_000
        assert any("budget" in w for w in result.warnings)

    def test_deadline_keeps_first_block(self, barrier_note: StructuredProduct, market: MarketSnapshot) -> None:
        config = MonteCarloConfig(
            num_paths=40_000, num_steps=50, block_size=2_000, deadline_seconds=0.0, max_workers=1
        )
        result = MonteCarloEngine(config).price(barrier_note, market)
        assert result.diagnostics["blocks_completed"] >= 1
        assert result.diagnostics["blocks_completed"] < result.diagnostics["blocks_planned"]
        assert any("deadline" in w for w in result.warnings)


class TestGuards:

    def test_american_unsupported(self, american_put: OptionInstrument, market: MarketSnapshot) -> None:
        with pytest.raises(UnsupportedModelError):
            MonteCarloEngine(MonteCarloConfig(num_paths=100)).price(american_put, market)

    def test_zero_vol_rejected(self, european_call: OptionInstrument, market: MarketSnapshot) -> None:
        with pytest.raises(InvalidInputError):
            MonteCarloEngine(MonteCarloConfig(num_paths=100)).price(
                european_call, market.with_underlying("AAPL", volatility=0.0)
            )

    def test_config_validated(self) -> None:
        with pytest.raises(InvalidInputError):
            MonteCarloEngine(MonteCarloConfig(num_paths=1))
