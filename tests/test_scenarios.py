"""
Tests for scenario grids and stress tests.

Validates:
- Grid shape, ordering and labels
- Zero P&L in the unshocked cell
- Directional behavior of option P&L
- Volatility floor warnings
- No hit-state side effects from shocked revaluations
"""

import pytest

from structpricer.core.errors import InvalidInputError
from structpricer.engines.base import ModelType
from structpricer.market.market_data import MarketSnapshot
from structpricer.pricers.valuation import ValuationEngine
from structpricer.products.schema import UnderlyingAsset
from structpricer.risk.scenarios import (
    ScenarioConfig,
    ScenarioEngine,
    StressScenario,
    scenario_name,
)


class TestScenarioGrid:

    def test_default_grid_shape(self, european_call, market: MarketSnapshot) -> None:
        analysis = ScenarioEngine().run_grid(european_call, market)
        assert len(analysis.results) == 21
        assert analysis.pnl_grid().shape == (7, 3)
        assert analysis.results[0].name == "Price -30%, Vol -5%"
        assert analysis.results[-1].name == "Price +30%, Vol +5%"

    def test_names(self) -> None:
        assert scenario_name(0.1, -0.05) == "Price +10%, Vol -5%"
        assert scenario_name(0.0, 0.0) == "Price +0%, Vol +0%"

    def test_unshocked_cell_has_zero_pnl(self, european_call, market: MarketSnapshot) -> None:
        analysis = ScenarioEngine().run_grid(european_call, market)
        base = next(r for r in analysis.results if r.price_shift == 0.0 and r.vol_shift == 0.0)
        assert base.pnl == pytest.approx(0.0, abs=1e-10)
        assert base.value == pytest.approx(analysis.base_value)

    def test_call_pnl_monotone_in_price_and_vol(self, european_call, market: MarketSnapshot) -> None:
        grid = ScenarioEngine().run_grid(european_call, market).pnl_grid()
        for column in grid.T:
            assert list(column) == sorted(column)
        for row in grid:
            assert list(row) == sorted(row)

    def test_worst_and_best(self, european_call, market: MarketSnapshot) -> None:
        analysis = ScenarioEngine().run_grid(european_call, market)
        assert analysis.worst_case.name == "Price -30%, Vol -5%"
        assert analysis.best_case.name == "Price +30%, Vol +5%"

    def test_shocked_levels_reported(self, european_call, market: MarketSnapshot) -> None:
        config = ScenarioConfig(price_shifts=(0.1,), vol_shifts=(0.05,))
        row = ScenarioEngine(config=config).run_grid(european_call, market).results[0]
        assert row.shocked_spots == {"AAPL": pytest.approx(110.0)}
        assert row.shocked_vols == {"AAPL": pytest.approx(0.25)}

    def test_vol_floor_warning(self, european_call, market: MarketSnapshot) -> None:
        config = ScenarioConfig(price_shifts=(0.0,), vol_shifts=(-0.25,))
        row = ScenarioEngine(config=config).run_grid(european_call, market).results[0]
        assert row.shocked_vols["AAPL"] == pytest.approx(1e-4)
        assert any("Volatility floored" in w for w in row.warnings)

    def test_monte_carlo_grid_uses_common_paths(self, barrier_note, market: MarketSnapshot, fast_options) -> None:
        config = ScenarioConfig(price_shifts=(-0.1, 0.0, 0.1), vol_shifts=(0.0,), max_workers=3)
        analysis = ScenarioEngine(config=config).run_grid(barrier_note, market, fast_options)
        assert analysis.model == ModelType.MONTE_CARLO
        assert analysis.results[1].pnl == pytest.approx(0.0, abs=1e-9)
        # performance and barrier stay fixed to the initial level as spot moves
        assert analysis.results[0].pnl < 0 < analysis.results[2].pnl
        assert analysis.results[0].value < analysis.base_value < analysis.results[2].value

    def test_unfixed_reference_level_rejected(self, barrier_note, market: MarketSnapshot, fast_options) -> None:
        unfixed = barrier_note.model_copy(update={"underlyings": [UnderlyingAsset(symbol="GOOGL")]})
        with pytest.raises(InvalidInputError):
            ScenarioEngine().run_grid(unfixed, market, fast_options)
        with pytest.raises(InvalidInputError):
            ScenarioEngine().stress_test(
                unfixed, market, [StressScenario(name="Down", underlying_shifts={"GOOGL": -0.3})], fast_options
            )

    def test_grid_does_not_record_hits(self, barrier_note, market: MarketSnapshot, fast_options) -> None:
        engine = ValuationEngine()
        config = ScenarioConfig(price_shifts=(-0.3, 0.0), vol_shifts=(0.0,))
        ScenarioEngine(engine, config).run_grid(barrier_note, market, fast_options)
        assert engine.barrier_store.hit_ids(barrier_note) == frozenset()

    def test_grid_respects_recorded_knock_out(self, barrier_note, market: MarketSnapshot, fast_options) -> None:
        engine = ValuationEngine()
        engine.valuate(barrier_note, market.with_underlying("GOOGL", spot=95.0), fast_options)
        config = ScenarioConfig(price_shifts=(0.0, 0.2), vol_shifts=(0.0,))
        analysis = ScenarioEngine(engine, config).run_grid(barrier_note, market, fast_options)
        assert analysis.base_value == pytest.approx(0.0)
        assert all(r.value == pytest.approx(0.0) for r in analysis.results)
        assert all(r.pnl_pct == 0.0 for r in analysis.results)


class TestStressTests:

    def test_per_underlying_shift(self, autocallable_basket, market: MarketSnapshot, fast_options) -> None:
        scenarios = [
            StressScenario(name="AAPL crash", underlying_shifts={"AAPL": -0.5}),
            StressScenario(name="Calm", underlying_shifts={}),
        ]
        crash, calm = ScenarioEngine().stress_test(autocallable_basket, market, scenarios, fast_options)
        assert crash.name == "AAPL crash"
        assert crash.pnl < 0
        assert calm.pnl == pytest.approx(0.0, abs=1e-9)
        assert crash.stressed_value == pytest.approx(crash.base_value + crash.pnl)

    def test_rate_and_vol_shift(self, european_call, market: MarketSnapshot) -> None:
        scenarios = [
            StressScenario(name="Rates up", rate_shift=0.02),
            StressScenario(name="Vol up", vol_shift=0.10),
        ]
        rates, vol = ScenarioEngine().stress_test(european_call, market, scenarios)
        assert rates.pnl > 0
        assert vol.pnl > 0

    def test_no_scenarios(self, european_call, market: MarketSnapshot) -> None:
        assert ScenarioEngine().stress_test(european_call, market, []) == []
