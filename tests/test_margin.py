"""
Tests for SPAN-style margin.

Validates:
- Linear scenario P&L for bare underlying positions
- Full revaluation of known instruments
- Initial/maintenance aggregation rules
- Short hedge credit
- Missing data errors
"""

import pytest

from structpricer.core.errors import InvalidInputError, MarketDataUnavailableError
from structpricer.market.market_data import MarketSnapshot
from structpricer.risk.margin import (
    MarginCalculator,
    MarginPosition,
    PositionSide,
    SpanScenario,
)


class TestLinearPositions:

    def test_long_underlying(self, market: MarketSnapshot) -> None:
        position = MarginPosition("AAPL-STOCK", 100, underlying_symbol="AAPL")
        result = MarginCalculator().calculate([position], market)

        assert result.scenario_pnl == pytest.approx({"base": 0.0, "up15": 1500.0, "down15": -1500.0})
        assert result.worst_scenario == "down15"
        assert result.span_margin == pytest.approx(1500.0)

        pm = result.position_margins[0]
        assert pm.notional == pytest.approx(10_000.0)
        assert pm.initial_margin == pytest.approx(10_000 * 0.15 * 1.2)
        assert pm.maintenance_margin == pytest.approx(10_000 * 0.10 * 1.2)
        assert pm.risk_contribution == pytest.approx(2_000.0)
        assert pm.hedge_credit == 0.0

        assert result.initial_margin == pytest.approx(1_800.0)
        assert result.maintenance_margin == pytest.approx(1_200.0)

    def test_short_gets_hedge_credit(self, market: MarketSnapshot) -> None:
        position = MarginPosition("AAPL-STOCK", 100, PositionSide.SHORT, underlying_symbol="AAPL")
        result = MarginCalculator().calculate([position], market)
        assert result.worst_scenario == "up15"
        assert result.position_margins[0].quantity == -100
        assert result.position_margins[0].hedge_credit == pytest.approx(0.1 * 1_800.0)

    def test_offsetting_positions_have_no_span(self, market: MarketSnapshot) -> None:
        positions = [
            MarginPosition("A", 100, PositionSide.LONG, underlying_symbol="AAPL"),
            MarginPosition("B", 100, PositionSide.SHORT, underlying_symbol="AAPL"),
        ]
        result = MarginCalculator().calculate(positions, market)
        assert result.span_margin == pytest.approx(0.0)
        # position add-ons still apply
        assert result.initial_margin == pytest.approx(2 * 1_800.0)

    def test_span_dominates_with_severe_scenario(self, market: MarketSnapshot) -> None:
        position = MarginPosition("AAPL-STOCK", 100, underlying_symbol="AAPL")
        scenarios = [SpanScenario("crash", -0.5), SpanScenario("flat", 0.0)]
        result = MarginCalculator().calculate([position], market, scenarios=scenarios)
        assert result.worst_scenario == "crash"
        assert result.span_margin == pytest.approx(5_000.0)
        assert result.initial_margin == pytest.approx(5_000.0)
        assert result.maintenance_margin == pytest.approx(5_000.0 * 10 / 15)


class TestRevaluedPositions:

    def test_long_call_revalued(self, european_call, market: MarketSnapshot) -> None:
        position = MarginPosition(european_call.instrument_id, 10)
        result = MarginCalculator().calculate(
            [position], market, instruments={european_call.instrument_id: european_call}
        )
        pnl = result.position_margins[0].scenario_pnl
        assert result.position_margins[0].underlying_symbol == "AAPL"
        assert pnl["base"] == pytest.approx(0.0)
        assert pnl["up15"] > 0
        assert pnl["down15"] < 0
        # convexity: the call loses less than the linear exposure
        assert abs(pnl["down15"]) < 10 * 100 * 0.15

    def test_time_decay_scenario(self, european_call, market: MarketSnapshot) -> None:
        scenarios = [SpanScenario("decay", 0.0, 0.0, 30)]
        result = MarginCalculator().calculate(
            [MarginPosition(european_call.instrument_id, 1)],
            market,
            instruments={european_call.instrument_id: european_call},
            scenarios=scenarios,
        )
        assert result.scenario_pnl["decay"] < 0
        assert result.span_margin == pytest.approx(-result.scenario_pnl["decay"])

    def test_to_dict(self, market: MarketSnapshot) -> None:
        result = MarginCalculator().calculate([MarginPosition("X", 1, underlying_symbol="AAPL")], market)
        data = result.to_dict()
        assert data["worst_scenario"] == "down15"
        assert data["position_margins"][0]["instrument_id"] == "X"


class TestMarginErrors:

    def test_unknown_instrument_without_symbol(self, market: MarketSnapshot) -> None:
        with pytest.raises(InvalidInputError):
            MarginCalculator().calculate([MarginPosition("NOPE", 1)], market)

    def test_missing_underlying_data(self, market: MarketSnapshot) -> None:
        with pytest.raises(MarketDataUnavailableError):
            MarginCalculator().calculate([MarginPosition("TSLA-STOCK", 1, underlying_symbol="TSLA")], market)
