"""Tests for instrument schema validation."""

import json
import pytest
from datetime import date
from pathlib import Path

import numpy as np

from structpricer.products.schema import (
    BarrierFeature,
    BarrierType,
    BarrierDirection,
    CallDate,
    CappedPayoff,
    CouponPayment,
    DigitalPayoff,
    ExerciseStyle,
    FutureInstrument,
    InstrumentBase,
    LeveragedPayoff,
    OptionInstrument,
    ParticipationPayoff,
    StructuredProduct,
    UnderlyingAsset,
    load_instrument,
    validate_instrument_json,
)


EXAMPLES_DIR = Path(__file__).parent.parent / "examples"


class TestBarrierType:

    @pytest.mark.parametrize("barrier_type,direction,knock_out", [
        (BarrierType.UP_AND_OUT, BarrierDirection.UP, True),
        (BarrierType.UP_AND_IN, BarrierDirection.UP, False),
        (BarrierType.DOWN_AND_OUT, BarrierDirection.DOWN, True),
        (BarrierType.KNOCK_IN, BarrierDirection.DOWN, False),
        (BarrierType.DOUBLE_KNOCK_OUT, BarrierDirection.DOUBLE, True),
    ])
    def test_direction_and_kind(self, barrier_type, direction, knock_out) -> None:
        assert barrier_type.direction == direction
        assert barrier_type.is_knock_out == knock_out
        assert barrier_type.is_knock_in != knock_out


class TestBarrierFeature:

    def test_double_requires_upper(self) -> None:
        with pytest.raises(ValueError, match="requires upper_level"):
            BarrierFeature(barrier_id="B1", barrier_type=BarrierType.DOUBLE_KNOCK_OUT, level=0.8)

    def test_double_upper_must_exceed_lower(self) -> None:
        with pytest.raises(ValueError, match="must exceed"):
            BarrierFeature(
                barrier_id="B1", barrier_type=BarrierType.DOUBLE_KNOCK_OUT, level=1.2, upper_level=0.8
            )

    def test_upper_only_for_double(self) -> None:
        with pytest.raises(ValueError, match="only applies"):
            BarrierFeature(barrier_id="B1", barrier_type=BarrierType.UP_AND_OUT, level=1.2, upper_level=1.5)

    def test_recovery_rules(self) -> None:
        ko = BarrierFeature(barrier_id="KO", barrier_type=BarrierType.DOWN_AND_OUT, level=0.7)
        ki = BarrierFeature(barrier_id="KI", barrier_type=BarrierType.DOWN_AND_IN, level=0.7)
        eu_ko = BarrierFeature(
            barrier_id="EKO", barrier_type=BarrierType.DOWN_AND_OUT, level=0.7,
            observation_style="european",
        )
        assert not ko.allows_recovery
        assert ki.allows_recovery
        assert eu_ko.allows_recovery

    def test_observation_dates_sorted(self) -> None:
        with pytest.raises(ValueError, match="sorted"):
            BarrierFeature(
                barrier_id="B1", barrier_type=BarrierType.DOWN_AND_OUT, level=0.7,
                observation_dates=[date(2024, 6, 1), date(2024, 3, 1)],
            )


class TestPayoffs:

    def test_payoff_variants(self) -> None:
        perf = np.array([0.8, 1.0, 1.3, 1.8])
        assert np.allclose(ParticipationPayoff(rate=0.5).evaluate(perf), [0, 0, 0.15, 0.4])
        assert np.allclose(LeveragedPayoff(factor=2.0).evaluate(perf), [0, 0, 0.6, 1.6])
        assert np.allclose(CappedPayoff(cap=0.5).evaluate(perf), [0, 0, 0.3, 0.5])
        assert np.allclose(DigitalPayoff(threshold=1.0, payout=0.1).evaluate(perf), [0, 0.1, 0.1, 0.1])

    def test_discriminated_payoff(self, valuation_date: date, expiry_date: date) -> None:
        product = StructuredProduct(
            instrument_id="SP",
            issue_date=valuation_date,
            expiry_date=expiry_date,
            underlyings=[{"symbol": "AAPL"}],
            payoff={"payoff_type": "capped", "cap": 0.3},
        )
        assert isinstance(product.payoff, CappedPayoff)

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            ParticipationPayoff(rate=1.0, floor=0.1)


class TestStructuredProduct:

    def test_weights_must_sum_to_100(self, valuation_date: date, expiry_date: date) -> None:
        with pytest.raises(ValueError, match="sum to 100"):
            StructuredProduct(
                instrument_id="SP",
                issue_date=valuation_date,
                expiry_date=expiry_date,
                underlyings=[
                    UnderlyingAsset(symbol="AAPL", weight=60),
                    UnderlyingAsset(symbol="MSFT", weight=30),
                ],
            )

    def test_weights_within_tolerance(self, valuation_date: date, expiry_date: date) -> None:
        product = StructuredProduct(
            instrument_id="SP",
            issue_date=valuation_date,
            expiry_date=expiry_date,
            underlyings=[
                UnderlyingAsset(symbol="AAPL", weight=33.334),
                UnderlyingAsset(symbol="MSFT", weight=33.333),
                UnderlyingAsset(symbol="GOOGL", weight=33.333),
            ],
        )
        assert product.is_basket
        assert product.weights.sum() == pytest.approx(1.0)

    def test_duplicate_symbols_rejected(self, valuation_date: date, expiry_date: date) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            StructuredProduct(
                instrument_id="SP",
                issue_date=valuation_date,
                expiry_date=expiry_date,
                underlyings=[
                    UnderlyingAsset(symbol="AAPL", weight=50),
                    UnderlyingAsset(symbol="AAPL", weight=50),
                ],
            )

    def test_schedule_must_increase(self, valuation_date: date, expiry_date: date) -> None:
        with pytest.raises(ValueError, match="strictly increasing"):
            StructuredProduct(
                instrument_id="SP",
                issue_date=valuation_date,
                expiry_date=expiry_date,
                underlyings=[UnderlyingAsset(symbol="AAPL")],
                coupons=[
                    CouponPayment(payment_date=date(2024, 9, 1), rate=0.02),
                    CouponPayment(payment_date=date(2024, 6, 1), rate=0.02),
                ],
            )

    def test_schedule_inside_life(self, valuation_date: date, expiry_date: date) -> None:
        with pytest.raises(ValueError, match="outside"):
            StructuredProduct(
                instrument_id="SP",
                issue_date=valuation_date,
                expiry_date=expiry_date,
                underlyings=[UnderlyingAsset(symbol="AAPL")],
                call_schedule=[CallDate(call_date=date(2030, 1, 1))],
            )

    def test_barrier_symbol_must_be_underlying(self, valuation_date: date, expiry_date: date) -> None:
        with pytest.raises(ValueError, match="unknown underlying"):
            StructuredProduct(
                instrument_id="SP",
                issue_date=valuation_date,
                expiry_date=expiry_date,
                underlyings=[UnderlyingAsset(symbol="AAPL")],
                barriers=[BarrierFeature(
                    barrier_id="B", barrier_type=BarrierType.DOWN_AND_IN, level=0.6,
                    underlying_symbol="TSLA",
                )],
            )

    def test_is_frozen(self, barrier_note: StructuredProduct) -> None:
        with pytest.raises(ValueError):
            barrier_note.notional = 5.0


class TestOptionInstrument:

    def test_expiry_after_issue(self) -> None:
        with pytest.raises(ValueError, match="must be after"):
            OptionInstrument(
                instrument_id="O", issue_date=date(2024, 1, 1), expiry_date=date(2023, 1, 1),
                underlying="AAPL", strike=100, option_type="call",
            )

    def test_bermudan_requires_dates(self) -> None:
        with pytest.raises(ValueError, match="exercise_dates required"):
            OptionInstrument(
                instrument_id="O", issue_date=date(2024, 1, 1), expiry_date=date(2025, 1, 1),
                underlying="AAPL", strike=100, option_type="put", exercise_style=ExerciseStyle.BERMUDAN,
            )

    def test_duplicate_barrier_ids(self) -> None:
        barrier = BarrierFeature(barrier_id="B", barrier_type=BarrierType.UP_AND_OUT, level=130)
        with pytest.raises(ValueError, match="Duplicate barrier_id"):
            OptionInstrument(
                instrument_id="O", issue_date=date(2024, 1, 1), expiry_date=date(2025, 1, 1),
                underlying="AAPL", strike=100, option_type="call", barriers=[barrier, barrier],
            )


class TestInstrumentBase:

    def test_base_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            InstrumentBase(instrument_id="X", issue_date=date(2024, 1, 1), expiry_date=date(2025, 1, 1))

    @pytest.mark.parametrize("fixture,symbols", [
        ("european_call", ("AAPL",)),
        ("future", ("AAPL",)),
        ("autocallable_basket", ("AAPL", "MSFT")),
    ])
    def test_variants_declare_symbols(self, request, fixture, symbols) -> None:
        assert request.getfixturevalue(fixture).underlying_symbols == symbols


class TestInstrumentJson:

    def test_dispatch_on_instrument_type(self) -> None:
        data = {
            "instrument_type": "future",
            "instrument_id": "F1",
            "issue_date": "2024-01-01",
            "expiry_date": "2024-12-20",
            "underlying": "AAPL",
            "trade_price": 180.0,
        }
        instrument = validate_instrument_json(data)
        assert isinstance(instrument, FutureInstrument)
        assert instrument.contract_size == 1.0

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            validate_instrument_json({"instrument_type": "swap", "instrument_id": "X"})

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_instrument(tmp_path / "missing.json")

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "option.json"
        path.write_text(json.dumps({
            "instrument_type": "option",
            "instrument_id": "O1",
            "issue_date": "2024-01-01",
            "expiry_date": "2025-01-01",
            "underlying": "AAPL",
            "strike": 100,
            "option_type": "put",
            "exercise_style": "american",
        }))
        option = load_instrument(path)
        assert isinstance(option, OptionInstrument)
        assert not option.is_call

    @pytest.mark.parametrize("name", [
        "autocall_worstof_basket.json",
        "barrier_note_single.json",
        "american_put.json",
    ])
    def test_bundled_examples_load(self, name: str) -> None:
        instrument = load_instrument(EXAMPLES_DIR / name)
        assert instrument.instrument_id
