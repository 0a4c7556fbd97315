"""
Strict Pydantic schema for instruments.

An Instrument is a closed tagged variant over options, futures and
structured products, discriminated by ``instrument_type``. All models are
frozen: the engine treats instruments as read-only inputs. Barrier
hit-state on a BarrierFeature is only the initial state loaded from
persistence; live hit-state is owned by the barrier state store.
"""

from abc import abstractmethod
from datetime import date
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union
from pathlib import Path
import json

import numpy as np
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


# Levels below this magnitude are fractions of the initial reference level
FRACTIONAL_LEVEL_CUTOFF = 10.0

BASKET_WEIGHT_TOTAL = 100.0
BASKET_WEIGHT_TOLERANCE = 0.01


# ============================================================================
# Enums for strict typing
# ============================================================================

class InstrumentType(str, Enum):
    """Instrument variant tag."""
    OPTION = "option"
    FUTURE = "future"
    STRUCTURED_PRODUCT = "structured_product"


class OptionType(str, Enum):
    """Option type."""
    CALL = "call"
    PUT = "put"


class ExerciseStyle(str, Enum):
    """Option exercise style."""
    EUROPEAN = "european"
    AMERICAN = "american"
    BERMUDAN = "bermudan"


class BarrierDirection(str, Enum):
    """Direction in which a barrier is monitored."""
    UP = "up"
    DOWN = "down"
    DOUBLE = "double"


class BarrierType(str, Enum):
    """
    Barrier variants.

    KNOCK_IN / KNOCK_OUT are generic barriers monitored downward.
    DOUBLE_* barriers use ``level`` as the lower and ``upper_level`` as the
    upper bound.
    """
    UP_AND_IN = "UP_AND_IN"
    UP_AND_OUT = "UP_AND_OUT"
    DOWN_AND_IN = "DOWN_AND_IN"
    DOWN_AND_OUT = "DOWN_AND_OUT"
    KNOCK_IN = "KNOCK_IN"
    KNOCK_OUT = "KNOCK_OUT"
    DOUBLE_KNOCK_IN = "DOUBLE_KNOCK_IN"
    DOUBLE_KNOCK_OUT = "DOUBLE_KNOCK_OUT"

    @property
    def direction(self) -> BarrierDirection:
        if self.value.startswith("UP_"):
            return BarrierDirection.UP
        if self.value.startswith("DOUBLE_"):
            return BarrierDirection.DOUBLE
        return BarrierDirection.DOWN

    @property
    def is_knock_out(self) -> bool:
        return self.value.endswith("OUT")

    @property
    def is_knock_in(self) -> bool:
        return self.value.endswith("IN")


class ObservationStyle(str, Enum):
    """AMERICAN barriers are monitored continuously, EUROPEAN only on dates."""
    AMERICAN = "american"
    EUROPEAN = "european"


class ObservationFrequency(str, Enum):
    """Nominal observation frequency of a barrier."""
    CONTINUOUS = "continuous"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    MATURITY_ONLY = "maturity_only"


class BasketMode(str, Enum):
    """How per-asset performances combine into one basket performance."""
    WEIGHTED = "weighted"
    WORST_OF = "worst_of"
    BEST_OF = "best_of"


# ============================================================================
# Payoff variants
# ============================================================================

class ParticipationPayoff(BaseModel):
    """max(0, rate * (perf - 1))."""
    payoff_type: Literal["participation"] = "participation"
    rate: float = Field(default=1.0, ge=0, description="Participation rate")

    def evaluate(self, performance: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, self.rate * (performance - 1.0))

    class Config:
        extra = "forbid"
        frozen = True


class LeveragedPayoff(BaseModel):
    """max(0, factor * (perf - 1))."""
    payoff_type: Literal["leveraged"] = "leveraged"
    factor: float = Field(default=2.0, gt=0, description="Leverage factor")

    def evaluate(self, performance: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, self.factor * (performance - 1.0))

    class Config:
        extra = "forbid"
        frozen = True


class CappedPayoff(BaseModel):
    """min(cap, max(0, perf - 1))."""
    payoff_type: Literal["capped"] = "capped"
    cap: float = Field(default=0.5, gt=0, description="Maximum return")

    def evaluate(self, performance: np.ndarray) -> np.ndarray:
        return np.minimum(self.cap, np.maximum(0.0, performance - 1.0))

    class Config:
        extra = "forbid"
        frozen = True


class DigitalPayoff(BaseModel):
    """Pays ``payout`` when perf >= threshold, else nothing."""
    payoff_type: Literal["digital"] = "digital"
    threshold: float = Field(default=1.0, gt=0)
    payout: float = Field(default=0.1, ge=0)

    def evaluate(self, performance: np.ndarray) -> np.ndarray:
        return np.where(performance >= self.threshold, self.payout, 0.0)

    class Config:
        extra = "forbid"
        frozen = True


Payoff = Annotated[
    Union[ParticipationPayoff, LeveragedPayoff, CappedPayoff, DigitalPayoff],
    Field(discriminator="payoff_type"),
]


# ============================================================================
# Sub-schemas for nested structures
# ============================================================================

class UnderlyingAsset(BaseModel):
    """A basket constituent."""
    symbol: str = Field(..., min_length=1)
    weight: float = Field(default=100.0, ge=0, le=100)
    initial_level: Optional[float] = Field(
        default=None, gt=0,
        description="Initial reference level; required before the product can be valued"
    )

    class Config:
        extra = "forbid"
        frozen = True


class BarrierFeature(BaseModel):
    """A barrier level whose crossing changes or extinguishes the payoff."""
    barrier_id: str = Field(..., min_length=1)
    barrier_type: BarrierType
    level: float = Field(
        ..., gt=0,
        description="Below 10: fraction of initial level, otherwise absolute"
    )
    upper_level: Optional[float] = Field(default=None, gt=0)
    underlying_symbol: Optional[str] = None
    observation_style: ObservationStyle = ObservationStyle.AMERICAN
    observation_frequency: ObservationFrequency = ObservationFrequency.CONTINUOUS
    observation_dates: List[date] = Field(default_factory=list)
    rebate: float = Field(default=0.0, ge=0, description="Paid on knock-out, fraction of notional")

    # Initial hit-state as loaded from persistence
    has_been_hit: bool = False
    hit_date: Optional[date] = None
    hit_level: Optional[float] = None

    @model_validator(mode='after')
    def validate_barrier(self) -> 'BarrierFeature':
        """Double barriers need a consistent upper level."""
        if self.barrier_type.direction == BarrierDirection.DOUBLE:
            if self.upper_level is None:
                raise ValueError(f"{self.barrier_type.value} barrier requires upper_level")
            same_scale = (self.level < FRACTIONAL_LEVEL_CUTOFF) == (
                self.upper_level < FRACTIONAL_LEVEL_CUTOFF
            )
            if same_scale and self.upper_level <= self.level:
                raise ValueError(
                    f"upper_level {self.upper_level} must exceed level {self.level}"
                )
        elif self.upper_level is not None:
            raise ValueError("upper_level only applies to double barriers")
        if sorted(self.observation_dates) != list(self.observation_dates):
            raise ValueError("observation_dates must be sorted")
        return self

    @property
    def is_european(self) -> bool:
        return self.observation_style == ObservationStyle.EUROPEAN

    @property
    def allows_recovery(self) -> bool:
        """European barriers and knock-in types can leave the hit state."""
        return self.is_european or not self.barrier_type.is_knock_out

    class Config:
        extra = "forbid"
        frozen = True


class CouponPayment(BaseModel):
    """Conditional coupon, paid as ``rate * notional``."""
    payment_date: date
    rate: float = Field(..., ge=0)
    barrier_level: Optional[float] = Field(
        default=None, gt=0,
        description="Performance required to pay, None for unconditional"
    )

    class Config:
        extra = "forbid"
        frozen = True


class CallDate(BaseModel):
    """Autocall observation: redeem at ``call_price`` if perf >= trigger."""
    call_date: date
    trigger_level: float = Field(default=1.0, gt=0)
    call_price: float = Field(default=1.0, gt=0, description="Fraction of notional")

    class Config:
        extra = "forbid"
        frozen = True


class PutDate(BaseModel):
    """Holder may redeem early at ``put_price``."""
    put_date: date
    put_price: float = Field(..., gt=0, description="Fraction of notional")

    class Config:
        extra = "forbid"
        frozen = True


# ============================================================================
# Instrument variants
# ============================================================================

class InstrumentBase(BaseModel):
    """Fields common to every instrument."""
    instrument_id: str = Field(..., min_length=1)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    issue_date: date
    expiry_date: date
    notional: float = Field(default=1.0, gt=0)

    @model_validator(mode='after')
    def validate_dates(self) -> 'InstrumentBase':
        """Expiry must be strictly after issue."""
        if self.expiry_date <= self.issue_date:
            raise ValueError(
                f"expiry_date {self.expiry_date} must be after issue_date {self.issue_date}"
            )
        return self

    @property
    @abstractmethod
    def underlying_symbols(self) -> Tuple[str, ...]:
        """Symbols the instrument is written on, in definition order."""

    @property
    def barrier_features(self) -> Tuple[BarrierFeature, ...]:
        return ()

    def initial_level(self, symbol: str) -> Optional[float]:
        """Initial reference level of an underlying, if the instrument fixes one."""
        return None

    def barrier_symbol(self, barrier: BarrierFeature) -> str:
        return barrier.underlying_symbol or self.underlying_symbols[0]

    class Config:
        extra = "forbid"
        frozen = True


def _check_barrier_symbols(barriers: List[BarrierFeature], symbols: Tuple[str, ...]) -> None:
    seen = set()
    for barrier in barriers:
        if barrier.barrier_id in seen:
            raise ValueError(f"Duplicate barrier_id '{barrier.barrier_id}'")
        seen.add(barrier.barrier_id)
        if barrier.underlying_symbol is not None and barrier.underlying_symbol not in symbols:
            raise ValueError(
                f"Barrier '{barrier.barrier_id}' references unknown underlying "
                f"'{barrier.underlying_symbol}'"
            )


class OptionInstrument(InstrumentBase):
    """Vanilla or barrier option on a single underlying."""
    instrument_type: Literal["option"] = "option"
    underlying: str = Field(..., min_length=1)
    strike: float = Field(..., gt=0)
    option_type: OptionType
    exercise_style: ExerciseStyle = ExerciseStyle.EUROPEAN
    exercise_dates: List[date] = Field(default_factory=list)
    barriers: List[BarrierFeature] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_option(self) -> 'OptionInstrument':
        """Bermudan options need exercise dates inside the option's life."""
        if self.exercise_style == ExerciseStyle.BERMUDAN and not self.exercise_dates:
            raise ValueError("exercise_dates required for bermudan exercise")
        for d in self.exercise_dates:
            if d > self.expiry_date:
                raise ValueError(f"exercise date {d} is after expiry_date")
        _check_barrier_symbols(self.barriers, self.underlying_symbols)
        return self

    @property
    def underlying_symbols(self) -> Tuple[str, ...]:
        return (self.underlying,)

    @property
    def barrier_features(self) -> Tuple[BarrierFeature, ...]:
        return tuple(self.barriers)

    @property
    def is_call(self) -> bool:
        return self.option_type == OptionType.CALL


class FutureInstrument(InstrumentBase):
    """Futures position valued against its trade price."""
    instrument_type: Literal["future"] = "future"
    underlying: str = Field(..., min_length=1)
    trade_price: float = Field(..., gt=0)
    contract_size: float = Field(default=1.0, gt=0)

    @property
    def underlying_symbols(self) -> Tuple[str, ...]:
        return (self.underlying,)


class StructuredProduct(InstrumentBase):
    """
    Structured note on one underlying or a basket.

    Payoff is evaluated on performance = final / initial (basket
    performance for several underlyings), optionally with barrier,
    coupon, call and put features and capital protection.
    """
    instrument_type: Literal["structured_product"] = "structured_product"
    underlyings: List[UnderlyingAsset] = Field(..., min_length=1)
    basket_mode: BasketMode = BasketMode.WEIGHTED
    payoff: Payoff = Field(default_factory=ParticipationPayoff)
    barriers: List[BarrierFeature] = Field(default_factory=list)
    coupons: List[CouponPayment] = Field(default_factory=list)
    call_schedule: List[CallDate] = Field(default_factory=list)
    put_schedule: List[PutDate] = Field(default_factory=list)
    capital_protection: Optional[float] = Field(
        default=None, ge=0, le=2.0,
        description="Redemption at maturity as fraction of notional"
    )

    @field_validator('underlyings')
    @classmethod
    def validate_weights(cls, v: List[UnderlyingAsset]) -> List[UnderlyingAsset]:
        """Basket weights must be unique per symbol and sum to 100."""
        symbols = [u.symbol for u in v]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"Duplicate underlying symbols: {symbols}")
        if len(v) > 1:
            total = sum(u.weight for u in v)
            if abs(total - BASKET_WEIGHT_TOTAL) > BASKET_WEIGHT_TOLERANCE:
                raise ValueError(f"Basket weights must sum to 100, got {total}")
        return v

    @model_validator(mode='after')
    def validate_schedules(self) -> 'StructuredProduct':
        """Schedules must be ordered and fall within the product's life."""
        schedules = {
            "coupons": [c.payment_date for c in self.coupons],
            "call_schedule": [c.call_date for c in self.call_schedule],
            "put_schedule": [p.put_date for p in self.put_schedule],
        }
        for name, dates in schedules.items():
            for i in range(1, len(dates)):
                if dates[i] <= dates[i - 1]:
                    raise ValueError(f"{name} dates must be strictly increasing")
            for d in dates:
                if d <= self.issue_date or d > self.expiry_date:
                    raise ValueError(f"{name} date {d} outside ({self.issue_date}, {self.expiry_date}]")
        _check_barrier_symbols(self.barriers, self.underlying_symbols)
        return self

    @property
    def underlying_symbols(self) -> Tuple[str, ...]:
        return tuple(u.symbol for u in self.underlyings)

    @property
    def barrier_features(self) -> Tuple[BarrierFeature, ...]:
        return tuple(self.barriers)

    @property
    def is_basket(self) -> bool:
        return len(self.underlyings) > 1

    @property
    def weights(self) -> np.ndarray:
        """Normalised weights (sum to 1)."""
        if not self.is_basket:
            return np.array([1.0])
        w = np.array([u.weight for u in self.underlyings], dtype=np.float64)
        return w / w.sum()

    def initial_level(self, symbol: str) -> Optional[float]:
        for u in self.underlyings:
            if u.symbol == symbol:
                return u.initial_level
        return None


Instrument = Annotated[
    Union[OptionInstrument, FutureInstrument, StructuredProduct],
    Field(discriminator="instrument_type"),
]

_instrument_adapter = TypeAdapter(Instrument)


# ============================================================================
# Loading and validation functions
# ============================================================================

def validate_instrument_json(data: Dict) -> Union[OptionInstrument, FutureInstrument, StructuredProduct]:
    """
    Validate an instrument data dictionary.

    Args:
        data: Raw JSON data as dictionary, tagged by ``instrument_type``

    Returns:
        Validated instrument of the matching variant
    """
    return _instrument_adapter.validate_python(data)


def load_instrument(path: Union[str, Path]) -> Union[OptionInstrument, FutureInstrument, StructuredProduct]:
    """
    Load and validate an instrument from a JSON file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValidationError: If JSON doesn't match schema
    """
    filepath = Path(path)
    if not filepath.exists():
        raise FileNotFoundError(f"Instrument file not found: {path}")

    with open(filepath, "r") as f:
        data = json.load(f)

    return validate_instrument_json(data)
