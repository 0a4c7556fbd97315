"""Instrument definitions."""

from structpricer.products.schema import (
    Instrument,
    InstrumentType,
    OptionInstrument,
    FutureInstrument,
    StructuredProduct,
    UnderlyingAsset,
    BarrierFeature,
    BarrierType,
    BarrierDirection,
    ObservationStyle,
    ObservationFrequency,
    OptionType,
    ExerciseStyle,
    BasketMode,
    ParticipationPayoff,
    LeveragedPayoff,
    CappedPayoff,
    DigitalPayoff,
    CouponPayment,
    CallDate,
    PutDate,
    load_instrument,
    validate_instrument_json,
)

__all__ = [
    "Instrument",
    "InstrumentType",
    "OptionInstrument",
    "FutureInstrument",
    "StructuredProduct",
    "UnderlyingAsset",
    "BarrierFeature",
    "BarrierType",
    "BarrierDirection",
    "ObservationStyle",
    "ObservationFrequency",
    "OptionType",
    "ExerciseStyle",
    "BasketMode",
    "ParticipationPayoff",
    "LeveragedPayoff",
    "CappedPayoff",
    "DigitalPayoff",
    "CouponPayment",
    "CallDate",
    "PutDate",
    "load_instrument",
    "validate_instrument_json",
]
