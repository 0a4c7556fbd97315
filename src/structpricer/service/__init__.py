"""Service facade: identifier-based requests over the valuation engine."""

from structpricer.service.repository import InMemoryInstrumentRepository, InstrumentRepository
from structpricer.service.requests import (
    BarrierMonitoringRequest,
    BarrierMonitoringResponse,
    BreachProbabilityRequest,
    BreachProbabilityResponse,
    GreeksRequest,
    GreeksResponse,
    ImpliedVolatilityAnalysis,
    ImpliedVolatilityRequest,
    MarginCalculationRequest,
    MarginCalculationResult,
    MarginPositionRequest,
    ScenarioShift,
    StructuredProductValuationRequest,
    ValuationResponse,
)
from structpricer.service.valuation_service import ValuationService

__all__ = [
    "InMemoryInstrumentRepository",
    "InstrumentRepository",
    "BarrierMonitoringRequest",
    "BarrierMonitoringResponse",
    "BreachProbabilityRequest",
    "BreachProbabilityResponse",
    "GreeksRequest",
    "GreeksResponse",
    "ImpliedVolatilityAnalysis",
    "ImpliedVolatilityRequest",
    "MarginCalculationRequest",
    "MarginCalculationResult",
    "MarginPositionRequest",
    "ScenarioShift",
    "StructuredProductValuationRequest",
    "ValuationResponse",
    "ValuationService",
]
