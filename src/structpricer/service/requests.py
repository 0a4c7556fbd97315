"""
Request and response records of the valuation service.

Responses are read straight off the engine's result dataclasses
(``from_attributes``); every response carries ``warnings`` and
``calculation_time_ms``.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from structpricer.engines.base import ModelType
from structpricer.risk.barriers import AlertSeverity, AlertType, BarrierState
from structpricer.risk.margin import PositionSide


# ============================================================================
# Requests
# ============================================================================

class GreeksRequest(BaseModel):
    """Greeks for one instrument, optionally overriding market inputs."""

    instrument_id: str
    underlying_price: Optional[float] = Field(None, gt=0)
    volatility: Optional[float] = Field(None, gt=0)
    risk_free_rate: Optional[float] = None
    dividend_yield: Optional[float] = None
    model: Optional[ModelType] = None

    class Config:
        extra = "forbid"


class ImpliedVolatilityRequest(BaseModel):
    instrument_id: str
    option_price: float = Field(..., gt=0)
    underlying_price: Optional[float] = Field(None, gt=0)
    time_to_expiration: Optional[float] = Field(None, gt=0, description="Years")
    risk_free_rate: Optional[float] = None
    dividend_yield: Optional[float] = None

    class Config:
        extra = "forbid"


class StructuredProductValuationRequest(BaseModel):
    product_id: str
    valuation_date: Optional[date] = None
    model_type: Optional[ModelType] = None
    include_greeks: bool = False
    scenario_analysis: bool = False

    class Config:
        extra = "forbid"
        protected_namespaces = ()


class BarrierMonitoringRequest(BaseModel):
    """Monitor the listed products and portfolios, or everything when both are empty."""

    product_ids: List[str] = Field(default_factory=list)
    portfolio_ids: List[str] = Field(default_factory=list)
    alert_threshold: Optional[float] = Field(None, gt=0, le=1)

    class Config:
        extra = "forbid"


class BreachProbabilityRequest(BaseModel):
    instrument_id: str
    barrier_id: str
    horizon_days: Optional[float] = Field(None, gt=0)

    class Config:
        extra = "forbid"


class MarginPositionRequest(BaseModel):
    instrument_id: str
    quantity: float = Field(..., ge=0)
    side: PositionSide = PositionSide.LONG
    underlying_symbol: Optional[str] = None

    class Config:
        extra = "forbid"


class ScenarioShift(BaseModel):
    name: str
    price_shift: float = Field(..., gt=-1)
    vol_shift: float = 0.0
    time_decay_days: int = Field(0, ge=0)

    class Config:
        extra = "forbid"


class MarginCalculationRequest(BaseModel):
    positions: List[MarginPositionRequest] = Field(..., min_length=1)
    underlying_prices: Dict[str, float] = Field(default_factory=dict)
    volatilities: Dict[str, float] = Field(default_factory=dict)
    scenario_shifts: Optional[List[ScenarioShift]] = None

    class Config:
        extra = "forbid"

    @field_validator("underlying_prices", "volatilities")
    @classmethod
    def validate_positive(cls, v: Dict[str, float]) -> Dict[str, float]:
        for symbol, value in v.items():
            if value <= 0:
                raise ValueError(f"{symbol}: value must be positive, got {value}")
        return v


# ============================================================================
# Responses
# ============================================================================

class _Response(BaseModel):
    warnings: List[str] = Field(default_factory=list)
    calculation_time_ms: float = 0.0

    class Config:
        extra = "forbid"
        from_attributes = True
        protected_namespaces = ()


class GreeksResponse(_Response):
    instrument_id: str
    model: ModelType
    method: str
    price: float
    spot: float
    delta: float
    gamma: float
    theta: float
    vega: float
    rho: float
    vanna: Optional[float] = None
    volga: Optional[float] = None
    charm: Optional[float] = None
    color: Optional[float] = None
    lambda_: Optional[float] = None
    delta_cash: float
    gamma_cash: float
    theta_daily: float
    vega_percent: float
    rho_percent: float


class TermStructurePoint(BaseModel):
    tenor_years: float
    implied_volatility: float


class ImpliedVolatilityAnalysis(_Response):
    instrument_id: str
    implied_volatility: float
    converged: bool
    iterations: int
    iv_rank: Optional[float] = None
    iv_percentile: Optional[float] = None
    confidence_95_lower: Optional[float] = None
    confidence_95_upper: Optional[float] = None
    term_structure: List[TermStructurePoint] = Field(default_factory=list)


class UnderlyingView(BaseModel):
    symbol: str
    spot: float
    volatility: float
    dividend_yield: float

    class Config:
        from_attributes = True


class MarketDataView(BaseModel):
    as_of: datetime
    risk_free_rate: float
    underlyings: Dict[str, UnderlyingView]


class ModelResultsView(BaseModel):
    model: ModelType
    unit_value: float
    std_error: float
    confidence_95: float
    time_to_expiry: float
    diagnostics: Dict[str, Any] = Field(default_factory=dict)


class BarrierStatusView(BaseModel):
    instrument_id: str
    barrier_id: str
    barrier_type: str
    underlying_symbol: str
    current_level: float
    barrier_level: float
    upper_level: Optional[float] = None
    distance: float
    distance_pct: float
    state: BarrierState
    is_breaching: bool
    is_approaching: bool
    has_been_hit: bool
    newly_hit: bool
    hit_date: Optional[date] = None
    hit_level: Optional[float] = None
    breach_probability: float
    breach_probability_lower: float
    breach_probability_upper: float
    horizon_years: float
    risk_score: float

    class Config:
        from_attributes = True


class BarrierAlertView(BaseModel):
    instrument_id: str
    barrier_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    current_level: float
    barrier_level: float
    distance_pct: float

    class Config:
        from_attributes = True


class MonitoringSummaryView(BaseModel):
    total_barriers: int
    active_barriers: int
    approaching_barriers: int
    hit_barriers: int

    class Config:
        from_attributes = True


class ScenarioRow(BaseModel):
    name: str
    price_shift: float
    vol_shift: float
    value: float
    pnl: float
    pnl_pct: float

    class Config:
        from_attributes = True


class ValuationResponse(_Response):
    product_id: str
    valuation_date: date
    theoretical_value: float
    market_data: MarketDataView
    model_results: ModelResultsView
    greeks: Optional[GreeksResponse] = None
    barriers: List[BarrierStatusView] = Field(default_factory=list)
    scenario_analysis: Optional[List[ScenarioRow]] = None


class BarrierMonitoringResponse(_Response):
    active_barriers: List[BarrierStatusView]
    hit_barriers: List[BarrierStatusView]
    alerts: List[BarrierAlertView]
    summary: MonitoringSummaryView


class BreachProbabilityResponse(_Response):
    instrument_id: str
    barrier_id: str
    current_level: float
    barrier_level: float
    distance_pct: float
    breach_probability: float
    confidence_95_lower: float
    confidence_95_upper: float
    horizon_years: float


class PositionMarginView(BaseModel):
    instrument_id: str
    underlying_symbol: str
    quantity: float
    notional: float
    initial_margin: float
    maintenance_margin: float
    risk_contribution: float
    hedge_credit: float
    scenario_pnl: Dict[str, float]

    class Config:
        from_attributes = True


class MarginCalculationResult(_Response):
    initial_margin: float
    maintenance_margin: float
    span_margin: float
    worst_scenario: str
    scenario_pnl: Dict[str, float]
    position_margins: List[PositionMarginView]
