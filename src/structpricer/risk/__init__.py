"""Risk analytics: Greeks and barrier monitoring.

Scenario and margin analysis live in ``structpricer.risk.scenarios`` and
``structpricer.risk.margin``; they sit on top of the valuation orchestrator.
"""

from structpricer.risk.greeks import (
    GreeksCalculator,
    BumpingConfig,
    GreeksResult,
)
from structpricer.risk.barriers import (
    AlertSeverity,
    AlertType,
    BarrierAlert,
    BarrierConfig,
    BarrierEvaluator,
    BarrierState,
    BarrierStateStore,
    BarrierStatus,
    MonitoringSummary,
    breach_probability,
    summarize,
)

__all__ = [
    "GreeksCalculator",
    "BumpingConfig",
    "GreeksResult",
    "AlertSeverity",
    "AlertType",
    "BarrierAlert",
    "BarrierConfig",
    "BarrierEvaluator",
    "BarrierState",
    "BarrierStateStore",
    "BarrierStatus",
    "MonitoringSummary",
    "breach_probability",
    "summarize",
]
