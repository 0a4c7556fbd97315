"""
Barrier monitoring: distance, state, breach probability and alerts.

For each barrier on an instrument:
- Resolve the level (below 10: fraction of the initial level)
- Signed distance: spot - barrier for down barriers, barrier - spot for up
  barriers, the nearer side for double barriers
- Classify as HIT, APPROACHING, RECOVERED or NORMAL
- Estimate the probability of a breach over a horizon with a lognormal
  first-passage approximation and a Wilson confidence interval
- Derive alerts and a 0-100 risk score

Hit-state is the only cross-call mutable state in the engine. It lives in
BarrierStateStore, keyed by (instrument id, barrier id), and every update is a single
locked read-modify-write.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple
import logging
import math
import threading

from scipy.stats import norm

from structpricer.core.errors import InvalidInputError
from structpricer.engines.base import barrier_bounds, expiry_years
from structpricer.market.market_data import MarketSnapshot
from structpricer.products.schema import BarrierDirection, BarrierFeature, InstrumentBase


logger = logging.getLogger(__name__)


DEFAULT_ALERT_THRESHOLD = 0.10


class BarrierState(str, Enum):
    """Point-in-time classification of a barrier."""
    NORMAL = "normal"
    APPROACHING = "approaching"
    HIT = "hit"
    RECOVERED = "recovered"


class AlertType(str, Enum):
    BARRIER_HIT = "BARRIER_HIT"
    BARRIER_APPROACH = "BARRIER_APPROACH"
    BARRIER_RECOVERY = "BARRIER_RECOVERY"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class BarrierConfig:
    """Configuration for barrier evaluation."""

    # Approach alert when distance <= threshold (fraction of spot)
    alert_threshold: float = DEFAULT_ALERT_THRESHOLD

    # Effective sample size behind the Wilson interval
    effective_samples: int = 1000
    confidence: float = 0.95


# ============================================================================
# Hit-state store
# ============================================================================

@dataclass(frozen=True)
class HitRecord:
    """Recorded hit-state of one barrier."""
    has_been_hit: bool = False
    hit_date: Optional[date] = None
    hit_level: Optional[float] = None


class BarrierStateStore:
    """
    Thread-safe hit-state keyed by (instrument id, barrier id).

    Barrier ids are only unique within one instrument, so the instrument id
    is part of every key.

    Records are seeded from the instrument's persisted state the first time
    a barrier is seen. A hit is permanent: leaving the barrier afterwards
    never clears it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str], HitRecord] = {}

    @staticmethod
    def _initial(barrier: BarrierFeature) -> HitRecord:
        return HitRecord(barrier.has_been_hit, barrier.hit_date, barrier.hit_level)

    def _current(self, instrument_id: str, barrier: BarrierFeature) -> HitRecord:
        return self._records.get((instrument_id, barrier.barrier_id)) or self._initial(barrier)

    def get(self, instrument_id: str, barrier: BarrierFeature) -> HitRecord:
        with self._lock:
            return self._current(instrument_id, barrier)

    def hit_ids(self, instrument: InstrumentBase) -> FrozenSet[str]:
        """Ids of the instrument's barriers currently recorded as hit."""
        with self._lock:
            return frozenset(
                b.barrier_id for b in instrument.barrier_features
                if self._current(instrument.instrument_id, b).has_been_hit
            )

    def record_observation(
        self,
        instrument_id: str,
        barrier: BarrierFeature,
        breached: bool,
        observed_level: float,
        on_date: date
    ) -> Tuple[HitRecord, HitRecord]:
        """
        Atomically fold one observation into the barrier's hit-state.

        Returns:
            (record before, record after)
        """
        with self._lock:
            before = self._current(instrument_id, barrier)
            after = before
            if breached and not before.has_been_hit:
                after = HitRecord(True, on_date, observed_level)
            self._records[(instrument_id, barrier.barrier_id)] = after
            return before, after

    def snapshot(self) -> Dict[Tuple[str, str], HitRecord]:
        with self._lock:
            return dict(self._records)


# ============================================================================
# Results
# ============================================================================

@dataclass
class BarrierAlert:
    """Ephemeral alert derived from a BarrierStatus."""

    instrument_id: str
    barrier_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    current_level: float
    barrier_level: float
    distance_pct: float


@dataclass
class BarrierStatus:
    """Point-in-time evaluation of one barrier."""

    instrument_id: str
    barrier_id: str
    barrier_type: str
    underlying_symbol: str
    current_level: float
    barrier_level: float
    upper_level: Optional[float]
    distance: float
    distance_pct: float
    state: BarrierState
    is_breaching: bool
    is_approaching: bool
    has_been_hit: bool
    newly_hit: bool
    hit_date: Optional[date]
    hit_level: Optional[float]
    breach_probability: float
    breach_probability_lower: float
    breach_probability_upper: float
    horizon_years: float
    risk_score: float
    warnings: List[str] = field(default_factory=list)

    @property
    def is_hit(self) -> bool:
        return self.state == BarrierState.HIT


@dataclass
class MonitoringSummary:
    total_barriers: int = 0
    active_barriers: int = 0
    approaching_barriers: int = 0
    hit_barriers: int = 0


# ============================================================================
# Analytics
# ============================================================================

def breach_probability(
    spot: float,
    barrier: float,
    volatility: float,
    horizon_years: float,
    down: bool
) -> float:
    """
    Lognormal first-passage approximation of the breach probability.

        down barrier: Phi(ln(B/S) / (sigma sqrt(h)))
        up barrier:   1 - Phi(ln(B/S) / (sigma sqrt(h)))

    Returns 1.0 when the barrier is already breached and 0.0 when no time
    remains.
    """
    if volatility <= 0:
        raise InvalidInputError(f"Volatility must be positive, got {volatility}")
    if (down and spot <= barrier) or (not down and spot >= barrier):
        return 1.0
    if horizon_years <= 0:
        return 0.0
    z = math.log(barrier / spot) / (volatility * math.sqrt(horizon_years))
    p = norm.cdf(z)
    return float(p if down else 1.0 - p)


def wilson_interval(p: float, n: int, confidence: float = 0.95) -> Tuple[float, float]:
    """Wilson score interval around proportion ``p`` with ``n`` samples."""
    z = norm.ppf(0.5 + confidence / 2.0)
    z2 = z * z
    denom = 1.0 + z2 / n
    center = (p + z2 / (2 * n)) / denom
    half = z * math.sqrt(p * (1.0 - p) / n + z2 / (4 * n * n)) / denom
    return max(0.0, center - half), min(1.0, center + half)


def approach_severity(distance_pct: float, threshold: float) -> AlertSeverity:
    """Severity by distance normalised to the alert threshold."""
    normalized = distance_pct / (threshold * 100.0)
    if normalized <= 0.25:
        return AlertSeverity.CRITICAL
    if normalized <= 0.5:
        return AlertSeverity.HIGH
    if normalized <= 0.75:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def risk_score(distance_pct: float, knock_out: bool, approaching: bool) -> float:
    """Heuristic 0-100 score: proximity, knock-out exposure and approach."""
    score = 0.0
    if distance_pct <= 2:
        score += 50
    elif distance_pct <= 5:
        score += 30
    elif distance_pct <= 10:
        score += 15
    if knock_out:
        score += 20
    if approaching:
        score += 25
    return min(score, 100.0)


# ============================================================================
# Evaluator
# ============================================================================

class BarrierEvaluator:
    """Evaluates barriers against a snapshot and maintains hit-state."""

    def __init__(
        self,
        store: Optional[BarrierStateStore] = None,
        config: Optional[BarrierConfig] = None
    ) -> None:
        self.store = store if store is not None else BarrierStateStore()
        self.config = config or BarrierConfig()

    def evaluate(
        self,
        instrument: InstrumentBase,
        market: MarketSnapshot,
        alert_threshold: Optional[float] = None,
        horizon_years: Optional[float] = None,
        record: bool = True
    ) -> List[BarrierStatus]:
        """
        Evaluate every barrier of an instrument.

        Args:
            instrument: Instrument whose barriers to check
            market: Current snapshot
            alert_threshold: Overrides the configured approach threshold
            horizon_years: Breach probability horizon, defaults to time to expiry
            record: Fold breaches into the hit-state store

        Returns:
            One BarrierStatus per barrier
        """
        threshold = self.config.alert_threshold if alert_threshold is None else alert_threshold
        if threshold <= 0:
            raise InvalidInputError(f"Alert threshold must be positive, got {threshold}")
        if horizon_years is None:
            horizon_years = max(expiry_years(instrument, market), 0.0)

        statuses = [
            self._evaluate_one(instrument, barrier, market, threshold, horizon_years, record)
            for barrier in instrument.barrier_features
        ]
        for status in statuses:
            if status.newly_hit:
                logger.info(
                    f"Barrier {status.barrier_id} on {status.instrument_id} hit at "
                    f"{status.current_level:.4f} (level {status.barrier_level:.4f})"
                )
        return statuses

    def _is_observation_date(self, instrument: InstrumentBase, barrier: BarrierFeature, on: date) -> bool:
        if barrier.observation_dates:
            return on in barrier.observation_dates
        return on >= instrument.expiry_date

    def _evaluate_one(
        self,
        instrument: InstrumentBase,
        barrier: BarrierFeature,
        market: MarketSnapshot,
        threshold: float,
        horizon: float,
        record: bool
    ) -> BarrierStatus:
        symbol = instrument.barrier_symbol(barrier)
        data = market.get(symbol)
        spot = data.spot
        if spot <= 0:
            raise InvalidInputError(f"Spot for {symbol} must be positive, got {spot}")
        lower, upper = barrier_bounds(instrument, barrier, market)
        direction = barrier.barrier_type.direction
        warnings: List[str] = []

        # nearer side decides distance for double barriers
        candidates = []
        if lower is not None:
            candidates.append((spot - lower, lower, True))
        if upper is not None:
            candidates.append((upper - spot, upper, False))
        distance, nearest, _ = min(candidates, key=lambda c: c[0])
        distance_pct = distance / spot * 100.0
        breaching = distance <= 0

        observable = True
        if breaching and barrier.is_european:
            observable = self._is_observation_date(instrument, barrier, market.valuation_date)
            if not observable:
                warnings.append(
                    f"European barrier {barrier.barrier_id} breached on a non-observation date"
                )

        if record:
            before, after = self.store.record_observation(
                instrument.instrument_id, barrier, breaching and observable, spot, market.valuation_date
            )
        else:
            before = after = self.store.get(instrument.instrument_id, barrier)
        newly_hit = after.has_been_hit and not before.has_been_hit

        approaching = 0 < distance_pct <= threshold * 100.0 or (breaching and not observable)
        if breaching and observable:
            state = BarrierState.HIT
        elif after.has_been_hit and not barrier.allows_recovery:
            state = BarrierState.HIT
        elif after.has_been_hit:
            state = BarrierState.RECOVERED
        elif approaching:
            state = BarrierState.APPROACHING
        else:
            state = BarrierState.NORMAL

        if direction == BarrierDirection.DOUBLE:
            p = min(
                1.0,
                breach_probability(spot, lower, data.volatility, horizon, down=True)
                + breach_probability(spot, upper, data.volatility, horizon, down=False),
            )
        else:
            p = breach_probability(spot, nearest, data.volatility, horizon, down=lower is not None)
        p_lower, p_upper = wilson_interval(p, self.config.effective_samples, self.config.confidence)

        return BarrierStatus(
            instrument_id=instrument.instrument_id,
            barrier_id=barrier.barrier_id,
            barrier_type=barrier.barrier_type.value,
            underlying_symbol=symbol,
            current_level=spot,
            barrier_level=lower if lower is not None else upper,
            upper_level=upper if direction == BarrierDirection.DOUBLE else None,
            distance=distance,
            distance_pct=distance_pct,
            state=state,
            is_breaching=breaching,
            is_approaching=approaching,
            has_been_hit=after.has_been_hit,
            newly_hit=newly_hit,
            hit_date=after.hit_date,
            hit_level=after.hit_level,
            breach_probability=p,
            breach_probability_lower=p_lower,
            breach_probability_upper=p_upper,
            horizon_years=horizon,
            risk_score=risk_score(max(distance_pct, 0.0), barrier.barrier_type.is_knock_out, approaching),
            warnings=warnings,
        )

    def alerts_for(self, status: BarrierStatus, alert_threshold: Optional[float] = None) -> List[BarrierAlert]:
        """Derive alerts from one status."""
        threshold = self.config.alert_threshold if alert_threshold is None else alert_threshold
        alerts: List[BarrierAlert] = []

        def make(alert_type: AlertType, severity: AlertSeverity, message: str) -> BarrierAlert:
            return BarrierAlert(
                instrument_id=status.instrument_id,
                barrier_id=status.barrier_id,
                alert_type=alert_type,
                severity=severity,
                message=message,
                current_level=status.current_level,
                barrier_level=status.barrier_level,
                distance_pct=status.distance_pct,
            )

        if status.newly_hit:
            alerts.append(make(
                AlertType.BARRIER_HIT, AlertSeverity.CRITICAL,
                f"Barrier {status.barrier_id} hit at {status.current_level:.2f}",
            ))
        elif status.is_approaching and status.state == BarrierState.APPROACHING:
            alerts.append(make(
                AlertType.BARRIER_APPROACH,
                approach_severity(max(status.distance_pct, 0.0), threshold),
                f"Barrier {status.barrier_id} within {status.distance_pct:.2f}% of {status.barrier_level:.2f}",
            ))
        elif status.state == BarrierState.RECOVERED:
            alerts.append(make(
                AlertType.BARRIER_RECOVERY, AlertSeverity.MEDIUM,
                f"Barrier {status.barrier_id} recovered, spot {status.current_level:.2f}",
            ))
        return alerts


def summarize(statuses: List[BarrierStatus]) -> MonitoringSummary:
    """Counts over a monitoring run."""
    hit = sum(1 for s in statuses if s.is_hit)
    return MonitoringSummary(
        total_barriers=len(statuses),
        active_barriers=len(statuses) - hit,
        approaching_barriers=sum(1 for s in statuses if s.is_approaching),
        hit_barriers=hit,
    )
