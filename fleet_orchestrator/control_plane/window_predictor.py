"""
Maintenance Window Predictor

Heuristic scorer that turns a host's workload pattern and scheduling
constraints into ranked, confidence-scored maintenance windows. Output is
advisory and reproducible: the same inputs (including `now`) always produce
the same ranked list.
"""
import logging
import math
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import ValidationError
from .models import as_utc, utc_now
from .schemas import (
    AlternativeWindow,
    CriticalHours,
    HostProfile,
    MaintenanceWindowRecommendation,
    WindowConstraints,
    WorkloadImpact,
    WorkloadPattern,
)

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 70
BASE_RISK = 30
ALTERNATIVE_BASE_CONFIDENCE = 60
FALLBACK_HOURS = (2, 3, 4, 5)
HOURS_PER_DAY = 3
WEEKEND_DAYS = (5, 6)
MINUTES_PER_DAY = 24 * 60


def _minutes(hhmm: str) -> int:
    try:
        hours, minutes = hhmm.split(":")
        return int(hours) * 60 + int(minutes)
    except ValueError as e:
        raise ValidationError(f"Invalid time of day {hhmm!r}, expected HH:MM") from e


def _day_intervals(start: int, end: int) -> List[Tuple[int, int]]:
    """Split a half-open minute-of-day span that may wrap past midnight."""
    if end <= MINUTES_PER_DAY:
        return [(start, end)]
    return [(start, MINUTES_PER_DAY), (0, min(end - MINUTES_PER_DAY, start))]


def overlaps_critical(start_minute: int, duration_minutes: int, critical: CriticalHours) -> bool:
    """True when [start, start + duration) shares a minute with the critical period."""
    critical_start, critical_end = _minutes(critical.start), _minutes(critical.end)
    if critical_start <= critical_end:
        blocked = [(critical_start, critical_end)]
    else:
        # Overnight period, e.g. 22:00-02:00
        blocked = [(critical_start, MINUTES_PER_DAY), (0, critical_end)]
    window = _day_intervals(start_minute, start_minute + min(duration_minutes, MINUTES_PER_DAY))
    return any(a < d and c < b for a, b in window for c, d in blocked)


def _clamp(value: int) -> int:
    return max(0, min(100, value))


def workload_impact(risk_score: int) -> WorkloadImpact:
    if risk_score > 60:
        return WorkloadImpact.HIGH
    if risk_score > 40:
        return WorkloadImpact.MEDIUM
    if risk_score > 20:
        return WorkloadImpact.LOW
    return WorkloadImpact.MINIMAL


def covered_hours(start: datetime, end: datetime) -> List[int]:
    """Hours of day touched by [start, end)."""
    hours = []
    cursor = start.replace(minute=0, second=0, microsecond=0)
    while cursor < end:
        hours.append(cursor.hour)
        cursor += timedelta(hours=1)
    return hours


class MaintenanceWindowPredictor:
    def __init__(self, horizon_days: int = 14, max_windows: int = 5, min_confidence: int = 30):
        self.horizon_days = horizon_days
        self.max_windows = max_windows
        self.min_confidence = min_confidence

    def candidate_hours(
        self, pattern: WorkloadPattern, constraints: WindowConstraints, duration_minutes: int
    ) -> List[int]:
        """
        Low-activity start hours whose whole window avoids critical hours,
        else the early-morning fallback band. At most three per day.
        """
        span = math.ceil(duration_minutes / 60)
        hours = []
        for hour in pattern.low_activity_periods:
            if not any(overlaps_critical(hour * 60, duration_minutes, c) for c in constraints.critical_hours):
                hours.append(hour)

        if not hours:
            hours = [hour for hour in FALLBACK_HOURS if hour + span <= 24]

        return hours[:HOURS_PER_DAY]

    def score(
        self, host: HostProfile, start: datetime, end: datetime, pattern: WorkloadPattern
    ) -> Tuple[int, int, Tuple[str, ...]]:
        confidence = BASE_CONFIDENCE
        risk = BASE_RISK
        rationale = []

        if start.hour in pattern.low_activity_periods:
            confidence += 20
            risk -= 15
            rationale.append("Window aligns with historically low activity period")

        if set(covered_hours(start, end)) & set(pattern.peak_hours):
            confidence -= 25
            risk += 20
            rationale.append("Window overlaps with peak activity hours")

        if start.weekday() in WEEKEND_DAYS:
            confidence += 10
            risk -= 5
            rationale.append("Weekend scheduling reduces business impact")

        if host.vm_count > 20:
            confidence -= 15
            risk += 10
            rationale.append("High VM count increases maintenance complexity")
        elif host.vm_count < 5:
            confidence += 10
            risk -= 5
            rationale.append("Low VM count simplifies maintenance")

        if host.ha_enabled:
            confidence += 5
            risk -= 5
            rationale.append("HA cluster provides update safety")

        return _clamp(confidence), _clamp(risk), tuple(rationale)

    def alternatives(
        self, start: datetime, duration_minutes: int, pattern: WorkloadPattern
    ) -> Tuple[AlternativeWindow, ...]:
        alternatives = []
        for offset in (1, -1):
            alt_start = start + timedelta(days=offset)
            confidence = ALTERNATIVE_BASE_CONFIDENCE
            if alt_start.hour in pattern.low_activity_periods:
                confidence += 15
            tradeoffs = (
                ("Later date may have less preparation time",)
                if offset > 0
                else ("Earlier date allows more recovery time",)
            )
            alternatives.append(AlternativeWindow(
                start=alt_start,
                end=alt_start + timedelta(minutes=duration_minutes),
                confidence=_clamp(confidence),
                tradeoffs=tradeoffs,
            ))
        return tuple(alternatives)

    def predict(
        self,
        host: HostProfile,
        pattern: WorkloadPattern,
        update_duration_minutes: int,
        constraints: Optional[WindowConstraints] = None,
        now: Optional[datetime] = None,
    ) -> List[MaintenanceWindowRecommendation]:
        """Ranked maintenance windows for one host over the prediction horizon."""
        if update_duration_minutes <= 0:
            raise ValidationError("update_duration_minutes must be positive")
        constraints = constraints or WindowConstraints()
        now = as_utc(now) if now else utc_now()

        if constraints.max_downtime_minutes is not None and update_duration_minutes > constraints.max_downtime_minutes:
            logger.warning(
                f"Update duration {update_duration_minutes}m exceeds max downtime "
                f"{constraints.max_downtime_minutes}m for {host.id}; no windows predicted"
            )
            return []

        blackout = set(constraints.blackout_dates)
        hours = self.candidate_hours(pattern, constraints, update_duration_minutes)
        windows = []
        for days in range(1, self.horizon_days + 1):
            target_date = (now + timedelta(days=days)).date()
            if target_date in blackout:
                continue
            if constraints.preferred_days is not None and target_date.weekday() not in constraints.preferred_days:
                continue

            for hour in hours:
                start = datetime.combine(target_date, time(hour=hour), tzinfo=timezone.utc)
                end = start + timedelta(minutes=update_duration_minutes)
                confidence, risk, rationale = self.score(host, start, end, pattern)
                if confidence <= self.min_confidence:
                    continue
                if constraints.require_approval:
                    rationale = rationale + ("Window requires change approval",)
                windows.append(MaintenanceWindowRecommendation(
                    server_id=host.id,
                    suggested_start=start,
                    suggested_end=end,
                    confidence=confidence,
                    risk_score=risk,
                    workload_impact=workload_impact(risk),
                    rationale=rationale,
                    alternatives=self.alternatives(start, update_duration_minutes, pattern),
                ))

        windows.sort(key=lambda w: (-w.confidence, w.suggested_start))
        return windows[:self.max_windows]

    def predict_fleet(
        self,
        hosts: Iterable[HostProfile],
        patterns: Dict[str, WorkloadPattern],
        update_duration_minutes: int,
        constraints: Optional[WindowConstraints] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, List[MaintenanceWindowRecommendation]]:
        return {
            host.id: self.predict(host, patterns[host.id], update_duration_minutes, constraints, now)
            for host in hosts
        }


def best_window(recommendations: Sequence[MaintenanceWindowRecommendation]) -> Optional[MaintenanceWindowRecommendation]:
    """Highest-confidence recommendation, earliest first on ties."""
    if not recommendations:
        return None
    return min(recommendations, key=lambda w: (-w.confidence, w.suggested_start))
