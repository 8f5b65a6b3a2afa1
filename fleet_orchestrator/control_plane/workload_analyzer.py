"""
Workload Pattern Analyzer

Derives per-host activity histograms from the operational event log. The
histograms feed the maintenance window predictor.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from sqlmodel import select

from .models import OperationalEvent, as_utc, utc_now
from .schemas import WorkloadInsights, WorkloadPattern

logger = logging.getLogger(__name__)

PEAK_FACTOR = 1.5
LOW_FACTOR = 0.5
WEEKEND_DAYS = (5, 6)


def analyze_events(timestamps: Iterable[datetime]) -> WorkloadPattern:
    """
    Bucket event timestamps by hour of day and day of week.

    Peak hours have more than 1.5x the mean hourly count, low-activity hours
    less than 0.5x. Days use datetime.weekday() (Monday = 0).
    """
    hourly = [0] * 24
    daily = [0] * 7
    for ts in timestamps:
        hourly[ts.hour] += 1
        daily[ts.weekday()] += 1

    mean = sum(hourly) / 24
    peak_hours = tuple(hour for hour, load in enumerate(hourly) if load > mean * PEAK_FACTOR)
    low_hours = tuple(hour for hour, load in enumerate(hourly) if load < mean * LOW_FACTOR)

    return WorkloadPattern(
        hourly_load=tuple(hourly),
        daily_load=tuple(daily),
        peak_hours=peak_hours,
        low_activity_periods=low_hours,
    )


def _format_hours(hours: Sequence[int]) -> str:
    return ", ".join(f"{h}:00-{h + 1}:00" for h in hours)


def summarize(patterns: Sequence[WorkloadPattern]) -> WorkloadInsights:
    """Fleet-level insights across several hosts' patterns."""
    count = len(patterns) or 1
    hourly_averages = tuple(
        round(sum(p.hourly_load[hour] for p in patterns) / count, 2) for hour in range(24)
    )
    overall = sum(hourly_averages) / 24
    low = tuple(h for h, avg in enumerate(hourly_averages) if avg < overall * LOW_FACTOR)
    peak = tuple(h for h, avg in enumerate(hourly_averages) if avg > overall * PEAK_FACTOR)

    weekday_total = sum(p.daily_load[d] for p in patterns for d in range(7) if d not in WEEKEND_DAYS)
    weekend_total = sum(p.daily_load[d] for p in patterns for d in WEEKEND_DAYS)
    weekday_avg = weekday_total / (5 * count)
    weekend_avg = weekend_total / (2 * count)

    recommendations: List[str] = []
    if low:
        recommendations.append(f"Optimal maintenance windows: {_format_hours(low)}")
    if peak:
        recommendations.append(f"Avoid maintenance during: {_format_hours(peak)}")
    if weekday_avg > 0 and weekend_avg < weekday_avg * 0.7:
        recommendations.append("Weekend maintenance windows show significantly lower activity")

    return WorkloadInsights(
        hourly_averages=hourly_averages,
        low_activity_hours=low,
        peak_activity_hours=peak,
        overall_average=round(overall, 2),
        weekday_average=round(weekday_avg, 2),
        weekend_average=round(weekend_avg, 2),
        recommendations=tuple(recommendations),
        total_servers=len(patterns),
    )


class WorkloadPatternAnalyzer:
    """Reads the operational event store for a trailing window and analyzes it."""

    def __init__(self, db, lookback_days: int = 30):
        self.db = db
        self.lookback_days = lookback_days

    async def event_timestamps(
        self, host_id: str, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[datetime]:
        now = as_utc(now) if now else utc_now()
        since = now - timedelta(days=days or self.lookback_days)
        async with self.db.session() as session:
            result = await session.execute(
                select(OperationalEvent.created_at)
                .where(OperationalEvent.server_id == host_id)
                .where(OperationalEvent.created_at >= since)
                .where(OperationalEvent.created_at <= now)
            )
            return list(result.scalars().all())

    async def analyze_host(
        self, host_id: str, days: Optional[int] = None, now: Optional[datetime] = None
    ) -> WorkloadPattern:
        timestamps = await self.event_timestamps(host_id, days=days, now=now)
        pattern = analyze_events(timestamps)
        logger.debug(
            f"Analyzed {len(timestamps)} events for {host_id}: "
            f"peak={list(pattern.peak_hours)} low={list(pattern.low_activity_periods)}"
        )
        return pattern

    async def analyze_hosts(
        self, host_ids: Iterable[str], days: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, WorkloadPattern]:
        return {host_id: await self.analyze_host(host_id, days=days, now=now) for host_id in host_ids}
