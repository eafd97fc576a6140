"""Peak travel season detection.

During peak periods fewer agents are free, so matching may relax the
minimum agent count and give agents longer to respond.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Optional

from tripcomposer.clock import utcnow
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.matching.models import PeakSeasonConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class PeakPeriod:
    name: str
    start_month: int
    start_day: int
    end_month: int
    end_day: int
    # None means every region
    regions: Optional[tuple[str, ...]] = None

    def contains(self, date: dt.date) -> bool:
        start = (self.start_month, self.start_day)
        end = (self.end_month, self.end_day)
        current = (date.month, date.day)
        if start > end:
            return current >= start or current <= end
        return start <= current <= end

    def applies_to(self, destinations: list[str]) -> bool:
        if self.regions is None:
            return True
        return any(region in d.upper() for d in destinations for region in self.regions)


PEAK_PERIODS: tuple[PeakPeriod, ...] = (
    PeakPeriod("Summer Peak", 6, 15, 8, 31, ("EUROPE", "NORTH_AMERICA", "ASIA")),
    PeakPeriod("Holiday Season", 12, 15, 1, 5),
    PeakPeriod("Spring Break", 3, 10, 4, 15, ("NORTH_AMERICA", "CARIBBEAN", "MEXICO")),
    PeakPeriod("Chinese New Year", 1, 20, 2, 15, ("ASIA", "OCEANIA")),
    PeakPeriod("Thanksgiving", 11, 20, 11, 30, ("NORTH_AMERICA",)),
)


@dataclass(frozen=True)
class PeakSeasonInfo:
    is_peak_season: bool
    adjusted_min_agents: int
    adjusted_timeout_hours: int
    active_periods: list[str] = field(default_factory=list)


def detect_peak_season(
    trip_start: dt.datetime,
    trip_end: dt.datetime,
    destinations: list[str],
    base_min_agents: int,
    base_timeout_hours: int,
    config: PeakSeasonConfig,
    now: Optional[dt.datetime] = None,
) -> PeakSeasonInfo:
    """Check today and the trip dates against the known peak periods."""
    if not config.enabled:
        return PeakSeasonInfo(False, base_min_agents, base_timeout_hours)

    today = (now or utcnow()).date()
    dates = (today, trip_start.date(), trip_end.date())
    active = [
        period.name
        for period in PEAK_PERIODS
        if any(period.contains(d) for d in dates) and period.applies_to(destinations)
    ]
    if not active:
        return PeakSeasonInfo(False, base_min_agents, base_timeout_hours)

    min_agents = 1 if config.allow_single_agent else base_min_agents
    logger.info(
        "peak_season_detected",
        active_periods=active,
        adjusted_min_agents=min_agents,
        adjusted_timeout_hours=config.timeout_hours,
    )
    return PeakSeasonInfo(True, min_agents, config.timeout_hours, active)


def current_peak_periods(config: PeakSeasonConfig, now: Optional[dt.datetime] = None) -> list[str]:
    """Names of the periods active today, ignoring region filters."""
    if not config.enabled:
        return []
    today = (now or utcnow()).date()
    return [p.name for p in PEAK_PERIODS if p.contains(today)]
