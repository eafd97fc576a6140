"""Agent response time tracking.

Each request an agent receives produces one response event; the first
response closes it. Metrics are recalculated over a rolling 90 day window
and cached per agent, and they drive the "usually responds within" badge.
"""

from __future__ import annotations

import datetime as dt
import math
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.database import session_scope
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.trust.models import (
    AgentResponseMetrics,
    ResponseEvent,
    ResponseTimeDisplay,
    ResponseTimeLabel,
    ResponseTimeTrend,
    ResponseType,
)

logger = get_logger(__name__)

METRICS_WINDOW_DAYS = 90
TREND_COMPARISON_DAYS = 30
TREND_MIN_SAMPLES = 3
TREND_THRESHOLD_MINUTES = 10
RELIABLE_SAMPLE_SIZE = 5

# Business hours are evaluated in India Standard Time
BUSINESS_TZ = ZoneInfo("Asia/Kolkata")
BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 20

# label -> (upper bound on p50 minutes, display text, short text)
RESPONSE_TIME_LABELS: dict[ResponseTimeLabel, tuple[Optional[int], str, str]] = {
    ResponseTimeLabel.NEW: (None, "New agent", "New"),
    ResponseTimeLabel.WITHIN_30_MIN: (30, "Usually responds within 30 minutes", "< 30 min"),
    ResponseTimeLabel.WITHIN_1_HOUR: (60, "Usually responds within 1 hour", "< 1 hour"),
    ResponseTimeLabel.WITHIN_2_HOURS: (120, "Usually responds within 2 hours", "< 2 hours"),
    ResponseTimeLabel.WITHIN_4_HOURS: (240, "Usually responds within 4 hours", "< 4 hours"),
    ResponseTimeLabel.WITHIN_8_HOURS: (480, "Usually responds within 8 hours", "< 8 hours"),
    ResponseTimeLabel.WITHIN_24_HOURS: (1440, "Usually responds within 24 hours", "< 24 hours"),
    ResponseTimeLabel.MORE_THAN_24_HOURS: (None, "May take more than 24 hours to respond", "> 24 hours"),
}


# ── Pure helpers ─────────────────────────────────────────────────────


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """Linearly interpolated percentile of an ascending sequence."""
    if not sorted_values:
        return None
    index = (p / 100) * (len(sorted_values) - 1)
    lower, upper = math.floor(index), math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = index - lower
    return sorted_values[lower] + fraction * (sorted_values[upper] - sorted_values[lower])


def is_business_hours(moment: dt.datetime) -> bool:
    """True between 09:00 and 20:00 IST, Monday to Saturday."""
    local = as_utc(moment).astimezone(BUSINESS_TZ)
    if local.weekday() == 6:
        return False
    return BUSINESS_START_HOUR <= local.hour < BUSINESS_END_HOUR


def business_day_of_week(moment: dt.datetime) -> int:
    """Day of week in IST, 0 = Sunday."""
    return (as_utc(moment).astimezone(BUSINESS_TZ).weekday() + 1) % 7


def label_from_minutes(p50_minutes: Optional[float]) -> ResponseTimeLabel:
    if p50_minutes is None:
        return ResponseTimeLabel.NEW
    for label, (bound, _, _) in RESPONSE_TIME_LABELS.items():
        if bound is not None and p50_minutes <= bound:
            return label
    return ResponseTimeLabel.MORE_THAN_24_HOURS


def calculate_trend(
    events: Sequence[ResponseEvent], now: Optional[dt.datetime] = None
) -> tuple[ResponseTimeTrend, float]:
    """Compare the median of the last 30 days with the 30 days before.

    Returns the trend and the absolute change in minutes. Fewer than three
    samples in either period is reported as stable.
    """
    now = now or utcnow()
    recent_start = now - dt.timedelta(days=TREND_COMPARISON_DAYS)
    previous_start = now - dt.timedelta(days=2 * TREND_COMPARISON_DAYS)

    current, previous = [], []
    for event in events:
        if event.response_time_minutes is None:
            continue
        received = as_utc(event.request_received_at)
        if received >= recent_start:
            current.append(event.response_time_minutes)
        elif received >= previous_start:
            previous.append(event.response_time_minutes)

    if len(current) < TREND_MIN_SAMPLES or len(previous) < TREND_MIN_SAMPLES:
        return ResponseTimeTrend.STABLE, 0.0

    change = (percentile(sorted(current), 50) or 0) - (percentile(sorted(previous), 50) or 0)
    if change < -TREND_THRESHOLD_MINUTES:
        return ResponseTimeTrend.IMPROVING, abs(change)
    if change > TREND_THRESHOLD_MINUTES:
        return ResponseTimeTrend.DECLINING, abs(change)
    return ResponseTimeTrend.STABLE, 0.0


def format_display(metrics: Optional[AgentResponseMetrics]) -> ResponseTimeDisplay:
    """Turn cached metrics into the badge shown on agent profiles."""
    if metrics is None:
        _, display, short = RESPONSE_TIME_LABELS[ResponseTimeLabel.NEW]
        return ResponseTimeDisplay(
            label=ResponseTimeLabel.NEW,
            display_text=display,
            short_text=short,
            response_rate=0,
            trend=ResponseTimeTrend.STABLE,
            is_reliable=False,
        )

    label = ResponseTimeLabel(metrics.response_time_label)
    trend = ResponseTimeTrend(metrics.trend)
    _, display, short = RESPONSE_TIME_LABELS[label]
    reliable = metrics.sample_size >= RELIABLE_SAMPLE_SIZE

    trend_text = None
    change = round(abs(metrics.trend_change_minutes or 0))
    if reliable and trend != ResponseTimeTrend.STABLE and change >= TREND_THRESHOLD_MINUTES:
        direction = "faster" if trend == ResponseTimeTrend.IMPROVING else "slower"
        trend_text = f"{change} min {direction} than before"

    return ResponseTimeDisplay(
        label=label,
        display_text=display,
        short_text=short,
        response_rate=round(metrics.response_rate),
        trend=trend,
        trend_text=trend_text,
        is_reliable=reliable,
    )


# ── Service ──────────────────────────────────────────────────────────


class ResponseTimeService:
    """Records response events and maintains the cached metrics."""

    def __init__(self, session: Optional[AsyncSession] = None) -> None:
        self._session = session

    async def _get_event(self, session: AsyncSession, agent_id: str, request_id: str) -> Optional[ResponseEvent]:
        return await session.scalar(
            select(ResponseEvent).where(ResponseEvent.agent_id == agent_id, ResponseEvent.request_id == request_id)
        )

    async def record_request_received(
        self, agent_id: str, request_id: str, received_at: Optional[dt.datetime] = None
    ) -> ResponseEvent:
        """Start the clock for a request. Recording the same request twice is a no-op."""
        received_at = received_at or utcnow()
        async with session_scope(self._session) as session:
            event = await self._get_event(session, agent_id, request_id)
            if event is not None:
                return event
            event = ResponseEvent(
                agent_id=agent_id,
                request_id=request_id,
                request_received_at=received_at,
                was_within_business_hours=is_business_hours(received_at),
                day_of_week=business_day_of_week(received_at),
            )
            session.add(event)
            await session.flush()
        logger.debug("response_request_recorded", agent_id=agent_id, request_id=request_id)
        return event

    async def record_response(
        self,
        agent_id: str,
        request_id: str,
        response_type: ResponseType,
        responded_at: Optional[dt.datetime] = None,
    ) -> ResponseEvent:
        """Record the agent's first response to a request.

        Only the first response counts; later calls return the stored event
        unchanged. A response to an untracked request is recorded with a
        zero response time.
        """
        responded_at = responded_at or utcnow()
        event = await self.record_request_received(agent_id, request_id, received_at=responded_at)
        if event.first_response_at is not None:
            return event

        async with session_scope(self._session) as session:
            event = await session.merge(event)
            elapsed = (as_utc(responded_at) - as_utc(event.request_received_at)).total_seconds() / 60
            event.first_response_at = responded_at
            event.response_time_minutes = max(0, round(elapsed))
            event.response_type = response_type.value
        logger.info(
            "agent_response_recorded",
            agent_id=agent_id,
            request_id=request_id,
            minutes=event.response_time_minutes,
            response_type=response_type.value,
        )
        await self.recalculate_metrics(agent_id)
        return event

    async def mark_request_expired(
        self, agent_id: str, request_id: str, now: Optional[dt.datetime] = None
    ) -> Optional[ResponseEvent]:
        """Close an unanswered request as expired. Answered requests are left alone."""
        async with session_scope(self._session) as session:
            event = await self._get_event(session, agent_id, request_id)
            if event is None or event.first_response_at is not None:
                return event
            event.first_response_at = now or utcnow()
            event.response_time_minutes = None
            event.response_type = ResponseType.EXPIRED.value
        logger.info("response_request_expired", agent_id=agent_id, request_id=request_id)
        await self.recalculate_metrics(agent_id)
        return event

    async def expire_unanswered(self, request_id: str, now: Optional[dt.datetime] = None) -> int:
        """Expire every open response clock of a request that ended unanswered."""
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(ResponseEvent.agent_id).where(
                    ResponseEvent.request_id == request_id,
                    ResponseEvent.first_response_at.is_(None),
                )
            )
            agent_ids = list(result.scalars().all())
        for agent_id in agent_ids:
            await self.mark_request_expired(agent_id, request_id, now)
        return len(agent_ids)

    async def recent_events(
        self, agent_id: str, days: int = METRICS_WINDOW_DAYS, now: Optional[dt.datetime] = None
    ) -> list[ResponseEvent]:
        cutoff = ((now or utcnow()) - dt.timedelta(days=days)).replace(tzinfo=None)
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(ResponseEvent)
                .where(ResponseEvent.agent_id == agent_id, ResponseEvent.request_received_at >= cutoff)
                .order_by(ResponseEvent.request_received_at.asc())
            )
            return list(result.scalars().all())

    async def recalculate_metrics(self, agent_id: str, now: Optional[dt.datetime] = None) -> AgentResponseMetrics:
        """Rebuild the cached 90 day metrics for one agent."""
        now = now or utcnow()
        events = await self.recent_events(agent_id, now=now)

        responded = [
            e for e in events if e.first_response_at is not None and e.response_type != ResponseType.EXPIRED.value
        ]
        times = sorted(e.response_time_minutes for e in responded if e.response_time_minutes is not None)
        business = sorted(
            e.response_time_minutes
            for e in responded
            if e.response_time_minutes is not None and e.was_within_business_hours
        )
        after_hours = sorted(
            e.response_time_minutes
            for e in responded
            if e.response_time_minutes is not None and not e.was_within_business_hours
        )
        total = len(events)
        p50 = percentile(times, 50)
        trend, trend_change = calculate_trend(events, now=now)
        last_response = max((as_utc(e.first_response_at) for e in responded), default=None)

        async with session_scope(self._session) as session:
            metrics = await session.get(AgentResponseMetrics, agent_id)
            if metrics is None:
                metrics = AgentResponseMetrics(agent_id=agent_id)
                session.add(metrics)
            metrics.total_requests_received = total
            metrics.total_responses = len(responded)
            metrics.total_proposals = sum(1 for e in events if e.response_type == ResponseType.PROPOSAL_SUBMITTED.value)
            metrics.total_declined = sum(1 for e in events if e.response_type == ResponseType.DECLINED.value)
            metrics.total_expired = sum(1 for e in events if e.response_type == ResponseType.EXPIRED.value)
            metrics.response_rate = (len(responded) / total * 100) if total else 0.0
            metrics.response_time_p50 = p50
            metrics.response_time_p75 = percentile(times, 75)
            metrics.response_time_p90 = percentile(times, 90)
            metrics.response_time_avg = sum(times) / len(times) if times else None
            metrics.response_time_min = times[0] if times else None
            metrics.response_time_max = times[-1] if times else None
            metrics.response_time_label = label_from_minutes(p50).value
            metrics.business_hours_p50 = percentile(business, 50)
            metrics.after_hours_p50 = percentile(after_hours, 50)
            metrics.trend = trend.value
            metrics.trend_change_minutes = trend_change
            metrics.sample_size = len(times)
            metrics.last_response_at = last_response
            metrics.last_recalculated_at = now
            await session.flush()

        logger.debug("response_metrics_recalculated", agent_id=agent_id, p50=p50, sample_size=len(times))
        return metrics

    async def get_metrics(self, agent_id: str) -> Optional[AgentResponseMetrics]:
        async with session_scope(self._session) as session:
            return await session.get(AgentResponseMetrics, agent_id)

    async def get_display(self, agent_id: str) -> ResponseTimeDisplay:
        return format_display(await self.get_metrics(agent_id))

    async def get_batch_display(self, agent_ids: Sequence[str]) -> dict[str, ResponseTimeDisplay]:
        if not agent_ids:
            return {}
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AgentResponseMetrics).where(AgentResponseMetrics.agent_id.in_(list(agent_ids)))
            )
            found = {m.agent_id: m for m in result.scalars().all()}
        return {agent_id: format_display(found.get(agent_id)) for agent_id in agent_ids}

    async def recalculate_all(self, now: Optional[dt.datetime] = None) -> int:
        """Refresh metrics for every agent with recorded events."""
        async with session_scope(self._session) as session:
            result = await session.execute(select(ResponseEvent.agent_id).distinct())
            agent_ids = list(result.scalars().all())
        for agent_id in agent_ids:
            await self.recalculate_metrics(agent_id, now=now)
        logger.info("response_metrics_refreshed", agents=len(agent_ids))
        return len(agent_ids)
