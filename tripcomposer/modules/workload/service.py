"""Advisor workload service: capacity limits, auto-pause, vacations and working hours.

Matching calls ``is_advisor_available`` / ``filter_available_agents`` before
scoring. Working hours never make an advisor unavailable; they only push
the advisor behind in-hours colleagues when agents are selected.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.config import get_settings
from tripcomposer.database import session_scope
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.identity.models import AgentProfile, AgentVerificationStatus
from tripcomposer.modules.workload.models import (
    AdvisorAvailability,
    AdvisorWorkloadLimits,
    VacationSettings,
    WorkloadStats,
    WorkloadUpdate,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

_SOURCE = "workload"


def _parse_hhmm(value: str) -> dt.time:
    hours, minutes = value.split(":")
    return dt.time(int(hours), int(minutes))


def is_within_working_hours(limits: AdvisorWorkloadLimits, now: Optional[dt.datetime] = None) -> bool:
    """Whether ``now`` falls inside the advisor's local working window."""
    local = (now or utcnow()).astimezone(ZoneInfo(limits.preferred_timezone))
    if local.weekday() >= 5 and not limits.accepts_weekend_requests:
        return False
    start = _parse_hhmm(limits.working_hours_start)
    end = _parse_hhmm(limits.working_hours_end)
    current = local.time().replace(tzinfo=None)
    if start <= end:
        return start <= current < end
    # Overnight window, e.g. 22:00-06:00
    return current >= start or current < end


def capacity_utilization(limits: AdvisorWorkloadLimits) -> int:
    return min(100, round(limits.current_active_requests / limits.max_active_requests * 100))


class WorkloadService:
    """Reads and updates advisor workload limits."""

    def __init__(self, session: Optional[AsyncSession] = None) -> None:
        self._session = session
        self._settings = get_settings()

    # ── Availability ─────────────────────────────────────────────────

    async def is_advisor_available(
        self, agent_id: str, now: Optional[dt.datetime] = None
    ) -> AdvisorAvailability:
        """Evaluate vacation, auto-pause and capacity limits for one advisor."""
        now = now or utcnow()
        limits = await self.get_limits(agent_id)
        if limits is None:
            return AdvisorAvailability(agent_id=agent_id, is_available=True)
        return self._evaluate(limits, now)

    def _evaluate(self, limits: AdvisorWorkloadLimits, now: dt.datetime) -> AdvisorAvailability:
        reasons: list[str] = []
        if limits.vacation_mode:
            until = as_utc(limits.vacation_until)
            if until is None or until > now:
                reasons.append("On vacation")
        if limits.is_auto_paused:
            reasons.append("Auto-paused due to high workload")
        if limits.current_active_requests >= limits.max_active_requests:
            reasons.append(
                f"At capacity ({limits.current_active_requests}/{limits.max_active_requests} active)"
            )
        if limits.matches_today >= limits.max_daily_matches:
            reasons.append(f"Daily limit reached ({limits.matches_today}/{limits.max_daily_matches})")
        if limits.matches_this_week >= limits.max_weekly_matches:
            reasons.append(
                f"Weekly limit reached ({limits.matches_this_week}/{limits.max_weekly_matches})"
            )

        available = not reasons
        return AdvisorAvailability(
            agent_id=limits.agent_id,
            is_available=available,
            unavailable_reasons=reasons,
            capacity_utilization=capacity_utilization(limits),
            within_working_hours=is_within_working_hours(limits, now),
            estimated_next_slot=None if available else self.estimate_next_slot(limits, now),
        )

    @staticmethod
    def estimate_next_slot(limits: AdvisorWorkloadLimits, now: Optional[dt.datetime] = None) -> Optional[dt.datetime]:
        """Best guess at when the advisor can take work again.

        Capacity limits depend on requests completing, so they yield None.
        """
        now = now or utcnow()
        if limits.vacation_mode and limits.vacation_until is not None:
            return as_utc(limits.vacation_until)
        if limits.matches_today >= limits.max_daily_matches:
            tomorrow = (now + dt.timedelta(days=1)).date()
            return dt.datetime.combine(tomorrow, dt.time(9, 0), tzinfo=dt.UTC)
        return None

    async def filter_available_agents(
        self, agent_ids: list[str], now: Optional[dt.datetime] = None
    ) -> list[str]:
        """Keep the ids whose advisors can take new work, preserving order."""
        availability = await self.get_availability_map(agent_ids, now)
        return [a for a in agent_ids if availability[a].is_available]

    async def get_availability_map(
        self, agent_ids: list[str], now: Optional[dt.datetime] = None
    ) -> dict[str, AdvisorAvailability]:
        """Evaluate many advisors with a single query."""
        now = now or utcnow()
        if not agent_ids:
            return {}
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AdvisorWorkloadLimits).where(AdvisorWorkloadLimits.agent_id.in_(agent_ids))
            )
            rows = {r.agent_id: r for r in result.scalars().all()}
        return {
            agent_id: (
                self._evaluate(rows[agent_id], now)
                if agent_id in rows
                else AdvisorAvailability(agent_id=agent_id, is_available=True)
            )
            for agent_id in agent_ids
        }

    # ── Limits ───────────────────────────────────────────────────────

    async def get_limits(self, agent_id: str) -> Optional[AdvisorWorkloadLimits]:
        async with session_scope(self._session) as session:
            return await session.get(AdvisorWorkloadLimits, agent_id)

    async def initialize_limits(self, agent_id: str) -> AdvisorWorkloadLimits:
        """Create a limits row with the configured defaults (idempotent)."""
        s = self._settings
        async with session_scope(self._session) as session:
            existing = await session.get(AdvisorWorkloadLimits, agent_id)
            if existing is not None:
                return existing
            limits = self._new_limits(agent_id)
            session.add(limits)
        logger.info("workload_limits_initialized", agent_id=agent_id,
                    max_active=s.workload_default_max_active_requests)
        return limits

    def _new_limits(self, agent_id: str) -> AdvisorWorkloadLimits:
        s = self._settings
        today = utcnow().date()
        return AdvisorWorkloadLimits(
            agent_id=agent_id,
            max_active_requests=s.workload_default_max_active_requests,
            max_daily_matches=s.workload_default_max_daily_matches,
            max_weekly_matches=s.workload_default_max_weekly_matches,
            auto_pause_threshold=s.workload_default_auto_pause_threshold,
            preferred_timezone=s.workload_default_timezone,
            working_hours_start=s.workload_default_working_hours_start,
            working_hours_end=s.workload_default_working_hours_end,
            current_active_requests=0,
            matches_today=0,
            matches_this_week=0,
            last_match_reset_date=today,
            last_weekly_reset_date=today,
            auto_pause_enabled=True,
            is_auto_paused=False,
            vacation_mode=False,
            accepts_weekend_requests=True,
        )

    async def update_limits(
        self, agent_id: str, updates: WorkloadUpdate, actor_id: Optional[str] = None
    ) -> AdvisorWorkloadLimits:
        """Apply a validated partial update, creating the row if needed."""
        changes = updates.model_dump(exclude_none=True)
        async with session_scope(self._session) as session:
            limits = await session.get(AdvisorWorkloadLimits, agent_id)
            if limits is None:
                limits = self._new_limits(agent_id)
                session.add(limits)
            for field, value in changes.items():
                setattr(limits, field, value)
            await log_action(
                actor_id or agent_id,
                "workload_limits_updated",
                _SOURCE,
                details=changes,
                actor_type="admin" if actor_id and actor_id != agent_id else "agent",
                entity_type="advisor_workload",
                entity_id=agent_id,
                session=session,
            )
        logger.info("workload_limits_updated", agent_id=agent_id, changes=changes)
        return limits

    async def set_vacation_mode(self, agent_id: str, vacation: VacationSettings) -> AdvisorWorkloadLimits:
        """Turn vacation mode on or off; creates the limits row if missing."""
        async with session_scope(self._session) as session:
            limits = await session.get(AdvisorWorkloadLimits, agent_id)
            if limits is None:
                limits = self._new_limits(agent_id)
                session.add(limits)
            limits.vacation_mode = vacation.enabled
            if vacation.enabled:
                limits.vacation_start = vacation.start_date or utcnow()
                limits.vacation_until = vacation.end_date
                limits.vacation_message = vacation.message
            else:
                limits.vacation_start = None
                limits.vacation_until = None
                limits.vacation_message = None
            await log_action(
                agent_id,
                "vacation_enabled" if vacation.enabled else "vacation_disabled",
                _SOURCE,
                details={"until": vacation.end_date.isoformat() if vacation.end_date else None},
                actor_type="agent",
                entity_type="advisor_workload",
                entity_id=agent_id,
                session=session,
            )
        logger.info("vacation_mode_updated", agent_id=agent_id, enabled=vacation.enabled)
        return limits

    # ── Counters ─────────────────────────────────────────────────────

    async def increment_workload(self, agent_id: str) -> AdvisorWorkloadLimits:
        """Count a new match against the advisor; auto-pauses at the threshold."""
        async with session_scope(self._session) as session:
            limits = await session.get(AdvisorWorkloadLimits, agent_id)
            if limits is None:
                limits = self._new_limits(agent_id)
                session.add(limits)
            limits.current_active_requests += 1
            limits.matches_today += 1
            limits.matches_this_week += 1

            utilization = limits.current_active_requests / limits.max_active_requests
            if limits.auto_pause_enabled and not limits.is_auto_paused and utilization >= limits.auto_pause_threshold:
                limits.is_auto_paused = True
                logger.info("advisor_auto_paused", agent_id=agent_id, utilization=round(utilization * 100))
        return limits

    async def decrement_workload(self, agent_id: str) -> Optional[AdvisorWorkloadLimits]:
        """Release one active request; clears any auto-pause."""
        async with session_scope(self._session) as session:
            limits = await session.get(AdvisorWorkloadLimits, agent_id)
            if limits is None:
                return None
            limits.current_active_requests = max(0, limits.current_active_requests - 1)
            limits.is_auto_paused = False
        logger.debug("workload_decremented", agent_id=agent_id, active=limits.current_active_requests)
        return limits

    async def reset_daily_counters(self, today: Optional[dt.date] = None) -> int:
        """Zero today's match counts for rows not yet reset today."""
        today = today or utcnow().date()
        async with session_scope(self._session) as session:
            result = await session.execute(
                update(AdvisorWorkloadLimits)
                .where(AdvisorWorkloadLimits.last_match_reset_date < today)
                .values(matches_today=0, last_match_reset_date=today, is_auto_paused=False)
                .execution_options(synchronize_session="fetch")
            )
            count = result.rowcount or 0
        if count:
            logger.info("daily_counters_reset", count=count)
        return count

    async def reset_weekly_counters(self, today: Optional[dt.date] = None) -> int:
        """Zero weekly match counts for rows last reset more than 7 days ago."""
        today = today or utcnow().date()
        cutoff = today - dt.timedelta(days=7)
        async with session_scope(self._session) as session:
            result = await session.execute(
                update(AdvisorWorkloadLimits)
                .where(AdvisorWorkloadLimits.last_weekly_reset_date < cutoff)
                .values(matches_this_week=0, last_weekly_reset_date=today)
                .execution_options(synchronize_session="fetch")
            )
            count = result.rowcount or 0
        if count:
            logger.info("weekly_counters_reset", count=count)
        return count

    async def end_expired_vacations(self, now: Optional[dt.datetime] = None) -> int:
        """Switch off vacation mode where the end date has passed."""
        now = now or utcnow()
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AdvisorWorkloadLimits).where(
                    AdvisorWorkloadLimits.vacation_mode.is_(True),
                    AdvisorWorkloadLimits.vacation_until.is_not(None),
                )
            )
            ended = 0
            for limits in result.scalars().all():
                if as_utc(limits.vacation_until) < now:
                    limits.vacation_mode = False
                    limits.vacation_start = None
                    limits.vacation_until = None
                    limits.vacation_message = None
                    ended += 1
        if ended:
            logger.info("expired_vacations_ended", count=ended)
        return ended

    # ── Stats ────────────────────────────────────────────────────────

    async def get_workload_stats(self) -> WorkloadStats:
        """Platform-wide capacity overview across verified advisors."""
        async with session_scope(self._session) as session:
            total = await session.scalar(
                select(func.count())
                .select_from(AgentProfile)
                .where(AgentProfile.verification_status == AgentVerificationStatus.VERIFIED.value)
            ) or 0
            rows = (await session.execute(select(AdvisorWorkloadLimits))).scalars().all()

        if not rows:
            return WorkloadStats(total_advisors=total, available_now=total)

        on_vacation = sum(1 for r in rows if r.vacation_mode)
        at_capacity = sum(1 for r in rows if r.current_active_requests >= r.max_active_requests)
        auto_paused = sum(1 for r in rows if r.is_auto_paused)
        avg = sum(r.current_active_requests / r.max_active_requests for r in rows) / len(rows)
        return WorkloadStats(
            total_advisors=total,
            available_now=max(0, total - on_vacation - at_capacity - auto_paused),
            on_vacation=on_vacation,
            at_capacity=at_capacity,
            auto_paused=auto_paused,
            avg_capacity_utilization=round(avg * 100),
        )
