"""Tests for advisor workload limits and availability."""

from __future__ import annotations

import datetime as dt

import pytest
from pydantic import ValidationError

from factories import make_agent
from tripcomposer.modules.workload import (
    AdvisorWorkloadLimits,
    VacationSettings,
    WorkloadService,
    WorkloadUpdate,
    is_within_working_hours,
)
from tripcomposer.security.audit import list_audit_entries


def _limits(**overrides) -> AdvisorWorkloadLimits:
    data = {
        "agent_id": "agent-1",
        "preferred_timezone": "Asia/Kolkata",
        "working_hours_start": "09:00",
        "working_hours_end": "18:00",
        "accepts_weekend_requests": True,
    }
    data.update(overrides)
    return AdvisorWorkloadLimits(**data)


@pytest.fixture
def workload(db_session) -> WorkloadService:
    return WorkloadService(db_session)


class TestWorkingHours:
    """Tests for the local working-hours window."""

    def test_inside_and_outside_window(self) -> None:
        limits = _limits()
        # 05:30 UTC is 11:00 in Kolkata
        assert is_within_working_hours(limits, dt.datetime(2026, 10, 7, 5, 30, tzinfo=dt.UTC))
        # 14:00 UTC is 19:30 in Kolkata
        assert not is_within_working_hours(limits, dt.datetime(2026, 10, 7, 14, 0, tzinfo=dt.UTC))

    def test_overnight_window(self) -> None:
        limits = _limits(preferred_timezone="UTC", working_hours_start="22:00", working_hours_end="06:00")
        assert is_within_working_hours(limits, dt.datetime(2026, 10, 7, 23, 0, tzinfo=dt.UTC))
        assert is_within_working_hours(limits, dt.datetime(2026, 10, 7, 5, 0, tzinfo=dt.UTC))
        assert not is_within_working_hours(limits, dt.datetime(2026, 10, 7, 12, 0, tzinfo=dt.UTC))

    def test_weekend_opt_out(self) -> None:
        limits = _limits(preferred_timezone="UTC", accepts_weekend_requests=False)
        saturday = dt.datetime(2026, 10, 10, 10, 0, tzinfo=dt.UTC)
        assert not is_within_working_hours(limits, saturday)


class TestWorkloadUpdate:
    """Tests for limit validation."""

    def test_capacity_bounds(self) -> None:
        with pytest.raises(ValidationError):
            WorkloadUpdate(max_active_requests=0)
        with pytest.raises(ValidationError):
            WorkloadUpdate(max_active_requests=51)
        assert WorkloadUpdate(max_active_requests=50).max_active_requests == 50

    def test_timezone_and_hours_validated(self) -> None:
        with pytest.raises(ValidationError):
            WorkloadUpdate(preferred_timezone="Mars/Olympus")
        with pytest.raises(ValidationError):
            WorkloadUpdate(working_hours_start="9am")


class TestWorkloadService:
    """Tests for counters, vacations and availability."""

    @pytest.mark.asyncio
    async def test_unconfigured_advisor_is_available(self, workload: WorkloadService) -> None:
        availability = await workload.is_advisor_available("agent-x")
        assert availability.is_available

    @pytest.mark.asyncio
    async def test_initialize_limits_is_idempotent(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        first = await workload.initialize_limits(agent.id)
        first.current_active_requests = 4
        second = await workload.initialize_limits(agent.id)
        assert second.current_active_requests == 4
        assert second.max_active_requests == 10

    @pytest.mark.asyncio
    async def test_capacity_makes_advisor_unavailable(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        await workload.update_limits(agent.id, WorkloadUpdate(max_active_requests=2, auto_pause_enabled=False))
        await workload.increment_workload(agent.id)
        await workload.increment_workload(agent.id)

        availability = await workload.is_advisor_available(agent.id)
        assert not availability.is_available
        assert availability.unavailable_reasons == ["At capacity (2/2 active)"]
        assert availability.capacity_utilization == 100
        assert availability.estimated_next_slot is None

    @pytest.mark.asyncio
    async def test_auto_pause_and_release(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        await workload.update_limits(agent.id, WorkloadUpdate(max_active_requests=2, auto_pause_threshold=0.5))
        limits = await workload.increment_workload(agent.id)
        assert limits.is_auto_paused

        limits = await workload.decrement_workload(agent.id)
        assert not limits.is_auto_paused
        assert limits.current_active_requests == 0
        limits = await workload.decrement_workload(agent.id)
        assert limits.current_active_requests == 0

    @pytest.mark.asyncio
    async def test_daily_limit_estimates_next_morning(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        await workload.update_limits(agent.id, WorkloadUpdate(max_daily_matches=1))
        await workload.increment_workload(agent.id)
        now = dt.datetime(2026, 10, 7, 12, 0, tzinfo=dt.UTC)
        availability = await workload.is_advisor_available(agent.id, now)
        assert not availability.is_available
        assert availability.estimated_next_slot == dt.datetime(2026, 10, 8, 9, 0, tzinfo=dt.UTC)

    @pytest.mark.asyncio
    async def test_vacation_blocks_until_end(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        until = dt.datetime.now(dt.UTC) + dt.timedelta(days=5)
        await workload.set_vacation_mode(agent.id, VacationSettings(enabled=True, end_date=until, message="Away"))

        availability = await workload.is_advisor_available(agent.id)
        assert "On vacation" in availability.unavailable_reasons

        later = until + dt.timedelta(days=1)
        assert await workload.end_expired_vacations(later) == 1
        assert (await workload.is_advisor_available(agent.id, later)).is_available

    @pytest.mark.asyncio
    async def test_disable_vacation_clears_fields(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        await workload.set_vacation_mode(agent.id, VacationSettings(enabled=True, message="Trekking"))
        limits = await workload.set_vacation_mode(agent.id, VacationSettings(enabled=False))
        assert not limits.vacation_mode
        assert limits.vacation_message is None
        actions = [a.action for a in await list_audit_entries(entity_id=agent.id, session=db_session)]
        assert sorted(actions) == ["vacation_disabled", "vacation_enabled"]

    @pytest.mark.asyncio
    async def test_filter_available_preserves_order(self, workload: WorkloadService, db_session) -> None:
        a = await make_agent(db_session)
        b = await make_agent(db_session)
        c = await make_agent(db_session)
        await workload.set_vacation_mode(b.id, VacationSettings(enabled=True))
        assert await workload.filter_available_agents([c.id, b.id, a.id]) == [c.id, a.id]

    @pytest.mark.asyncio
    async def test_counter_resets(self, workload: WorkloadService, db_session) -> None:
        agent = await make_agent(db_session)
        await workload.increment_workload(agent.id)
        limits = await workload.get_limits(agent.id)
        limits.last_match_reset_date = dt.date(2026, 1, 1)
        limits.last_weekly_reset_date = dt.date(2026, 1, 1)
        await db_session.flush()

        today = dt.date(2026, 10, 7)
        assert await workload.reset_daily_counters(today) == 1
        assert await workload.reset_weekly_counters(today) == 1
        assert await workload.reset_daily_counters(today) == 0

        await db_session.refresh(limits)
        assert limits.matches_today == 0
        assert limits.matches_this_week == 0
        assert limits.current_active_requests == 1

    @pytest.mark.asyncio
    async def test_workload_stats(self, workload: WorkloadService, db_session) -> None:
        a = await make_agent(db_session)
        b = await make_agent(db_session)
        await workload.set_vacation_mode(a.id, VacationSettings(enabled=True))
        await workload.increment_workload(b.id)

        stats = await workload.get_workload_stats()
        assert stats.total_advisors == 2
        assert stats.on_vacation == 1
        assert stats.available_now == 1
        assert stats.avg_capacity_utilization == 5
