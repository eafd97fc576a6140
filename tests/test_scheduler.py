"""Tests for the task scheduler module."""

from __future__ import annotations

import asyncio

import pytest

from tripcomposer.modules.scheduler import SchedulerService


class TestSchedulerService:
    """Tests for the scheduler service."""

    @pytest.fixture
    def scheduler(self) -> SchedulerService:
        """Create a SchedulerService instance."""
        return SchedulerService()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler: SchedulerService) -> None:
        """Scheduler starts and stops cleanly, and both calls are idempotent."""
        await scheduler.start()
        await scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_schedule_recurring(self, scheduler: SchedulerService) -> None:
        """Recurring task is registered with cron expression."""
        await scheduler.start()

        async def expire_requests():
            pass

        task_id = scheduler.schedule_recurring("expire_requests", expire_requests, cron_expression="*/15 * * * *")
        tasks = scheduler.list_tasks()
        assert len(tasks) == 1
        assert tasks[0].task_id == task_id
        assert tasks[0].task_type == "cron"
        assert tasks[0].func_name == "expire_requests"
        assert scheduler.next_run_times()["expire_requests"] is not None

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_schedule_interval(self, scheduler: SchedulerService) -> None:
        """Interval task is registered."""
        await scheduler.start()

        async def refresh_metrics():
            pass

        scheduler.schedule_interval("refresh_metrics", refresh_metrics, hours=1, minutes=30)
        task = scheduler.list_tasks()[0]
        assert task.task_type == "interval"
        assert task.schedule_info == "1h30m0s"

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_schedule_interval_run_immediately(self, scheduler: SchedulerService) -> None:
        """Interval task with run_immediately fires within seconds."""
        await scheduler.start()

        fired = asyncio.Event()

        async def callback():
            fired.set()

        scheduler.schedule_interval("immediate_check", callback, minutes=60, run_immediately=True)

        try:
            await asyncio.wait_for(fired.wait(), timeout=3)
        except asyncio.TimeoutError:
            pytest.fail("run_immediately task did not fire within 3 seconds")

        await scheduler.stop()

    def test_misfire_grace_time_configured(self, scheduler: SchedulerService) -> None:
        """Scheduler has a generous misfire_grace_time (not the 1s default)."""
        grace = scheduler._scheduler._job_defaults.get("misfire_grace_time", 1)
        assert grace >= 60, f"misfire_grace_time too low: {grace}s (jobs get silently skipped)"

    @pytest.mark.asyncio
    async def test_cancel_task(self, scheduler: SchedulerService) -> None:
        """Cancelling a task removes it."""
        await scheduler.start()

        async def noop():
            pass

        task_id = scheduler.schedule_interval("to_cancel", noop, hours=1)
        assert scheduler.cancel_task(task_id) is True
        assert scheduler.list_tasks() == []
        assert scheduler.cancel_task(task_id) is False

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_now_returns_result_and_counts(self, scheduler: SchedulerService) -> None:
        """run_now executes the task immediately and records the run."""
        await scheduler.start()

        async def sweep(limit: int):
            return limit * 2

        task_id = scheduler.schedule_recurring("sweep", sweep, cron_expression="0 3 * * *", kwargs={"limit": 21})
        assert await scheduler.run_now(task_id) == 42

        task = scheduler.find_task("sweep")
        assert task.run_count == 1
        assert task.last_run is not None
        assert task.last_error is None

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failing_task_records_error(self, scheduler: SchedulerService) -> None:
        """A task that raises is logged and its error kept for diagnostics."""
        await scheduler.start()

        async def broken():
            raise RuntimeError("redis unavailable")

        task_id = scheduler.schedule_interval("broken", broken, minutes=5)
        assert await scheduler.run_now(task_id) is None

        task = scheduler.find_task("broken")
        assert task.run_count == 0
        assert task.last_error == "redis unavailable"

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_now_unknown_task(self, scheduler: SchedulerService) -> None:
        await scheduler.start()
        with pytest.raises(KeyError):
            await scheduler.run_now("nonexistent-id")
        await scheduler.stop()

    def test_find_task_by_name(self, scheduler: SchedulerService) -> None:
        assert scheduler.find_task("missing") is None
