"""Background job scheduler for marketplace maintenance sweeps.

Jobs are registered at startup by the orchestrator and live only in
memory; every sweep they run is idempotent, so nothing needs to survive a
restart.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Callable, Coroutine, Optional
from uuid import uuid4

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)

AsyncTask = Callable[..., Coroutine[Any, Any, Any]]


class ScheduledTask:
    """Metadata about a scheduled task."""

    def __init__(self, task_id: str, name: str, task_type: str, schedule_info: str, func_name: str) -> None:
        self.task_id = task_id
        self.name = name
        self.task_type = task_type
        self.schedule_info = schedule_info
        self.func_name = func_name
        self.created_at = dt.datetime.now(dt.UTC)
        self.last_run: Optional[dt.datetime] = None
        self.run_count: int = 0
        self.last_error: Optional[str] = None


class SchedulerService:
    """Manages recurring maintenance jobs."""

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler(
            timezone=dt.UTC,
            job_defaults={
                "misfire_grace_time": 300,
                "coalesce": True,
                "max_instances": 1,
            },
        )
        self._tasks: dict[str, ScheduledTask] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        """Start the scheduler. Calling it twice is harmless."""
        if self._scheduler.running:
            return
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._scheduler.start()
        logger.info("scheduler_started")

    @staticmethod
    def _on_job_event(event) -> None:
        job_id = getattr(event, "job_id", "?")
        if event.code == EVENT_JOB_EXECUTED:
            logger.debug("apscheduler_job_executed", job_id=job_id)
        elif event.code == EVENT_JOB_ERROR:
            logger.error("apscheduler_job_error", job_id=job_id, error=str(getattr(event, "exception", "")))
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("apscheduler_job_missed", job_id=job_id)

    async def stop(self) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    def _wrap(self, task_id: str, name: str, func: AsyncTask, kwargs: Optional[dict[str, Any]]) -> AsyncTask:
        async def _wrapper():
            meta = self._tasks.get(task_id)
            try:
                result = await func(**(kwargs or {}))
            except Exception as exc:
                if meta:
                    meta.last_error = str(exc)
                logger.error("scheduled_task_failed", task_id=task_id, name=name, error=str(exc))
                return None
            if meta:
                meta.last_run = dt.datetime.now(dt.UTC)
                meta.run_count += 1
                meta.last_error = None
            logger.info("scheduled_task_executed", task_id=task_id, name=name, result=result)
            return result

        return _wrapper

    def schedule_recurring(
        self,
        name: str,
        func: AsyncTask,
        cron_expression: str,
        kwargs: Optional[dict[str, Any]] = None,
    ) -> str:
        """Schedule a recurring task using a cron expression.

        Cron format: minute hour day_of_month month day_of_week
        """
        task_id = str(uuid4())
        fields = ["minute", "hour", "day", "month", "day_of_week"]
        trigger_kwargs = dict(zip(fields, cron_expression.split()))

        self._scheduler.add_job(
            self._wrap(task_id, name, func, kwargs),
            trigger=CronTrigger(timezone=dt.UTC, **trigger_kwargs),
            id=task_id,
            name=name,
        )
        self._tasks[task_id] = ScheduledTask(
            task_id=task_id, name=name, task_type="cron", schedule_info=cron_expression, func_name=func.__name__
        )
        logger.info("task_scheduled_recurring", task_id=task_id, name=name, cron=cron_expression)
        return task_id

    def schedule_interval(
        self,
        name: str,
        func: AsyncTask,
        minutes: int = 0,
        hours: int = 0,
        seconds: int = 0,
        kwargs: Optional[dict[str, Any]] = None,
        run_immediately: bool = False,
    ) -> str:
        """Schedule a task at a fixed interval.

        Args:
            run_immediately: If True, fire once right away then repeat at interval.
        """
        task_id = str(uuid4())
        next_run = dt.datetime.now(dt.UTC) if run_immediately else None
        self._scheduler.add_job(
            self._wrap(task_id, name, func, kwargs),
            trigger=IntervalTrigger(hours=hours, minutes=minutes, seconds=seconds),
            id=task_id,
            name=name,
            next_run_time=next_run,
        )
        interval_str = f"{hours}h{minutes}m{seconds}s"
        self._tasks[task_id] = ScheduledTask(
            task_id=task_id, name=name, task_type="interval", schedule_info=interval_str, func_name=func.__name__
        )
        logger.info("task_scheduled_interval", task_id=task_id, name=name, interval=interval_str)
        return task_id

    def cancel_task(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        if self._scheduler.get_job(task_id) is not None:
            self._scheduler.remove_job(task_id)
        logger.info("task_cancelled", task_id=task_id)
        return True

    async def run_now(self, task_id: str) -> Any:
        """Run a registered task immediately without changing its schedule.

        Returns the task's result, or raises KeyError for unknown tasks.
        """
        task = self._tasks.get(task_id)
        job = self._scheduler.get_job(task_id) if task else None
        if job is None:
            raise KeyError(task_id)
        logger.info("task_manual_trigger", task_id=task_id, name=task.name)
        result = job.func()
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def find_task(self, name: str) -> Optional[ScheduledTask]:
        return next((t for t in self._tasks.values() if t.name == name), None)

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def next_run_times(self) -> dict[str, Optional[dt.datetime]]:
        """Next fire time per task name, for diagnostics."""
        result = {}
        for task_id, task in self._tasks.items():
            job = self._scheduler.get_job(task_id)
            result[task.name] = getattr(job, "next_run_time", None) if job else None
        return result
