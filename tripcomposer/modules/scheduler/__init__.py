"""Scheduler module: background maintenance jobs."""

from tripcomposer.modules.scheduler.service import ScheduledTask, SchedulerService

__all__ = ["ScheduledTask", "SchedulerService"]
