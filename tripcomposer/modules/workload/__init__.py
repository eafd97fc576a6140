"""Advisor workload limits, vacations and auto-pause."""

from tripcomposer.modules.workload.models import (
    AdvisorAvailability,
    AdvisorWorkloadLimits,
    VacationSettings,
    WorkloadStats,
    WorkloadUpdate,
)
from tripcomposer.modules.workload.service import WorkloadService, is_within_working_hours

__all__ = [
    "AdvisorAvailability",
    "AdvisorWorkloadLimits",
    "VacationSettings",
    "WorkloadService",
    "WorkloadStats",
    "WorkloadUpdate",
    "is_within_working_hours",
]
