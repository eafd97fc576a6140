"""Advisor workload limits, counters and vacation settings."""

from __future__ import annotations

import datetime as dt
import re
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text

from tripcomposer.database import Base

MIN_CAPACITY = 1
MAX_CAPACITY = 50

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _today() -> dt.date:
    return dt.datetime.now(dt.UTC).date()


class AdvisorWorkloadLimits(Base):
    """One row per advisor who has configured (or been given) limits."""

    __tablename__ = "advisor_workload_limits"

    agent_id = Column(String(36), ForeignKey("users.id"), primary_key=True)

    # Capacity
    max_active_requests = Column(Integer, nullable=False, default=10)
    max_daily_matches = Column(Integer, nullable=False, default=15)
    max_weekly_matches = Column(Integer, nullable=False, default=75)

    # Current load
    current_active_requests = Column(Integer, nullable=False, default=0)
    matches_today = Column(Integer, nullable=False, default=0)
    matches_this_week = Column(Integer, nullable=False, default=0)
    last_match_reset_date = Column(Date, nullable=False, default=_today)
    last_weekly_reset_date = Column(Date, nullable=False, default=_today)

    # Auto-pause
    auto_pause_enabled = Column(Boolean, nullable=False, default=True)
    auto_pause_threshold = Column(Float, nullable=False, default=0.90)
    is_auto_paused = Column(Boolean, nullable=False, default=False)

    # Vacation
    vacation_mode = Column(Boolean, nullable=False, default=False, index=True)
    vacation_start = Column(DateTime, nullable=True)
    vacation_until = Column(DateTime, nullable=True)
    vacation_message = Column(Text, nullable=True)

    # Working hours
    preferred_timezone = Column(String(64), nullable=False, default="Asia/Kolkata")
    working_hours_start = Column(String(5), nullable=False, default="09:00")
    working_hours_end = Column(String(5), nullable=False, default="18:00")
    accepts_weekend_requests = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AdvisorWorkloadLimits(agent_id={self.agent_id}, "
            f"active={self.current_active_requests}/{self.max_active_requests})>"
        )


# =============================================================================
# Pydantic schemas
# =============================================================================


class WorkloadUpdate(BaseModel):
    """Partial update of an advisor's limits; unset fields are left alone."""

    max_active_requests: Optional[int] = Field(default=None, ge=MIN_CAPACITY, le=MAX_CAPACITY)
    max_daily_matches: Optional[int] = Field(default=None, ge=1)
    max_weekly_matches: Optional[int] = Field(default=None, ge=1)
    auto_pause_enabled: Optional[bool] = None
    auto_pause_threshold: Optional[float] = Field(default=None, gt=0, le=1)
    preferred_timezone: Optional[str] = None
    working_hours_start: Optional[str] = None
    working_hours_end: Optional[str] = None
    accepts_weekend_requests: Optional[bool] = None

    @field_validator("preferred_timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("working_hours_start", "working_hours_end")
    @classmethod
    def _hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HHMM.match(value):
            raise ValueError("Working hours must be HH:MM (24h)")
        return value


class VacationSettings(BaseModel):
    enabled: bool
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    message: Optional[str] = Field(default=None, max_length=500)


class AdvisorAvailability(BaseModel):
    agent_id: str
    is_available: bool
    unavailable_reasons: list[str] = Field(default_factory=list)
    capacity_utilization: int = 0
    within_working_hours: bool = True
    estimated_next_slot: Optional[dt.datetime] = None


class WorkloadStats(BaseModel):
    total_advisors: int = 0
    available_now: int = 0
    on_vacation: int = 0
    at_capacity: int = 0
    auto_paused: int = 0
    avg_capacity_utilization: int = 0
