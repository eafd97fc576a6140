"""Travel request table and request/response schemas."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text

from tripcomposer.database import Base
from tripcomposer.errors import TripComposerError
from tripcomposer.modules.matching.models import TravelRequestInput, TripType
from tripcomposer.modules.requests.state_machine import RequestState


class RequestErrorCode(StrEnum):
    NOT_FOUND = "REQUEST_NOT_FOUND"
    UNAUTHORIZED_ACCESS = "REQUEST_UNAUTHORIZED_ACCESS"
    ALREADY_CANCELLED = "REQUEST_ALREADY_CANCELLED"
    INVALID_STATE_TRANSITION = "REQUEST_INVALID_STATE_TRANSITION"
    DAILY_CAP_EXCEEDED = "REQUEST_DAILY_CAP_EXCEEDED"
    MAX_OPEN_REQUESTS_EXCEEDED = "REQUEST_MAX_OPEN_EXCEEDED"


class CapExceededError(TripComposerError):
    status_code = 429
    default_code = RequestErrorCode.DAILY_CAP_EXCEEDED


class TravelRequest(Base):
    """A traveler's trip request."""

    __tablename__ = "travel_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    state = Column(String(16), nullable=False, default=RequestState.DRAFT.value, index=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    destinations = Column(JSON, nullable=False, default=list)
    departure_location = Column(String(255), nullable=True)
    trip_type = Column(String(16), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    travelers = Column(Integer, nullable=False, default=1)
    budget_min = Column(Float, nullable=False, default=0)
    budget_max = Column(Float, nullable=False, default=0)
    budget_currency = Column(String(3), nullable=False, default="INR")
    preferences = Column(JSON, nullable=False, default=list)
    state_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    submitted_at = Column(DateTime, nullable=True)
    matched_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False, index=True)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def to_matching_input(self) -> TravelRequestInput:
        return TravelRequestInput(
            request_id=self.id,
            user_id=self.user_id,
            destinations=list(self.destinations),
            trip_type=TripType(self.trip_type),
            start_date=self.start_date,
            end_date=self.end_date,
            travelers=self.travelers,
            budget_min=self.budget_min,
            budget_max=self.budget_max,
            budget_currency=self.budget_currency,
            preferences=list(self.preferences or []),
        )

    def __repr__(self) -> str:
        return f"<TravelRequest(id={self.id}, state={self.state})>"


# =============================================================================
# Pydantic schemas
# =============================================================================


class CreateRequestInput(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    destinations: list[str] = Field(..., min_length=1, max_length=20)
    departure_location: Optional[str] = Field(default=None, max_length=255)
    trip_type: TripType
    start_date: dt.datetime
    end_date: dt.datetime
    travelers: int = Field(default=1, ge=1, le=100)
    budget_min: float = Field(default=0, ge=0)
    budget_max: float = Field(default=0, ge=0)
    budget_currency: str = Field(default="INR", min_length=3, max_length=3)
    preferences: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_ranges(self) -> "CreateRequestInput":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.budget_max < self.budget_min:
            raise ValueError("budget_max must be greater than or equal to budget_min")
        if any(not d.strip() for d in self.destinations):
            raise ValueError("destinations must not contain blank entries")
        return self


class CapsInfo(BaseModel):
    daily_limit: int
    daily_used: int
    daily_remaining: int
    open_limit: int
    open_count: int
    open_remaining: int
    can_create_request: bool
