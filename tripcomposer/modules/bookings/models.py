"""Booking table and schemas."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from tripcomposer.database import Base
from tripcomposer.modules.bookings.state_machine import (
    BookingContext,
    BookingEvent,
    BookingState,
    CancellationReason,
    DisputeOutcome,
    PaymentState,
)


class BookingErrorCode(StrEnum):
    NOT_FOUND = "BOOKING_NOT_FOUND"
    INVALID_TRANSITION = "BOOKING_INVALID_TRANSITION"
    VERSION_CONFLICT = "BOOKING_VERSION_CONFLICT"
    UNAUTHORIZED = "BOOKING_UNAUTHORIZED"


class Booking(Base):
    """A confirmed-for-payment trip between a traveler and an agent."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    request_id = Column(String(36), ForeignKey("travel_requests.id"), nullable=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    itinerary_id = Column(String(36), nullable=True)
    state = Column(String(32), nullable=False, default=BookingState.PENDING_PAYMENT.value, index=True)
    payment_state = Column(String(32), nullable=False, default=PaymentState.NOT_STARTED.value)

    trip_start_date = Column(DateTime, nullable=False)
    trip_end_date = Column(DateTime, nullable=False)
    destination_city = Column(String(255), nullable=True)
    destination_country = Column(String(255), nullable=True)
    traveler_count = Column(Integer, nullable=False, default=1)

    base_price_cents = Column(Integer, nullable=False)
    booking_fee_cents = Column(Integer, nullable=False, default=0)
    platform_commission_cents = Column(Integer, nullable=False, default=0)
    total_amount_cents = Column(Integer, nullable=False)
    agent_payout_cents = Column(Integer, nullable=False, default=0)

    payment_intent_id = Column(String(255), nullable=True)
    cancellation_reason = Column(String(32), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(36), nullable=True)
    agent_confirmed_at = Column(DateTime, nullable=True)
    trip_started_at = Column(DateTime, nullable=True)
    trip_completed_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    dispute_id = Column(String(36), nullable=True)
    dispute_outcome = Column(String(8), nullable=True)
    error_message = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def to_context(self) -> BookingContext:
        return BookingContext(
            state=BookingState(self.state),
            agent_id=self.agent_id,
            payment_state=PaymentState(self.payment_state),
            cancellation_reason=CancellationReason(self.cancellation_reason) if self.cancellation_reason else None,
            cancelled_by=self.cancelled_by,
            cancelled_at=self.cancelled_at,
            payment_intent_id=self.payment_intent_id,
            agent_confirmed_at=self.agent_confirmed_at,
            trip_started_at=self.trip_started_at,
            trip_completed_at=self.trip_completed_at,
            settled_at=self.settled_at,
            dispute_id=self.dispute_id,
            dispute_outcome=DisputeOutcome(self.dispute_outcome) if self.dispute_outcome else None,
            error_message=self.error_message,
            version=self.version,
        )

    def apply_context(self, context: BookingContext) -> None:
        self.state = context.state.value
        self.payment_state = context.payment_state.value
        self.cancellation_reason = context.cancellation_reason.value if context.cancellation_reason else None
        self.cancelled_by = context.cancelled_by
        self.cancelled_at = context.cancelled_at
        self.payment_intent_id = context.payment_intent_id
        self.agent_confirmed_at = context.agent_confirmed_at
        self.trip_started_at = context.trip_started_at
        self.trip_completed_at = context.trip_completed_at
        self.settled_at = context.settled_at
        self.dispute_id = context.dispute_id
        self.dispute_outcome = context.dispute_outcome.value if context.dispute_outcome else None
        self.error_message = context.error_message
        self.version = context.version

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, state={self.state}, version={self.version})>"


# =============================================================================
# Pydantic schemas
# =============================================================================


class CreateBookingInput(BaseModel):
    agent_id: str
    request_id: Optional[str] = None
    itinerary_id: Optional[str] = None
    trip_start_date: dt.datetime
    trip_end_date: dt.datetime
    destination_city: Optional[str] = Field(default=None, max_length=255)
    destination_country: Optional[str] = Field(default=None, max_length=255)
    traveler_count: int = Field(default=1, ge=1, le=100)
    base_price_cents: int = Field(..., gt=0)

    @model_validator(mode="after")
    def _check_dates(self) -> "CreateBookingInput":
        if self.trip_end_date < self.trip_start_date:
            raise ValueError("trip_end_date must not be before trip_start_date")
        return self


class BookingEventRequest(BaseModel):
    event: BookingEvent
    expected_version: Optional[int] = Field(default=None, ge=0)
    reason: Optional[CancellationReason] = None
    error: Optional[str] = Field(default=None, max_length=1000)
    payment_intent_id: Optional[str] = None
    dispute_id: Optional[str] = None
    outcome: Optional[DisputeOutcome] = None
