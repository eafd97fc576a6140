"""Booking lifecycle as a pure transition function.

``apply_event`` never touches the database: it takes a snapshot of the
booking's machine context plus an event and returns the next context, or a
failed result when the event is not accepted in the current state.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Optional

from tripcomposer.clock import utcnow


class BookingState(StrEnum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    AGENT_CONFIRMED = "AGENT_CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"


class PaymentState(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    INITIATED = "INITIATED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    IN_ESCROW = "IN_ESCROW"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    RELEASED = "RELEASED"


class CancellationReason(StrEnum):
    USER_REQUESTED = "USER_REQUESTED"
    AGENT_UNAVAILABLE = "AGENT_UNAVAILABLE"
    AGENT_DECLINED = "AGENT_DECLINED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ADMIN_CANCELLED = "ADMIN_CANCELLED"
    EXPIRED = "EXPIRED"


class BookingEvent(StrEnum):
    INITIATE_PAYMENT = "INITIATE_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    AGENT_CONFIRM = "AGENT_CONFIRM"
    AGENT_DECLINE = "AGENT_DECLINE"
    START_TRIP = "START_TRIP"
    COMPLETE_TRIP = "COMPLETE_TRIP"
    SETTLE = "SETTLE"
    CANCEL = "CANCEL"
    OPEN_DISPUTE = "OPEN_DISPUTE"
    RESOLVE_DISPUTE = "RESOLVE_DISPUTE"
    EXPIRE = "EXPIRE"


class DisputeOutcome(StrEnum):
    WON = "won"
    LOST = "lost"


VALID_BOOKING_TRANSITIONS: dict[BookingState, tuple[BookingState, ...]] = {
    BookingState.PENDING_PAYMENT: (BookingState.PAYMENT_PROCESSING, BookingState.CANCELLED),
    BookingState.PAYMENT_PROCESSING: (
        BookingState.PAYMENT_CONFIRMED,
        BookingState.PENDING_PAYMENT,
        BookingState.CANCELLED,
    ),
    BookingState.PAYMENT_CONFIRMED: (BookingState.AGENT_CONFIRMED, BookingState.CANCELLED),
    BookingState.AGENT_CONFIRMED: (BookingState.IN_PROGRESS, BookingState.CANCELLED, BookingState.DISPUTED),
    BookingState.IN_PROGRESS: (BookingState.COMPLETED, BookingState.DISPUTED),
    BookingState.COMPLETED: (BookingState.SETTLED, BookingState.DISPUTED),
    BookingState.SETTLED: (BookingState.DISPUTED,),
    BookingState.CANCELLED: (),
    BookingState.DISPUTED: (BookingState.DISPUTE_RESOLVED,),
    BookingState.DISPUTE_RESOLVED: (BookingState.SETTLED,),
}

# (state, event) -> next state
_EVENT_TARGETS: dict[tuple[BookingState, BookingEvent], BookingState] = {
    (BookingState.PENDING_PAYMENT, BookingEvent.INITIATE_PAYMENT): BookingState.PAYMENT_PROCESSING,
    (BookingState.PENDING_PAYMENT, BookingEvent.CANCEL): BookingState.CANCELLED,
    (BookingState.PENDING_PAYMENT, BookingEvent.EXPIRE): BookingState.CANCELLED,
    (BookingState.PAYMENT_PROCESSING, BookingEvent.PAYMENT_CONFIRMED): BookingState.PAYMENT_CONFIRMED,
    (BookingState.PAYMENT_PROCESSING, BookingEvent.PAYMENT_FAILED): BookingState.PENDING_PAYMENT,
    (BookingState.PAYMENT_PROCESSING, BookingEvent.CANCEL): BookingState.CANCELLED,
    (BookingState.PAYMENT_CONFIRMED, BookingEvent.AGENT_CONFIRM): BookingState.AGENT_CONFIRMED,
    (BookingState.PAYMENT_CONFIRMED, BookingEvent.AGENT_DECLINE): BookingState.CANCELLED,
    (BookingState.PAYMENT_CONFIRMED, BookingEvent.CANCEL): BookingState.CANCELLED,
    (BookingState.AGENT_CONFIRMED, BookingEvent.START_TRIP): BookingState.IN_PROGRESS,
    (BookingState.AGENT_CONFIRMED, BookingEvent.CANCEL): BookingState.CANCELLED,
    (BookingState.AGENT_CONFIRMED, BookingEvent.OPEN_DISPUTE): BookingState.DISPUTED,
    (BookingState.IN_PROGRESS, BookingEvent.COMPLETE_TRIP): BookingState.COMPLETED,
    (BookingState.IN_PROGRESS, BookingEvent.OPEN_DISPUTE): BookingState.DISPUTED,
    (BookingState.COMPLETED, BookingEvent.SETTLE): BookingState.SETTLED,
    (BookingState.COMPLETED, BookingEvent.OPEN_DISPUTE): BookingState.DISPUTED,
    (BookingState.SETTLED, BookingEvent.OPEN_DISPUTE): BookingState.DISPUTED,
    (BookingState.DISPUTED, BookingEvent.RESOLVE_DISPUTE): BookingState.DISPUTE_RESOLVED,
    (BookingState.DISPUTE_RESOLVED, BookingEvent.SETTLE): BookingState.SETTLED,
}


@dataclass(frozen=True)
class BookingEventInput:
    """An event plus the data some events carry."""

    type: BookingEvent
    reason: Optional[CancellationReason] = None
    cancelled_by: Optional[str] = None
    error: Optional[str] = None
    payment_intent_id: Optional[str] = None
    dispute_id: Optional[str] = None
    outcome: Optional[DisputeOutcome] = None


@dataclass(frozen=True)
class BookingContext:
    """Machine-relevant snapshot of a booking."""

    state: BookingState
    agent_id: str
    payment_state: PaymentState = PaymentState.NOT_STARTED
    cancellation_reason: Optional[CancellationReason] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[dt.datetime] = None
    payment_intent_id: Optional[str] = None
    agent_confirmed_at: Optional[dt.datetime] = None
    trip_started_at: Optional[dt.datetime] = None
    trip_completed_at: Optional[dt.datetime] = None
    settled_at: Optional[dt.datetime] = None
    dispute_id: Optional[str] = None
    dispute_outcome: Optional[DisputeOutcome] = None
    error_message: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class BookingTransitionResult:
    success: bool
    context: BookingContext
    previous_state: BookingState
    new_state: Optional[BookingState] = None
    error: Optional[str] = None


def is_valid_booking_transition(current: BookingState, target: BookingState) -> bool:
    return target in VALID_BOOKING_TRANSITIONS[current]


def is_final(state: BookingState) -> bool:
    """Settled bookings can still be disputed; only cancellation is truly final."""
    return state == BookingState.CANCELLED


def accepted_events(state: BookingState) -> list[BookingEvent]:
    return [event for (s, event) in _EVENT_TARGETS if s == state]


def apply_event(
    context: BookingContext, event: BookingEventInput, now: Optional[dt.datetime] = None
) -> BookingTransitionResult:
    """Compute the booking context after ``event``."""
    current = context.state
    target = _EVENT_TARGETS.get((current, event.type))
    if target is None:
        return BookingTransitionResult(
            False,
            context,
            current,
            error=f"Event {event.type.value} is not allowed in state {current.value}",
        )

    now = now or utcnow()
    changes: dict = {"state": target, "version": context.version + 1}
    kind = event.type

    if kind == BookingEvent.INITIATE_PAYMENT:
        changes.update(payment_state=PaymentState.INITIATED, error_message=None)
    elif kind == BookingEvent.PAYMENT_CONFIRMED:
        changes.update(payment_state=PaymentState.SUCCEEDED, payment_intent_id=event.payment_intent_id)
    elif kind == BookingEvent.PAYMENT_FAILED:
        changes.update(payment_state=PaymentState.FAILED, error_message=event.error or "Payment failed")
    elif kind == BookingEvent.AGENT_CONFIRM:
        changes.update(agent_confirmed_at=now, payment_state=PaymentState.IN_ESCROW)
    elif kind == BookingEvent.AGENT_DECLINE:
        changes.update(
            cancellation_reason=CancellationReason.AGENT_DECLINED,
            cancelled_by=context.agent_id,
            cancelled_at=now,
            payment_state=PaymentState.REFUND_REQUESTED,
        )
    elif kind == BookingEvent.CANCEL:
        changes.update(
            cancellation_reason=event.reason or CancellationReason.USER_REQUESTED,
            cancelled_by=event.cancelled_by,
            cancelled_at=now,
        )
        # Money already captured has to go back
        if current == BookingState.PAYMENT_CONFIRMED:
            changes["payment_state"] = PaymentState.REFUND_REQUESTED
    elif kind == BookingEvent.EXPIRE:
        changes.update(
            cancellation_reason=CancellationReason.EXPIRED,
            cancelled_by="system",
            cancelled_at=now,
        )
    elif kind == BookingEvent.START_TRIP:
        changes["trip_started_at"] = now
    elif kind == BookingEvent.COMPLETE_TRIP:
        changes["trip_completed_at"] = now
    elif kind == BookingEvent.SETTLE:
        changes.update(settled_at=now, payment_state=PaymentState.RELEASED)
    elif kind == BookingEvent.OPEN_DISPUTE:
        changes["dispute_id"] = event.dispute_id
    elif kind == BookingEvent.RESOLVE_DISPUTE:
        changes["dispute_outcome"] = event.outcome

    return BookingTransitionResult(True, replace(context, **changes), current, new_state=target)
