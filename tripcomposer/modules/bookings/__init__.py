"""Bookings: lifecycle state machine, fees and identity reveal."""

from tripcomposer.modules.bookings.fees import FeeBreakdown, FeeCalculator
from tripcomposer.modules.bookings.models import Booking, BookingEventRequest, CreateBookingInput
from tripcomposer.modules.bookings.service import BookingService
from tripcomposer.modules.bookings.state_machine import (
    BookingEvent,
    BookingEventInput,
    BookingState,
    CancellationReason,
    DisputeOutcome,
    PaymentState,
    apply_event,
)

__all__ = [
    "Booking",
    "BookingEvent",
    "BookingEventInput",
    "BookingEventRequest",
    "BookingService",
    "BookingState",
    "CancellationReason",
    "CreateBookingInput",
    "DisputeOutcome",
    "FeeBreakdown",
    "FeeCalculator",
    "PaymentState",
    "apply_event",
]
