"""Booking service: creation, event application and identity reveal."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings.fees import FeeCalculator
from tripcomposer.modules.bookings.models import Booking, BookingErrorCode, CreateBookingInput
from tripcomposer.modules.bookings.state_machine import (
    BookingEventInput,
    BookingState,
    accepted_events,
    apply_event,
)
from tripcomposer.modules.identity.models import FullAgentIdentity, PublicAgentIdentity
from tripcomposer.modules.identity.service import IdentityService
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

_SOURCE = "booking-payments"

# Full agent identity is revealed once the agent has confirmed
_REVEALED_STATES = frozenset({
    BookingState.AGENT_CONFIRMED,
    BookingState.IN_PROGRESS,
    BookingState.COMPLETED,
    BookingState.SETTLED,
    BookingState.DISPUTED,
    BookingState.DISPUTE_RESOLVED,
})


class BookingService:
    """Persists bookings and drives them through the booking state machine."""

    def __init__(
        self,
        session: Optional[AsyncSession] = None,
        event_bus: Optional[EventBus] = None,
        fees: Optional[FeeCalculator] = None,
    ) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()
        self._fees = fees or FeeCalculator()

    async def create_booking(self, user_id: str, data: CreateBookingInput) -> Booking:
        breakdown = self._fees.calculate(data.base_price_cents)
        async with session_scope(self._session) as session:
            booking = Booking(
                user_id=user_id,
                agent_id=data.agent_id,
                request_id=data.request_id,
                itinerary_id=data.itinerary_id,
                state=BookingState.PENDING_PAYMENT.value,
                trip_start_date=data.trip_start_date,
                trip_end_date=data.trip_end_date,
                destination_city=data.destination_city,
                destination_country=data.destination_country,
                traveler_count=data.traveler_count,
                base_price_cents=breakdown.base_price_cents,
                booking_fee_cents=breakdown.booking_fee_cents,
                platform_commission_cents=breakdown.platform_commission_cents,
                total_amount_cents=breakdown.total_amount_cents,
                agent_payout_cents=breakdown.agent_payout_cents,
                version=0,
            )
            session.add(booking)
            await session.flush()
            await log_action(
                user_id,
                "booking_created",
                _SOURCE,
                details={"agent_id": data.agent_id, "total_amount_cents": breakdown.total_amount_cents},
                actor_type=ActorType.USER.value,
                entity_type="booking",
                entity_id=booking.id,
                session=session,
            )
        logger.info("booking_created", booking_id=booking.id, total_cents=booking.total_amount_cents)
        return booking

    async def get_booking(self, booking_id: str) -> Booking:
        async with session_scope(self._session) as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", code=BookingErrorCode.NOT_FOUND)
        return booking

    async def get_booking_for(self, booking_id: str, viewer_id: str, is_admin: bool = False) -> Booking:
        """Fetch a booking the viewer participates in."""
        booking = await self.get_booking(booking_id)
        if not is_admin and viewer_id not in (booking.user_id, booking.agent_id):
            raise ForbiddenError(f"Not a participant of booking {booking_id}", code=BookingErrorCode.UNAUTHORIZED)
        return booking

    async def list_bookings(
        self,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        state: Optional[BookingState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        query = select(Booking)
        if user_id:
            query = query.where(Booking.user_id == user_id)
        if agent_id:
            query = query.where(Booking.agent_id == agent_id)
        if state:
            query = query.where(Booking.state == state.value)
        query = query.order_by(Booking.created_at.desc()).limit(limit).offset(offset)
        async with session_scope(self._session) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def apply_event(
        self,
        booking_id: str,
        event: BookingEventInput,
        actor_id: str,
        actor_type: ActorType = ActorType.SYSTEM,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """Apply a state machine event with an optional optimistic version check.

        Raises:
            ConflictError: If ``expected_version`` does not match the stored version.
            InvalidTransitionError: If the event is not allowed in the current state.
        """
        async with session_scope(self._session) as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found", code=BookingErrorCode.NOT_FOUND)
            if expected_version is not None and booking.version != expected_version:
                raise ConflictError(
                    f"Booking {booking_id} is at version {booking.version}, expected {expected_version}",
                    code=BookingErrorCode.VERSION_CONFLICT,
                )

            result = apply_event(booking.to_context(), event)
            if not result.success:
                raise InvalidTransitionError(
                    result.error,
                    code=BookingErrorCode.INVALID_TRANSITION,
                    details={
                        "state": booking.state,
                        "event": event.type.value,
                        "accepted_events": [e.value for e in accepted_events(result.previous_state)],
                    },
                )
            booking.apply_context(result.context)
            await log_action(
                actor_id,
                f"booking_{event.type.value.lower()}",
                _SOURCE,
                details={
                    "from": result.previous_state.value,
                    "to": booking.state,
                    "version": booking.version,
                    "reason": reason,
                },
                actor_type=actor_type.value,
                entity_type="booking",
                entity_id=booking_id,
                session=session,
            )

        await self._bus.publish(
            EventType.BOOKING_STATE_CHANGED,
            {
                "booking_id": booking.id,
                "user_id": booking.user_id,
                "agent_id": booking.agent_id,
                "request_id": booking.request_id,
                "event": event.type.value,
                "from": result.previous_state.value,
                "to": booking.state,
                "payment_state": booking.payment_state,
                "version": booking.version,
            },
            EventMetadata(actor_id=actor_id, actor_type=actor_type, source=_SOURCE, reason=reason),
            aggregate_type="Booking",
            aggregate_id=booking.id,
        )
        logger.info(
            "booking_state_changed",
            booking_id=booking.id,
            event=event.type.value,
            state=booking.state,
            version=booking.version,
        )
        return booking

    async def get_agent_identity(
        self, booking_id: str, identity: Optional[IdentityService] = None
    ) -> PublicAgentIdentity | FullAgentIdentity:
        """Agent identity as the traveler may see it for this booking."""
        booking = await self.get_booking(booking_id)
        identity = identity or IdentityService(self._session, self._bus)
        reveal = BookingState(booking.state) in _REVEALED_STATES
        return await identity.get_agent_identity(booking.agent_id, reveal_full=reveal)

    def refund_amount(self, booking: Booking, agent_at_fault: bool) -> int:
        return self._fees.refund_amount(
            booking.total_amount_cents,
            booking.booking_fee_cents,
            cancelled_before_agent_confirm=booking.agent_confirmed_at is None,
            agent_at_fault=agent_at_fault,
        )
