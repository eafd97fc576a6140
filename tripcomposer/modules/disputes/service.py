"""Dispute service: filing, lifecycle transitions, queues and statistics."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.config import Settings, get_settings
from tripcomposer.database import session_scope
from tripcomposer.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings.models import Booking
from tripcomposer.modules.bookings.state_machine import BookingState
from tripcomposer.modules.disputes.models import (
    CreateDisputeInput,
    Dispute,
    DisputeCategory,
    DisputeErrorCode,
    DisputeStatistics,
    is_subjective_complaint,
)
from tripcomposer.modules.disputes.state_machine import (
    ADMIN_ATTENTION_STATES,
    TERMINAL_STATES,
    DisputeAction,
    DisputeActor,
    DisputeState,
    TransitionErrorCode,
    attempt_transition,
    is_terminal,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

SOURCE = "disputes"

# Non-terminal states; a booking may have at most one dispute in any of them
OPEN_DISPUTE_STATES = tuple(s for s in DisputeState if s not in TERMINAL_STATES)

# Disputes idle in these states are closed by the stale sweep
STALE_STATES = (DisputeState.PENDING_EVIDENCE, DisputeState.EVIDENCE_SUBMITTED)

ACTOR_TYPES = {
    DisputeActor.TRAVELER: ActorType.USER,
    DisputeActor.AGENT: ActorType.AGENT,
    DisputeActor.ADMIN: ActorType.ADMIN,
    DisputeActor.SYSTEM: ActorType.SYSTEM,
}


def dispute_metadata(actor: DisputeActor, actor_id: str, reason: Optional[str] = None) -> EventMetadata:
    return EventMetadata(actor_id=actor_id, actor_type=ACTOR_TYPES[actor], source=SOURCE, reason=reason)


class DisputeService:
    """Files disputes and drives them through the dispute state machine."""

    def __init__(self, session: Optional[AsyncSession] = None, event_bus: Optional[EventBus] = None) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()
        self._settings = get_settings()

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def session(self) -> Optional[AsyncSession]:
        return self._session

    @property
    def settings(self) -> Settings:
        return self._settings

    # ── Filing ───────────────────────────────────────────────────────

    async def create_dispute(
        self, traveler_id: str, data: CreateDisputeInput, now: Optional[dt.datetime] = None
    ) -> Dispute:
        """File a dispute against a completed booking the traveler owns.

        Raises:
            NotFoundError: The booking does not exist.
            ForbiddenError: The traveler does not own the booking.
            ValidationFailedError: Booking not completed or dispute window closed.
            ConflictError: An open dispute exists or the daily limit was reached.
        """
        now = now or utcnow()
        async with session_scope(self._session) as session:
            booking = await session.get(Booking, data.booking_id)
            if booking is None:
                raise NotFoundError(
                    f"Booking {data.booking_id} not found", code=DisputeErrorCode.BOOKING_NOT_FOUND
                )
            if booking.user_id != traveler_id:
                raise ForbiddenError(
                    "Only the traveler who made the booking can file a dispute",
                    code=DisputeErrorCode.NOT_BOOKING_OWNER,
                )
            if booking.state != BookingState.COMPLETED.value:
                raise ValidationFailedError(
                    "Disputes can only be filed for completed bookings",
                    code=DisputeErrorCode.BOOKING_NOT_COMPLETED,
                    details={"booking_state": booking.state},
                )

            window_hours = self._settings.dispute_window_hours
            window_end = as_utc(booking.trip_end_date) + dt.timedelta(hours=window_hours)
            if now > window_end:
                raise ValidationFailedError(
                    f"Dispute window has expired. Disputes must be filed within {window_hours} hours of booking end.",
                    code=DisputeErrorCode.WINDOW_EXPIRED,
                )

            open_count = await session.scalar(
                select(func.count()).select_from(Dispute).where(
                    Dispute.booking_id == booking.id,
                    Dispute.state.in_([s.value for s in OPEN_DISPUTE_STATES]),
                )
            ) or 0
            if open_count:
                raise ConflictError(
                    f"Booking {booking.id} already has an open dispute", code=DisputeErrorCode.ALREADY_OPEN
                )

            day_start = dt.datetime.combine(now.date(), dt.time.min)
            today_count = await session.scalar(
                select(func.count()).select_from(Dispute).where(
                    Dispute.traveler_id == traveler_id,
                    Dispute.created_at >= day_start,
                )
            ) or 0
            daily_limit = self._settings.dispute_max_per_user_per_day
            if today_count >= daily_limit:
                raise ConflictError(
                    f"Daily limit of {daily_limit} disputes reached",
                    code=DisputeErrorCode.DAILY_LIMIT_EXCEEDED,
                )

            subjective = is_subjective_complaint(data.category, data.description)
            dispute = Dispute(
                booking_id=booking.id,
                traveler_id=traveler_id,
                agent_id=booking.agent_id,
                category=data.category.value,
                state=DisputeState.PENDING_EVIDENCE.value,
                title=data.title,
                description=data.description,
                is_subjective_complaint=subjective,
                booking_amount_cents=booking.total_amount_cents,
                agent_response_deadline=now + dt.timedelta(hours=self._settings.dispute_agent_response_hours),
                metadata_json={
                    "booking_start_date": as_utc(booking.trip_start_date).isoformat(),
                    "booking_end_date": as_utc(booking.trip_end_date).isoformat(),
                    "destination": booking.destination_city or booking.destination_country,
                    "itinerary_id": booking.itinerary_id,
                    "opened_within_window": True,
                },
                created_at=now,
            )
            session.add(dispute)
            await session.flush()
            await log_action(
                traveler_id,
                "dispute_created",
                SOURCE,
                details={"booking_id": booking.id, "category": data.category.value, "subjective": subjective},
                actor_type=ActorType.USER.value,
                entity_type="dispute",
                entity_id=dispute.id,
                session=session,
            )

        await self._bus.publish(
            EventType.DISPUTE_CREATED,
            {
                "dispute_id": dispute.id,
                "booking_id": dispute.booking_id,
                "traveler_id": traveler_id,
                "agent_id": dispute.agent_id,
                "category": dispute.category,
                "title": dispute.title,
                "is_subjective_complaint": subjective,
                "booking_amount_cents": dispute.booking_amount_cents,
                "currency": dispute.currency,
                "agent_response_deadline": as_utc(dispute.agent_response_deadline).isoformat(),
            },
            dispute_metadata(DisputeActor.TRAVELER, traveler_id),
            aggregate_type="Dispute",
            aggregate_id=dispute.id,
        )
        logger.info(
            "dispute_created",
            dispute_id=dispute.id,
            booking_id=dispute.booking_id,
            category=dispute.category,
            subjective=subjective,
        )
        return dispute

    # ── Queries ──────────────────────────────────────────────────────

    async def get_dispute(self, dispute_id: str) -> Dispute:
        async with session_scope(self._session) as session:
            dispute = await session.get(Dispute, dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute not found: {dispute_id}", code=DisputeErrorCode.NOT_FOUND)
        return dispute

    async def get_dispute_for(self, dispute_id: str, viewer_id: str, is_admin: bool = False) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        if not is_admin and viewer_id not in (dispute.traveler_id, dispute.agent_id):
            raise ForbiddenError(
                f"Not a participant of dispute {dispute_id}", code=DisputeErrorCode.NOT_PARTICIPANT
            )
        return dispute

    async def list_for_traveler(self, traveler_id: str) -> list[Dispute]:
        return await self._list(select(Dispute).where(Dispute.traveler_id == traveler_id))

    async def list_for_agent(self, agent_id: str) -> list[Dispute]:
        return await self._list(select(Dispute).where(Dispute.agent_id == agent_id))

    async def admin_queue(
        self,
        assigned_to: Optional[str] = None,
        unassigned: bool = False,
        state: Optional[DisputeState] = None,
    ) -> list[Dispute]:
        """Disputes that need admin attention, oldest first."""
        query = select(Dispute).where(Dispute.state.in_([s.value for s in ADMIN_ATTENTION_STATES]))
        if assigned_to:
            query = query.where(Dispute.admin_assigned_id == assigned_to)
        if unassigned:
            query = query.where(Dispute.admin_assigned_id.is_(None))
        if state:
            query = query.where(Dispute.state == state.value)
        return await self._list(query, newest_first=False)

    async def _list(self, query, newest_first: bool = True) -> list[Dispute]:
        order = Dispute.created_at.desc() if newest_first else Dispute.created_at.asc()
        async with session_scope(self._session) as session:
            result = await session.execute(query.order_by(order))
            return list(result.scalars().all())

    # ── Transitions ──────────────────────────────────────────────────

    async def transition(
        self,
        dispute_id: str,
        action: DisputeAction,
        actor: DisputeActor,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> Dispute:
        """Apply ``action`` through the state machine, audit it and publish ``DisputeStateChanged``."""
        async with session_scope(self._session) as session:
            dispute = await session.get(Dispute, dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute not found: {dispute_id}", code=DisputeErrorCode.NOT_FOUND)
            previous = DisputeState(dispute.state)
            result = attempt_transition(previous, action, actor, reason)
            if not result.success:
                if result.code == TransitionErrorCode.UNAUTHORIZED_ACTOR:
                    raise ForbiddenError(result.error, code=result.code.value)
                if result.code == TransitionErrorCode.REASON_REQUIRED:
                    raise ValidationFailedError(result.error, code=result.code.value)
                raise InvalidTransitionError(
                    result.error, code=result.code.value, details={"state": previous.value, "action": action.value}
                )
            dispute.state = result.new_state.value
            dispute.updated_at = utcnow()
            await log_action(
                actor_id,
                f"state_changed:{action.value}",
                SOURCE,
                details={"from": previous.value, "to": dispute.state, "reason": reason},
                actor_type=ACTOR_TYPES[actor].value,
                entity_type="dispute",
                entity_id=dispute_id,
                session=session,
            )

        await self._bus.publish(
            EventType.DISPUTE_STATE_CHANGED,
            {
                "dispute_id": dispute_id,
                "booking_id": dispute.booking_id,
                "previous_state": previous.value,
                "new_state": dispute.state,
                "changed_by": actor_id,
                "changed_by_type": actor.value,
                "reason": reason,
            },
            dispute_metadata(actor, actor_id, reason),
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        logger.info(
            "dispute_state_transitioned",
            dispute_id=dispute_id,
            previous_state=previous.value,
            new_state=dispute.state,
            action=action.value,
            actor=actor.value,
        )
        return dispute

    async def withdraw(self, dispute_id: str, traveler_id: str, reason: str) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        if dispute.traveler_id != traveler_id:
            raise ForbiddenError(
                "Only the dispute creator can withdraw the dispute", code=DisputeErrorCode.NOT_PARTICIPANT
            )
        dispute = await self.transition(
            dispute_id, DisputeAction.TRAVELER_WITHDRAW, DisputeActor.TRAVELER, traveler_id, reason
        )
        await self._bus.publish(
            EventType.DISPUTE_WITHDRAWN,
            {"dispute_id": dispute_id, "booking_id": dispute.booking_id, "traveler_id": traveler_id, "reason": reason},
            dispute_metadata(DisputeActor.TRAVELER, traveler_id, reason),
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        return dispute

    async def assign_to_admin(self, dispute_id: str, admin_id: str, reason: str) -> Dispute:
        if not (reason or "").strip():
            raise ValidationFailedError("Admin reason is mandatory", code=DisputeErrorCode.REASON_REQUIRED)
        async with session_scope(self._session) as session:
            dispute = await session.get(Dispute, dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute not found: {dispute_id}", code=DisputeErrorCode.NOT_FOUND)
            if is_terminal(DisputeState(dispute.state)):
                raise InvalidTransitionError(
                    "Cannot assign a closed or resolved dispute",
                    code=TransitionErrorCode.ALREADY_CLOSED.value,
                )
            previous_admin = dispute.admin_assigned_id
            dispute.admin_assigned_id = admin_id
            dispute.admin_assigned_at = utcnow()
            await log_action(
                admin_id,
                "admin_assigned",
                SOURCE,
                details={"previous_admin_id": previous_admin, "reason": reason},
                actor_type=ActorType.ADMIN.value,
                entity_type="dispute",
                entity_id=dispute_id,
                session=session,
            )
        logger.info("dispute_assigned", dispute_id=dispute_id, admin_id=admin_id, previous_admin_id=previous_admin)
        return dispute

    # ── Maintenance ──────────────────────────────────────────────────

    async def expire_stale_disputes(self, now: Optional[dt.datetime] = None) -> int:
        """Close disputes that have sat in evidence collection past the stale limit."""
        now = now or utcnow()
        days = self._settings.dispute_auto_close_stale_days
        cutoff = now - dt.timedelta(days=days)
        stale = await self._list(
            select(Dispute).where(
                Dispute.state.in_([s.value for s in STALE_STATES]),
                Dispute.updated_at < cutoff.replace(tzinfo=None),
            ),
            newest_first=False,
        )
        for dispute in stale:
            await self.transition(
                dispute.id,
                DisputeAction.SYSTEM_EXPIRE,
                DisputeActor.SYSTEM,
                "system",
                f"No activity for {days} days",
            )
        if stale:
            logger.info("stale_disputes_expired", count=len(stale))
        return len(stale)

    async def get_statistics(self, now: Optional[dt.datetime] = None) -> DisputeStatistics:
        now = now or utcnow()
        disputes = await self._list(select(Dispute))
        by_state = {s.value: 0 for s in DisputeState}
        by_category = {c.value: 0 for c in DisputeCategory}
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        resolved_hours: list[float] = []
        resolved_this_month = 0
        subjective = 0

        for dispute in disputes:
            by_state[dispute.state] = by_state.get(dispute.state, 0) + 1
            by_category[dispute.category] = by_category.get(dispute.category, 0) + 1
            if dispute.is_subjective_complaint:
                subjective += 1
            if dispute.resolved_at is not None:
                resolved_at = as_utc(dispute.resolved_at)
                resolved_hours.append((resolved_at - as_utc(dispute.created_at)).total_seconds() / 3600)
                if resolved_at >= month_start:
                    resolved_this_month += 1

        avg_hours = sum(resolved_hours) / len(resolved_hours) if resolved_hours else 0.0
        return DisputeStatistics(
            total=len(disputes),
            total_open=sum(by_state[s.value] for s in OPEN_DISPUTE_STATES),
            pending_review=by_state[DisputeState.UNDER_ADMIN_REVIEW.value] + by_state[DisputeState.ESCALATED.value],
            pending_user_response=by_state[DisputeState.PENDING_EVIDENCE.value],
            pending_agent_response=by_state[DisputeState.EVIDENCE_SUBMITTED.value],
            resolved_this_month=resolved_this_month,
            average_resolution_days=round(avg_hours / 24, 1),
            avg_resolution_time_hours=avg_hours,
            subjective_complaint_count=subjective,
            by_state=by_state,
            by_category=by_category,
        )
