"""Travel request service: caps, lifecycle transitions and expiry."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import utcnow
from tripcomposer.config import get_settings
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.identity.models import AdminActionContext
from tripcomposer.modules.requests.models import (
    CapExceededError,
    CapsInfo,
    CreateRequestInput,
    RequestErrorCode,
    TravelRequest,
)
from tripcomposer.modules.requests.state_machine import (
    DAILY_CAP_COUNTED_STATES,
    EXPIRABLE_STATES,
    OPEN_REQUEST_STATES,
    RequestState,
    TransitionTrigger,
    validate_transition,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

_SOURCE = "requests"

# Timestamp column stamped when a request enters a state
_STATE_TIMESTAMPS = {
    RequestState.SUBMITTED: "submitted_at",
    RequestState.MATCHED: "matched_at",
    RequestState.COMPLETED: "completed_at",
    RequestState.CANCELLED: "cancelled_at",
}

_ACTOR_TYPES = {
    TransitionTrigger.USER_ACTION: ActorType.USER,
    TransitionTrigger.ADMIN_ACTION: ActorType.ADMIN,
    TransitionTrigger.SYSTEM_AUTO: ActorType.SYSTEM,
    TransitionTrigger.EXTERNAL_EVENT: ActorType.SYSTEM,
}


def request_snapshot(request: TravelRequest) -> dict[str, Any]:
    """JSON-safe view of a request for event payloads."""
    return request.to_matching_input().model_dump(mode="json") | {"state": request.state}


class RequestService:
    """Creates travel requests and moves them through their lifecycle."""

    def __init__(self, session: Optional[AsyncSession] = None, event_bus: Optional[EventBus] = None) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()
        self._settings = get_settings()

    # ── Caps ─────────────────────────────────────────────────────────

    async def get_caps_info(self, user_id: str, now: Optional[dt.datetime] = None) -> CapsInfo:
        now = now or utcnow()
        day_start = dt.datetime.combine(now.date(), dt.time.min)
        async with session_scope(self._session) as session:
            open_count = await session.scalar(
                select(func.count()).select_from(TravelRequest).where(
                    TravelRequest.user_id == user_id,
                    TravelRequest.state.in_([s.value for s in OPEN_REQUEST_STATES]),
                )
            ) or 0
            daily_used = await session.scalar(
                select(func.count()).select_from(TravelRequest).where(
                    TravelRequest.user_id == user_id,
                    TravelRequest.created_at >= day_start,
                    TravelRequest.state.in_([s.value for s in DAILY_CAP_COUNTED_STATES]),
                )
            ) or 0

        daily_limit = self._settings.requests_daily_cap_per_user
        open_limit = self._settings.requests_max_open_per_user
        return CapsInfo(
            daily_limit=daily_limit,
            daily_used=daily_used,
            daily_remaining=max(0, daily_limit - daily_used),
            open_limit=open_limit,
            open_count=open_count,
            open_remaining=max(0, open_limit - open_count),
            can_create_request=daily_used < daily_limit and open_count < open_limit,
        )

    async def check_can_create(self, user_id: str) -> None:
        """Raise CapExceededError when the user may not create another request."""
        caps = await self.get_caps_info(user_id)
        if caps.daily_used >= caps.daily_limit:
            raise CapExceededError(
                f"Daily request limit of {caps.daily_limit} reached",
                code=RequestErrorCode.DAILY_CAP_EXCEEDED,
                details=caps.model_dump(),
            )
        if caps.open_count >= caps.open_limit:
            raise CapExceededError(
                f"Maximum of {caps.open_limit} open requests reached",
                code=RequestErrorCode.MAX_OPEN_REQUESTS_EXCEEDED,
                details=caps.model_dump(),
            )

    # ── User operations ──────────────────────────────────────────────

    async def create_request(self, user_id: str, data: CreateRequestInput) -> TravelRequest:
        await self.check_can_create(user_id)
        now = utcnow()
        async with session_scope(self._session) as session:
            request = TravelRequest(
                user_id=user_id,
                state=RequestState.DRAFT.value,
                title=data.title,
                description=data.description,
                destinations=[d.strip() for d in data.destinations],
                departure_location=data.departure_location,
                trip_type=data.trip_type.value,
                start_date=data.start_date,
                end_date=data.end_date,
                travelers=data.travelers,
                budget_min=data.budget_min,
                budget_max=data.budget_max,
                budget_currency=data.budget_currency.upper(),
                preferences=list(data.preferences),
                expires_at=now + dt.timedelta(hours=self._settings.requests_expiry_hours),
                created_at=now,
            )
            session.add(request)
            await session.flush()
            await log_action(
                user_id,
                "request_created",
                _SOURCE,
                details={"destinations": request.destinations, "start_date": data.start_date.isoformat()},
                actor_type=ActorType.USER.value,
                entity_type="travel_request",
                entity_id=request.id,
                session=session,
            )

        await self._bus.publish(
            EventType.REQUEST_CREATED,
            {"request": request_snapshot(request)},
            EventMetadata(actor_id=user_id, actor_type=ActorType.USER, source=_SOURCE),
            aggregate_type="TravelRequest",
            aggregate_id=request.id,
        )
        logger.info("request_created", request_id=request.id, user_id=user_id)
        return request

    async def get_request(self, user_id: str, request_id: str) -> TravelRequest:
        request = await self.admin_get_request(request_id)
        if request.user_id != user_id:
            raise ForbiddenError(
                f"User {user_id} cannot access request {request_id}",
                code=RequestErrorCode.UNAUTHORIZED_ACCESS,
            )
        return request

    async def admin_get_request(self, request_id: str) -> TravelRequest:
        async with session_scope(self._session) as session:
            request = await session.get(TravelRequest, request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found", code=RequestErrorCode.NOT_FOUND)
        return request

    async def list_user_requests(
        self, user_id: str, state: Optional[RequestState] = None, limit: int = 50, offset: int = 0
    ) -> list[TravelRequest]:
        query = select(TravelRequest).where(TravelRequest.user_id == user_id)
        if state is not None:
            query = query.where(TravelRequest.state == state.value)
        query = query.order_by(TravelRequest.created_at.desc()).limit(limit).offset(offset)
        async with session_scope(self._session) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def submit_request(self, user_id: str, request_id: str) -> TravelRequest:
        """Submit a draft for matching; publishes ``RequestSubmitted``."""
        request = await self._transition_owned(
            user_id, request_id, RequestState.SUBMITTED, "User submitted request"
        )
        await self._bus.publish(
            EventType.REQUEST_SUBMITTED,
            {"request": request_snapshot(request)},
            EventMetadata(actor_id=user_id, actor_type=ActorType.USER, source=_SOURCE),
            aggregate_type="TravelRequest",
            aggregate_id=request.id,
        )
        return request

    async def cancel_request(self, user_id: str, request_id: str, reason: str = "Cancelled by user") -> TravelRequest:
        return await self._transition_owned(user_id, request_id, RequestState.CANCELLED, reason)

    async def _transition_owned(
        self, user_id: str, request_id: str, target: RequestState, reason: str
    ) -> TravelRequest:
        async with session_scope(self._session) as session:
            request = await self._load(session, request_id)
            if request.user_id != user_id:
                raise ForbiddenError(
                    f"User {user_id} cannot access request {request_id}",
                    code=RequestErrorCode.UNAUTHORIZED_ACCESS,
                )
            previous = await self._apply(session, request, target, TransitionTrigger.USER_ACTION, user_id, reason)
        await self._publish_state_change(request, previous, TransitionTrigger.USER_ACTION, user_id, reason)
        return request

    # ── Admin & system operations ────────────────────────────────────

    async def admin_cancel_request(self, request_id: str, ctx: AdminActionContext) -> TravelRequest:
        return await self.admin_transition(request_id, RequestState.CANCELLED, ctx)

    async def admin_transition(
        self, request_id: str, target: RequestState, ctx: AdminActionContext
    ) -> TravelRequest:
        return await self.transition(
            request_id, target, TransitionTrigger.ADMIN_ACTION, ctx.admin_id, ctx.reason
        )

    async def mark_matching(self, request_id: str) -> TravelRequest:
        return await self.transition(
            request_id, RequestState.MATCHING, TransitionTrigger.SYSTEM_AUTO, "system", "Matching started"
        )

    async def mark_matched(self, request_id: str) -> TravelRequest:
        return await self.transition(
            request_id, RequestState.MATCHED, TransitionTrigger.EXTERNAL_EVENT, "system", "Agents matched"
        )

    async def mark_completed(self, request_id: str) -> TravelRequest:
        return await self.transition(
            request_id, RequestState.COMPLETED, TransitionTrigger.EXTERNAL_EVENT, "system", "Booking completed"
        )

    async def transition(
        self,
        request_id: str,
        target: RequestState,
        trigger: TransitionTrigger,
        actor_id: str,
        reason: str,
    ) -> TravelRequest:
        async with session_scope(self._session) as session:
            request = await self._load(session, request_id)
            previous = await self._apply(session, request, target, trigger, actor_id, reason)
        await self._publish_state_change(request, previous, trigger, actor_id, reason)
        return request

    async def process_expired_requests(self, now: Optional[dt.datetime] = None, batch_size: int = 100) -> int:
        """Expire submitted/matching requests whose deadline has passed."""
        now = now or utcnow()
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(TravelRequest)
                .where(
                    TravelRequest.state.in_([s.value for s in EXPIRABLE_STATES]),
                    TravelRequest.expires_at < now.replace(tzinfo=None),
                )
                .limit(batch_size)
            )
            expired = []
            for request in result.scalars().all():
                previous = await self._apply(
                    session,
                    request,
                    RequestState.EXPIRED,
                    TransitionTrigger.SYSTEM_AUTO,
                    "system",
                    "Request expired due to no agent match within time limit",
                )
                expired.append((request, previous))

        for request, previous in expired:
            await self._publish_state_change(
                request, previous, TransitionTrigger.SYSTEM_AUTO, "system", "Request expired"
            )
        if expired:
            logger.info("expired_requests_processed", count=len(expired))
        return len(expired)

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    async def _load(session: AsyncSession, request_id: str) -> TravelRequest:
        request = await session.get(TravelRequest, request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found", code=RequestErrorCode.NOT_FOUND)
        return request

    @staticmethod
    async def _apply(
        session: AsyncSession,
        request: TravelRequest,
        target: RequestState,
        trigger: TransitionTrigger,
        actor_id: str,
        reason: str,
    ) -> RequestState:
        current = RequestState(request.state)
        if current == RequestState.CANCELLED and target == RequestState.CANCELLED:
            raise ConflictError(f"Request {request.id} is already cancelled", code=RequestErrorCode.ALREADY_CANCELLED)
        outcome = validate_transition(current, target)
        if not outcome.success:
            raise InvalidTransitionError(
                outcome.message,
                code=RequestErrorCode.INVALID_STATE_TRANSITION,
                details={"from": current.value, "to": target.value, "reason": outcome.error_code},
            )

        request.state = target.value
        request.state_reason = reason
        column = _STATE_TIMESTAMPS.get(target)
        if column:
            setattr(request, column, utcnow())
        await log_action(
            actor_id,
            "request_state_changed",
            _SOURCE,
            details={"from": current.value, "to": target.value, "trigger": trigger.value, "reason": reason},
            actor_type=_ACTOR_TYPES[trigger].value,
            entity_type="travel_request",
            entity_id=request.id,
            session=session,
        )
        return current

    async def _publish_state_change(
        self,
        request: TravelRequest,
        previous: RequestState,
        trigger: TransitionTrigger,
        actor_id: str,
        reason: str,
    ) -> None:
        await self._bus.publish(
            EventType.REQUEST_STATE_CHANGED,
            {
                "request_id": request.id,
                "user_id": request.user_id,
                "from": previous.value,
                "to": request.state,
                "trigger": trigger.value,
            },
            EventMetadata(actor_id=actor_id, actor_type=_ACTOR_TYPES[trigger], source=_SOURCE, reason=reason),
            aggregate_type="TravelRequest",
            aggregate_id=request.id,
        )
        logger.info("request_state_changed", request_id=request.id, state=request.state, trigger=trigger.value)
