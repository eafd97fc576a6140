"""API route definitions for TripComposer."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import inspect as sa_inspect

from tripcomposer import __version__
from tripcomposer.errors import ForbiddenError, ValidationFailedError
from tripcomposer.events import ActorType
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings import (
    BookingEvent,
    BookingEventInput,
    BookingEventRequest,
    BookingState,
    CreateBookingInput,
)
from tripcomposer.modules.disputes import (
    AdminDecisionInput,
    AgentResponseInput,
    CreateDisputeInput,
    DisputeActor,
    DisputeState,
    EscalateInput,
    EvidenceInput,
    NoteInput,
)
from tripcomposer.modules.disputes.state_machine import (
    get_possible_next_states,
    get_state_description,
    get_valid_actions,
    is_refund_state,
    requires_admin_attention,
)
from tripcomposer.modules.identity import AccountStatus, AdminActionContext, AgentVerificationStatus, IdentityContext
from tripcomposer.modules.identity.models import IdentityErrorCode
from tripcomposer.modules.matching import AdminOverrideAction, AdminOverrideRequest, DeclineReason
from tripcomposer.modules.matching.models import AgentAvailability, AgentSpecialization
from tripcomposer.modules.requests import CreateRequestInput, RequestState
from tripcomposer.modules.trust import ReliabilityTier, ReviewSubmission
from tripcomposer.modules.wishlist import (
    AddWishlistItemInput,
    BatchCheckInput,
    UpdateWishlistItemInput,
    WishlistItemType,
    WishlistSort,
)
from tripcomposer.modules.workload import VacationSettings, WorkloadUpdate
from tripcomposer.security.rbac import Permission, Role, UserIdentity
from tripcomposer.security.tokens import TokenError, decode_access_token

logger = get_logger(__name__)

router = APIRouter()


# ── Request / Response Models ────────────────────────────────────────

class CreateUserRequest(BaseModel):
    """Account registration request."""

    email: str = Field(..., min_length=3, max_length=255)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: Role = Role.USER
    photo_url: Optional[str] = None


class AdminReasonRequest(BaseModel):
    """Body for any admin action that must carry a reason."""

    reason: str = Field(..., min_length=10, max_length=1000)
    reference_id: Optional[str] = None


class VerificationSubmitRequest(BaseModel):
    business_name: Optional[str] = Field(default=None, max_length=255)
    bio: Optional[str] = Field(default=None, max_length=5000)
    specialties: list[str] = Field(default_factory=list)


class VerificationReviewRequest(AdminReasonRequest):
    approve: bool


class MatchingProfileRequest(BaseModel):
    """Attributes an agent maintains for matching."""

    specializations: Optional[list[AgentSpecialization]] = None
    regions: Optional[list[str]] = None
    availability: Optional[AgentAvailability] = None


class DeclineRequest(BaseModel):
    reason: DeclineReason = DeclineReason.AGENT_DECLINED
    match_id: Optional[str] = None


class OverrideRequest(AdminReasonRequest):
    action: AdminOverrideAction
    target_agent_ids: Optional[list[str]] = None
    new_timeout_hours: Optional[int] = Field(default=None, ge=1, le=168)


class RequestTransitionRequest(AdminReasonRequest):
    target: RequestState


class WithdrawRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class HideReviewRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ScoreAdjustRequest(AdminReasonRequest):
    adjustment: float = Field(..., ge=-5, le=5)


class TierOverrideRequest(AdminReasonRequest):
    tier: ReliabilityTier


class InvestigationRequest(AdminReasonRequest):
    under_investigation: bool


# ── Orchestrator accessor (set from main.py) ────────────────────────

_orchestrator = None


def set_orchestrator(orch: Any) -> None:
    """Inject the orchestrator instance."""
    global _orchestrator
    _orchestrator = orch


def get_orchestrator():
    """Get the orchestrator, raising if not initialized."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return _orchestrator


# ── Authentication ───────────────────────────────────────────────────

def current_identity(authorization: Optional[str] = Header(default=None)) -> IdentityContext:
    """Decode the bearer token on the request into its identity context."""
    if not authorization:
        raise TokenError("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise TokenError("Authorization header must be 'Bearer <token>'")
    identity = decode_access_token(token.strip())
    if identity.status == AccountStatus.SUSPENDED:
        raise ForbiddenError("Account is suspended", code=IdentityErrorCode.ACCOUNT_SUSPENDED)
    if identity.status != AccountStatus.ACTIVE:
        raise ForbiddenError("Account is not active", code=IdentityErrorCode.ACCOUNT_NOT_VERIFIED)
    return identity


def _actor(identity: IdentityContext) -> UserIdentity:
    return UserIdentity(user_id=identity.sub, role=identity.role)


def _require(identity: IdentityContext, permission: Permission) -> UserIdentity:
    actor = _actor(identity)
    actor.require_permission(permission)
    return actor


def _require_verified_agent(identity: IdentityContext, permission: Permission) -> None:
    _require(identity, permission)
    if identity.role == Role.AGENT and identity.agent_verification_status != AgentVerificationStatus.VERIFIED:
        raise ForbiddenError("Agent is not verified", code=IdentityErrorCode.AGENT_NOT_VERIFIED)


def _admin_ctx(identity: IdentityContext, body: AdminReasonRequest) -> AdminActionContext:
    return AdminActionContext(admin_id=identity.sub, reason=body.reason, reference_id=body.reference_id)


def _row(obj: Any) -> dict[str, Any]:
    """Flatten an ORM row into a JSON-friendly dict of its columns."""
    return {attr.key: getattr(obj, attr.key) for attr in sa_inspect(obj).mapper.column_attrs}


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health() -> dict[str, Any]:
    """System health check."""
    orch = get_orchestrator()
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": dt.datetime.now(dt.UTC).isoformat(),
        **orch.status(),
    }


# ── Identity ─────────────────────────────────────────────────────────

@router.post("/users", status_code=201)
async def create_user(request: CreateUserRequest) -> dict[str, Any]:
    if request.role in (Role.ADMIN, Role.SYSTEM):
        raise ForbiddenError("Privileged accounts cannot self-register", code=IdentityErrorCode.INSUFFICIENT_PERMISSIONS)
    orch = get_orchestrator()
    user = await orch.identity.create_user(
        request.email, request.first_name, request.last_name, request.role, request.photo_url
    )
    return _row(user)


@router.get("/users/me")
async def get_me(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.USER_READ_SELF)
    return _row(await get_orchestrator().identity.get_user(identity.sub))


@router.post("/users/{user_id}/verify-email")
async def verify_email(user_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_UPDATE_USER_STATUS)
    return _row(await get_orchestrator().identity.verify_email(user_id))


@router.post("/users/{user_id}/suspend")
async def suspend_user(
    user_id: str, body: AdminReasonRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_SUSPEND_ACCOUNT)
    return _row(await get_orchestrator().identity.suspend(user_id, _admin_ctx(identity, body)))


@router.post("/users/{user_id}/reactivate")
async def reactivate_user(
    user_id: str, body: AdminReasonRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_REACTIVATE_ACCOUNT)
    return _row(await get_orchestrator().identity.reactivate(user_id, _admin_ctx(identity, body)))


@router.post("/users/{user_id}/deactivate")
async def deactivate_user(
    user_id: str, body: AdminReasonRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_UPDATE_USER_STATUS)
    return _row(await get_orchestrator().identity.deactivate(user_id, _admin_ctx(identity, body)))


@router.post("/agents/me/verification")
async def submit_verification(
    body: VerificationSubmitRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.AGENT_SUBMIT_VERIFICATION)
    profile = await get_orchestrator().identity.submit_verification(
        identity.sub, body.business_name, body.bio, body.specialties
    )
    return _row(profile)


@router.post("/agents/{agent_id}/verification/review")
async def review_verification(
    agent_id: str, body: VerificationReviewRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_REVIEW_VERIFICATION)
    profile = await get_orchestrator().identity.review_verification(agent_id, body.approve, _admin_ctx(identity, body))
    return _row(profile)


@router.post("/agents/{agent_id}/verification/revoke")
async def revoke_verification(
    agent_id: str, body: AdminReasonRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_REVIEW_VERIFICATION)
    return _row(await get_orchestrator().identity.revoke_verification(agent_id, _admin_ctx(identity, body)))


@router.put("/agents/me/matching-profile")
async def update_matching_profile(
    body: MatchingProfileRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require_verified_agent(identity, Permission.AGENT_UPDATE_PROFILE)
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise ValidationFailedError("No matching attributes to update")
    record = await get_orchestrator().matching.repository.upsert_agent(identity.sub, **fields)
    return _row(record)


# ── Travel Requests ──────────────────────────────────────────────────

@router.post("/requests", status_code=201)
async def create_request(body: CreateRequestInput, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.REQUEST_CREATE)
    return _row(await get_orchestrator().requests.create_request(identity.sub, body))


@router.get("/requests")
async def list_requests(
    state: Optional[RequestState] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: IdentityContext = Depends(current_identity),
) -> dict[str, Any]:
    _require(identity, Permission.REQUEST_CREATE)
    requests = await get_orchestrator().requests.list_user_requests(identity.sub, state, limit, offset)
    return {"requests": [_row(r) for r in requests], "count": len(requests)}


@router.get("/requests/caps")
async def request_caps(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.REQUEST_CREATE)
    caps = await get_orchestrator().requests.get_caps_info(identity.sub)
    return caps.model_dump()


@router.get("/requests/{request_id}")
async def get_request(request_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    if _actor(identity).is_admin:
        return _row(await orch.requests.admin_get_request(request_id))
    return _row(await orch.requests.get_request(identity.sub, request_id))


@router.post("/requests/{request_id}/submit")
async def submit_request(request_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.REQUEST_CREATE)
    return _row(await get_orchestrator().requests.submit_request(identity.sub, request_id))


@router.post("/requests/{request_id}/cancel")
async def cancel_request(request_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.REQUEST_CREATE)
    return _row(await get_orchestrator().requests.cancel_request(identity.sub, request_id))


@router.post("/admin/requests/{request_id}/transition")
async def admin_transition_request(
    request_id: str, body: RequestTransitionRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_REQUEST_MANAGE)
    request = await get_orchestrator().requests.admin_transition(request_id, body.target, _admin_ctx(identity, body))
    return _row(request)


# ── Matching ─────────────────────────────────────────────────────────

@router.get("/matching/{request_id}")
async def matching_state(request_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    state = orch.matching.get_state(request_id)
    if state is None:
        raise HTTPException(404, "No matching state for request")
    if not _actor(identity).is_admin:
        owner = state.request.user_id if state.request else None
        if identity.sub != owner and identity.sub not in {m.agent_id for m in state.active_matches.values()}:
            raise ForbiddenError("Not a participant of this request")
    return state.model_dump(mode="json", exclude={"request"})


@router.get("/matching/{request_id}/agents")
async def matched_agents(
    request_id: str, identity: IdentityContext = Depends(current_identity)
) -> list[dict[str, Any]]:
    """Obfuscated profiles of the agents currently matched to a request."""
    orch = get_orchestrator()
    state = orch.matching.get_state(request_id)
    if state is None:
        raise HTTPException(404, "No matching state for request")
    owner = state.request.user_id if state.request else None
    if identity.sub != owner and not _actor(identity).is_admin:
        raise ForbiddenError("Only the traveler can view matched agents")
    agent_ids = [m.agent_id for m in sorted(state.active_matches.values(), key=lambda m: -m.match_score)]
    views = await orch.matching.repository.get_public_views(agent_ids)
    return [v.model_dump(mode="json") for v in views]


@router.post("/matching/{request_id}/accept")
async def accept_match(request_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require_verified_agent(identity, Permission.MATCHING_RESPOND)
    state = await get_orchestrator().matching.handle_agent_accept(request_id, identity.sub)
    return {"request_id": request_id, "status": state.status, "confirmed_agent_id": state.confirmed_agent_id}


@router.post("/matching/{request_id}/decline")
async def decline_match(
    request_id: str, body: DeclineRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require_verified_agent(identity, Permission.MATCHING_RESPOND)
    state = await get_orchestrator().matching.handle_agent_decline(request_id, identity.sub, body.reason, body.match_id)
    return {"request_id": request_id, "status": state.status, "active_match_ids": state.active_match_ids}


@router.post("/admin/matching/{request_id}/override")
async def override_matching(
    request_id: str, body: OverrideRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_MATCHING_OVERRIDE)
    override = AdminOverrideRequest(
        request_id=request_id,
        admin_user_id=identity.sub,
        action=body.action,
        reason=body.reason,
        target_agent_ids=body.target_agent_ids,
        new_timeout_hours=body.new_timeout_hours,
    )
    state = await get_orchestrator().matching.apply_admin_override(override)
    return state.model_dump(mode="json", exclude={"request"})


# ── Workload ─────────────────────────────────────────────────────────

@router.get("/workload/me")
async def my_workload(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.WORKLOAD_UPDATE_SELF)
    orch = get_orchestrator()
    limits = await orch.workload.get_limits(identity.sub) or await orch.workload.initialize_limits(identity.sub)
    availability = await orch.workload.is_advisor_available(identity.sub)
    return {"limits": _row(limits), "availability": availability.model_dump()}


@router.patch("/workload/me")
async def update_my_workload(body: WorkloadUpdate, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.WORKLOAD_UPDATE_SELF)
    return _row(await get_orchestrator().workload.update_limits(identity.sub, body, actor_id=identity.sub))


@router.put("/workload/me/vacation")
async def set_vacation(body: VacationSettings, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.WORKLOAD_UPDATE_SELF)
    return _row(await get_orchestrator().workload.set_vacation_mode(identity.sub, body))


@router.patch("/admin/workload/{agent_id}")
async def admin_update_workload(
    agent_id: str, body: WorkloadUpdate, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_WORKLOAD_MANAGE)
    return _row(await get_orchestrator().workload.update_limits(agent_id, body, actor_id=identity.sub))


@router.get("/admin/workload/stats")
async def workload_stats(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_WORKLOAD_MANAGE)
    stats = await get_orchestrator().workload.get_workload_stats()
    return stats.model_dump()


# ── Bookings ─────────────────────────────────────────────────────────

# Events each role may send; payment confirmations and dispute events are system driven.
_USER_BOOKING_EVENTS = {BookingEvent.INITIATE_PAYMENT, BookingEvent.CANCEL}
_AGENT_BOOKING_EVENTS = {
    BookingEvent.AGENT_CONFIRM,
    BookingEvent.AGENT_DECLINE,
    BookingEvent.START_TRIP,
    BookingEvent.COMPLETE_TRIP,
    BookingEvent.CANCEL,
}


@router.post("/bookings", status_code=201)
async def create_booking(body: CreateBookingInput, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.BOOKING_CREATE)
    return _row(await get_orchestrator().bookings.create_booking(identity.sub, body))


@router.get("/bookings")
async def list_bookings(
    state: Optional[BookingState] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: IdentityContext = Depends(current_identity),
) -> dict[str, Any]:
    orch = get_orchestrator()
    if identity.role == Role.AGENT:
        bookings = await orch.bookings.list_bookings(agent_id=identity.sub, state=state, limit=limit, offset=offset)
    elif _actor(identity).is_admin:
        bookings = await orch.bookings.list_bookings(state=state, limit=limit, offset=offset)
    else:
        bookings = await orch.bookings.list_bookings(user_id=identity.sub, state=state, limit=limit, offset=offset)
    return {"bookings": [_row(b) for b in bookings], "count": len(bookings)}


@router.get("/bookings/{booking_id}")
async def get_booking(booking_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    booking = await get_orchestrator().bookings.get_booking_for(booking_id, identity.sub, _actor(identity).is_admin)
    return _row(booking)


@router.get("/bookings/{booking_id}/agent")
async def booking_agent(booking_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    await orch.bookings.get_booking_for(booking_id, identity.sub, _actor(identity).is_admin)
    agent = await orch.bookings.get_agent_identity(booking_id, orch.identity)
    return agent.model_dump()


@router.post("/bookings/{booking_id}/events")
async def booking_event(
    booking_id: str, body: BookingEventRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    orch = get_orchestrator()
    actor = _actor(identity)
    booking = await orch.bookings.get_booking_for(booking_id, identity.sub, actor.is_admin)

    if actor.is_admin:
        actor_type = ActorType.ADMIN
    elif identity.sub == booking.agent_id and body.event in _AGENT_BOOKING_EVENTS:
        actor_type = ActorType.AGENT
    elif identity.sub == booking.user_id and body.event in _USER_BOOKING_EVENTS:
        actor_type = ActorType.USER
    else:
        raise ForbiddenError(f"Event {body.event} is not allowed for this actor")

    event = BookingEventInput(
        type=body.event,
        reason=body.reason,
        cancelled_by=actor_type.value if body.event == BookingEvent.CANCEL else None,
        error=body.error,
        payment_intent_id=body.payment_intent_id,
        dispute_id=body.dispute_id,
        outcome=body.outcome,
    )
    booking = await orch.bookings.apply_event(
        booking_id, event, identity.sub, actor_type, expected_version=body.expected_version
    )
    return _row(booking)


# ── Disputes ─────────────────────────────────────────────────────────

@router.post("/disputes", status_code=201)
async def create_dispute(body: CreateDisputeInput, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.DISPUTE_CREATE)
    return _row(await get_orchestrator().disputes.create_dispute(identity.sub, body))


@router.get("/disputes")
async def list_disputes(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    if identity.role == Role.AGENT:
        disputes = await orch.disputes.list_for_agent(identity.sub)
    else:
        disputes = await orch.disputes.list_for_traveler(identity.sub)
    return {"disputes": [_row(d) for d in disputes], "count": len(disputes)}


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    is_admin = _actor(identity).is_admin
    dispute = await orch.disputes.get_dispute_for(dispute_id, identity.sub, is_admin)
    notes = await orch.arbitration.list_notes(dispute_id, include_internal=is_admin)
    if is_admin:
        viewer = DisputeActor.ADMIN
    elif identity.sub == dispute.agent_id:
        viewer = DisputeActor.AGENT
    else:
        viewer = DisputeActor.TRAVELER
    state = DisputeState(dispute.state)
    return {
        **_row(dispute),
        "notes": [_row(n) for n in notes],
        "state_description": get_state_description(state),
        "valid_actions": get_valid_actions(state, viewer),
        "next_states": get_possible_next_states(state),
        "requires_admin_attention": requires_admin_attention(state),
        "is_refund": is_refund_state(state),
    }


@router.post("/disputes/{dispute_id}/evidence", status_code=201)
async def submit_evidence(
    dispute_id: str, body: EvidenceInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    orch = get_orchestrator()
    actor = _actor(identity)
    dispute = await orch.disputes.get_dispute_for(dispute_id, identity.sub, actor.is_admin)
    if actor.is_admin:
        submitter = DisputeActor.ADMIN
    elif identity.sub == dispute.agent_id:
        submitter = DisputeActor.AGENT
    else:
        submitter = DisputeActor.TRAVELER
    return _row(await orch.evidence.submit_evidence(dispute_id, identity.sub, submitter, body))


@router.get("/disputes/{dispute_id}/evidence")
async def list_evidence(dispute_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    orch = get_orchestrator()
    await orch.disputes.get_dispute_for(dispute_id, identity.sub, _actor(identity).is_admin)
    evidence = await orch.evidence.list_evidence(dispute_id)
    return {"evidence": [_row(e) for e in evidence], "count": len(evidence)}


@router.post("/disputes/{dispute_id}/response", status_code=201)
async def respond_to_dispute(
    dispute_id: str, body: AgentResponseInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.DISPUTE_RESPOND)
    return _row(await get_orchestrator().agent_responses.submit_response(dispute_id, identity.sub, body))


@router.post("/disputes/{dispute_id}/withdraw")
async def withdraw_dispute(
    dispute_id: str, body: WithdrawRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.DISPUTE_CREATE)
    return _row(await get_orchestrator().disputes.withdraw(dispute_id, identity.sub, body.reason))


@router.get("/admin/disputes")
async def dispute_queue(
    state: Optional[DisputeState] = None,
    unassigned: bool = False,
    mine: bool = False,
    identity: IdentityContext = Depends(current_identity),
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    disputes = await get_orchestrator().disputes.admin_queue(
        assigned_to=identity.sub if mine else None, unassigned=unassigned, state=state
    )
    return {"disputes": [_row(d) for d in disputes], "count": len(disputes)}


@router.get("/admin/disputes/stats")
async def dispute_stats(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    stats = await get_orchestrator().disputes.get_statistics()
    return stats.model_dump()


@router.post("/admin/disputes/{dispute_id}/review")
async def start_dispute_review(
    dispute_id: str, body: AdminReasonRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    return _row(await get_orchestrator().arbitration.start_review(dispute_id, identity.sub, body.reason))


@router.post("/admin/disputes/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str, body: AdminDecisionInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    return _row(await get_orchestrator().arbitration.resolve(dispute_id, identity.sub, body))


@router.post("/admin/disputes/{dispute_id}/escalate")
async def escalate_dispute(
    dispute_id: str, body: EscalateInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    return _row(await get_orchestrator().arbitration.escalate(dispute_id, identity.sub, body))


@router.post("/admin/disputes/{dispute_id}/notes", status_code=201)
async def add_dispute_note(
    dispute_id: str, body: NoteInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_DISPUTE_ARBITRATE)
    return _row(await get_orchestrator().arbitration.add_note(dispute_id, identity.sub, body))


# ── Reviews ──────────────────────────────────────────────────────────

@router.get("/reviews/eligibility/{booking_id}")
async def review_eligibility(booking_id: str, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.REVIEW_SUBMIT)
    eligibility = await get_orchestrator().reviews.check_eligibility(booking_id, identity.sub)
    return eligibility.model_dump()


@router.post("/reviews", status_code=201)
async def submit_review(body: ReviewSubmission, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.REVIEW_SUBMIT)
    return _row(await get_orchestrator().reviews.submit_review(identity.sub, body))


@router.put("/reviews/{review_id}")
async def update_review(review_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    await get_orchestrator().reviews.update_review(review_id, identity.sub)
    return {"status": "unchanged"}


@router.delete("/reviews/{review_id}")
async def delete_review(review_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    await get_orchestrator().reviews.delete_review(review_id, identity.sub)
    return {"status": "unchanged"}


@router.get("/reviews/{review_id}")
async def get_review(review_id: str) -> dict[str, Any]:
    return _row(await get_orchestrator().reviews.get_review(review_id))


@router.get("/agents/{agent_id}/reviews")
async def agent_reviews(
    agent_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    reviews = await get_orchestrator().reviews.list_agent_reviews(agent_id, limit=limit, offset=offset)
    return {"reviews": [_row(r) for r in reviews], "count": len(reviews)}


@router.get("/agents/{agent_id}/reviews/stats")
async def agent_review_stats(agent_id: str) -> dict[str, Any]:
    stats = await get_orchestrator().reviews.get_aggregated_stats(agent_id)
    return stats.model_dump()


@router.post("/admin/reviews/{review_id}/hide")
async def hide_review(
    review_id: str, body: HideReviewRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_REVIEW_MODERATE)
    return _row(await get_orchestrator().reviews.hide_review(review_id, identity.sub, body.reason))


# ── Trust ────────────────────────────────────────────────────────────

@router.get("/agents/{agent_id}/rating")
async def public_rating(agent_id: str) -> dict[str, Any]:
    rating = await get_orchestrator().scores.get_public_rating(agent_id)
    if rating is None:
        return {"agent_id": agent_id, "visible": False}
    return {"visible": True, **rating.model_dump()}


@router.get("/agents/{agent_id}/response-time")
async def response_time(agent_id: str) -> dict[str, Any]:
    display = await get_orchestrator().response_times.get_display(agent_id)
    return display.model_dump()


@router.get("/response-times")
async def batch_response_times(agent_ids: list[str] = Query(..., max_length=100)) -> dict[str, Any]:
    displays = await get_orchestrator().response_times.get_batch_display(agent_ids)
    return {agent_id: d.model_dump() for agent_id, d in displays.items()}


@router.get("/admin/agents/{agent_id}/score")
async def agent_score(agent_id: str, identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_TRUST_MANAGE)
    orch = get_orchestrator()
    score = await orch.scores.get_score(agent_id)
    history = await orch.scores.get_history(agent_id, limit=20)
    return {**_row(score), "history": [_row(h) for h in history]}


@router.post("/admin/agents/{agent_id}/score/recalculate")
async def recalculate_score(agent_id: str, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.ADMIN_TRUST_MANAGE)
    result = await get_orchestrator().scores.recalculate(agent_id, triggered_by=f"admin:{identity.sub}")
    return result.model_dump()


@router.post("/admin/agents/{agent_id}/score/adjust")
async def adjust_score(
    agent_id: str, body: ScoreAdjustRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_TRUST_MANAGE)
    return _row(await get_orchestrator().scores.adjust_score(agent_id, body.adjustment, _admin_ctx(identity, body)))


@router.post("/admin/agents/{agent_id}/tier")
async def override_tier(
    agent_id: str, body: TierOverrideRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_TRUST_MANAGE)
    return _row(await get_orchestrator().scores.override_tier(agent_id, body.tier, _admin_ctx(identity, body)))


@router.post("/admin/agents/{agent_id}/investigation")
async def set_investigation(
    agent_id: str, body: InvestigationRequest, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.ADMIN_TRUST_MANAGE)
    score = await get_orchestrator().scores.set_investigation(
        agent_id, body.under_investigation, _admin_ctx(identity, body)
    )
    return _row(score)


# ── Wishlist ─────────────────────────────────────────────────────────

@router.get("/wishlist")
async def list_wishlist(
    item_type: Optional[WishlistItemType] = None,
    tags: Optional[list[str]] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=255),
    sort_by: WishlistSort = WishlistSort.RECENT,
    ascending: bool = False,
    identity: IdentityContext = Depends(current_identity),
) -> dict[str, Any]:
    _require(identity, Permission.WISHLIST_MANAGE)
    items = await get_orchestrator().wishlist.list_items(identity.sub, item_type, tags, search, sort_by, ascending)
    return {"items": [_row(i) for i in items], "count": len(items)}


@router.post("/wishlist", status_code=201)
async def add_wishlist_item(body: AddWishlistItemInput, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.WISHLIST_MANAGE)
    return _row(await get_orchestrator().wishlist.add_item(identity.sub, body))


@router.get("/wishlist/summary")
async def wishlist_summary(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.WISHLIST_MANAGE)
    summary = await get_orchestrator().wishlist.summary(identity.sub)
    return summary.model_dump()


@router.get("/wishlist/tags")
async def wishlist_tags(identity: IdentityContext = Depends(current_identity)) -> dict[str, Any]:
    _require(identity, Permission.WISHLIST_MANAGE)
    return {"tags": await get_orchestrator().wishlist.tags(identity.sub)}


@router.post("/wishlist/check")
async def wishlist_check(body: BatchCheckInput, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.WISHLIST_MANAGE)
    return {"saved": await get_orchestrator().wishlist.batch_check(identity.sub, body)}


@router.patch("/wishlist/{wishlist_id}")
async def update_wishlist_item(
    wishlist_id: str, body: UpdateWishlistItemInput, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.WISHLIST_MANAGE)
    return _row(await get_orchestrator().wishlist.update_item(identity.sub, wishlist_id, body))


@router.delete("/wishlist/{wishlist_id}")
async def remove_wishlist_item(wishlist_id: str, identity: IdentityContext = Depends(current_identity)) -> dict:
    _require(identity, Permission.WISHLIST_MANAGE)
    removed = await get_orchestrator().wishlist.remove_item(identity.sub, wishlist_id)
    if not removed:
        raise HTTPException(404, "Wishlist item not found")
    return {"status": "removed", "id": wishlist_id}


@router.delete("/wishlist/items/{item_type}/{item_id}")
async def remove_wishlist_by_key(
    item_type: WishlistItemType, item_id: str, identity: IdentityContext = Depends(current_identity)
) -> dict[str, Any]:
    _require(identity, Permission.WISHLIST_MANAGE)
    removed = await get_orchestrator().wishlist.remove_by_key(identity.sub, item_type, item_id)
    if not removed:
        raise HTTPException(404, "Wishlist item not found")
    return {"status": "removed", "item_type": item_type, "item_id": item_id}
