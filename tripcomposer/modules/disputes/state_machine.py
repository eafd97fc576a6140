"""Dispute lifecycle.

pending_evidence -> evidence_submitted -> agent_responded -> under_admin_review
-> resolved_{refund,partial,denied}, with escalation from admin review,
traveler withdrawal from any active state and system expiry of disputes that
never got past evidence collection.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional


class DisputeState(StrEnum):
    PENDING_EVIDENCE = "pending_evidence"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    AGENT_RESPONDED = "agent_responded"
    UNDER_ADMIN_REVIEW = "under_admin_review"
    ESCALATED = "escalated"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_PARTIAL = "resolved_partial"
    RESOLVED_DENIED = "resolved_denied"
    CLOSED_WITHDRAWN = "closed_withdrawn"
    CLOSED_EXPIRED = "closed_expired"


class DisputeAction(StrEnum):
    SUBMIT_EVIDENCE = "submit_evidence"
    AGENT_RESPOND = "agent_respond"
    ADMIN_START_REVIEW = "admin_start_review"
    ADMIN_ESCALATE = "admin_escalate"
    ADMIN_RESOLVE_REFUND = "admin_resolve_refund"
    ADMIN_RESOLVE_PARTIAL = "admin_resolve_partial"
    ADMIN_RESOLVE_DENIED = "admin_resolve_denied"
    TRAVELER_WITHDRAW = "traveler_withdraw"
    SYSTEM_EXPIRE = "system_expire"


class DisputeActor(StrEnum):
    TRAVELER = "traveler"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


class ResolutionType(StrEnum):
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    CREDIT_ISSUED = "credit_issued"
    NO_REFUND_OBJECTIVE = "no_refund_objective"
    NO_REFUND_SUBJECTIVE = "no_refund_subjective"


class TransitionErrorCode(StrEnum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNAUTHORIZED_ACTOR = "UNAUTHORIZED_ACTOR"
    REASON_REQUIRED = "REASON_REQUIRED"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    ALREADY_CLOSED = "ALREADY_CLOSED"


@dataclass(frozen=True)
class StateTransition:
    source: DisputeState
    action: DisputeAction
    target: DisputeState
    allowed_actors: tuple[DisputeActor, ...]
    requires_reason: bool


def _t(source, action, target, actor, requires_reason=True) -> StateTransition:
    return StateTransition(source, action, target, (actor,), requires_reason)


_S = DisputeState
_A = DisputeAction
_TRAVELER, _AGENT, _ADMIN, _SYSTEM = (
    DisputeActor.TRAVELER,
    DisputeActor.AGENT,
    DisputeActor.ADMIN,
    DisputeActor.SYSTEM,
)

STATE_TRANSITIONS: tuple[StateTransition, ...] = (
    _t(_S.PENDING_EVIDENCE, _A.SUBMIT_EVIDENCE, _S.EVIDENCE_SUBMITTED, _TRAVELER, requires_reason=False),
    _t(_S.EVIDENCE_SUBMITTED, _A.AGENT_RESPOND, _S.AGENT_RESPONDED, _AGENT, requires_reason=False),
    _t(_S.EVIDENCE_SUBMITTED, _A.ADMIN_START_REVIEW, _S.UNDER_ADMIN_REVIEW, _ADMIN),
    _t(_S.AGENT_RESPONDED, _A.ADMIN_START_REVIEW, _S.UNDER_ADMIN_REVIEW, _ADMIN),
    _t(_S.UNDER_ADMIN_REVIEW, _A.ADMIN_ESCALATE, _S.ESCALATED, _ADMIN),
    _t(_S.UNDER_ADMIN_REVIEW, _A.ADMIN_RESOLVE_REFUND, _S.RESOLVED_REFUND, _ADMIN),
    _t(_S.UNDER_ADMIN_REVIEW, _A.ADMIN_RESOLVE_PARTIAL, _S.RESOLVED_PARTIAL, _ADMIN),
    _t(_S.UNDER_ADMIN_REVIEW, _A.ADMIN_RESOLVE_DENIED, _S.RESOLVED_DENIED, _ADMIN),
    _t(_S.ESCALATED, _A.ADMIN_RESOLVE_REFUND, _S.RESOLVED_REFUND, _ADMIN),
    _t(_S.ESCALATED, _A.ADMIN_RESOLVE_PARTIAL, _S.RESOLVED_PARTIAL, _ADMIN),
    _t(_S.ESCALATED, _A.ADMIN_RESOLVE_DENIED, _S.RESOLVED_DENIED, _ADMIN),
    _t(_S.PENDING_EVIDENCE, _A.TRAVELER_WITHDRAW, _S.CLOSED_WITHDRAWN, _TRAVELER),
    _t(_S.EVIDENCE_SUBMITTED, _A.TRAVELER_WITHDRAW, _S.CLOSED_WITHDRAWN, _TRAVELER),
    _t(_S.AGENT_RESPONDED, _A.TRAVELER_WITHDRAW, _S.CLOSED_WITHDRAWN, _TRAVELER),
    _t(_S.UNDER_ADMIN_REVIEW, _A.TRAVELER_WITHDRAW, _S.CLOSED_WITHDRAWN, _TRAVELER),
    _t(_S.PENDING_EVIDENCE, _A.SYSTEM_EXPIRE, _S.CLOSED_EXPIRED, _SYSTEM),
    _t(_S.EVIDENCE_SUBMITTED, _A.SYSTEM_EXPIRE, _S.CLOSED_EXPIRED, _SYSTEM),
)

TERMINAL_STATES = frozenset({
    DisputeState.RESOLVED_REFUND,
    DisputeState.RESOLVED_PARTIAL,
    DisputeState.RESOLVED_DENIED,
    DisputeState.CLOSED_WITHDRAWN,
    DisputeState.CLOSED_EXPIRED,
})

ADMIN_ATTENTION_STATES = (
    DisputeState.EVIDENCE_SUBMITTED,
    DisputeState.AGENT_RESPONDED,
    DisputeState.UNDER_ADMIN_REVIEW,
    DisputeState.ESCALATED,
)

STATE_DESCRIPTIONS: dict[DisputeState, str] = {
    DisputeState.PENDING_EVIDENCE: "Awaiting evidence from traveler",
    DisputeState.EVIDENCE_SUBMITTED: "Evidence received, awaiting agent response",
    DisputeState.AGENT_RESPONDED: "Agent has responded, awaiting admin review",
    DisputeState.UNDER_ADMIN_REVIEW: "Under review by admin",
    DisputeState.ESCALATED: "Escalated for senior review",
    DisputeState.RESOLVED_REFUND: "Resolved with full refund",
    DisputeState.RESOLVED_PARTIAL: "Resolved with partial refund",
    DisputeState.RESOLVED_DENIED: "Resolved, refund denied",
    DisputeState.CLOSED_WITHDRAWN: "Withdrawn by traveler",
    DisputeState.CLOSED_EXPIRED: "Expired due to inactivity",
}


@dataclass(frozen=True)
class DisputeTransitionResult:
    success: bool
    new_state: Optional[DisputeState] = None
    error: str = ""
    code: Optional[TransitionErrorCode] = None


def is_terminal(state: DisputeState) -> bool:
    return state in TERMINAL_STATES


def is_refund_state(state: DisputeState) -> bool:
    return state in (DisputeState.RESOLVED_REFUND, DisputeState.RESOLVED_PARTIAL)


def can_submit_evidence(state: DisputeState) -> bool:
    return state in (DisputeState.PENDING_EVIDENCE, DisputeState.EVIDENCE_SUBMITTED)


def requires_admin_attention(state: DisputeState) -> bool:
    return state in ADMIN_ATTENTION_STATES


def get_valid_actions(state: DisputeState, actor: DisputeActor) -> list[DisputeAction]:
    return [t.action for t in STATE_TRANSITIONS if t.source == state and actor in t.allowed_actors]


def get_possible_next_states(state: DisputeState) -> list[DisputeState]:
    seen: list[DisputeState] = []
    for t in STATE_TRANSITIONS:
        if t.source == state and t.target not in seen:
            seen.append(t.target)
    return seen


def _find(state: DisputeState, action: DisputeAction) -> Optional[StateTransition]:
    for t in STATE_TRANSITIONS:
        if t.source == state and t.action == action:
            return t
    return None


def attempt_transition(
    state: DisputeState,
    action: DisputeAction,
    actor: DisputeActor,
    reason: Optional[str] = None,
) -> DisputeTransitionResult:
    """Check a transition; terminal state, then table, then actor, then reason."""
    if is_terminal(state):
        resolved = state.value.startswith("resolved_")
        return DisputeTransitionResult(
            False,
            error=f"Dispute is already {'resolved' if resolved else 'closed'}. No further transitions allowed.",
            code=TransitionErrorCode.ALREADY_RESOLVED if resolved else TransitionErrorCode.ALREADY_CLOSED,
        )

    transition = _find(state, action)
    if transition is None:
        valid = ", ".join(a.value for a in get_valid_actions(state, actor)) or "none"
        return DisputeTransitionResult(
            False,
            error=f"Invalid transition: cannot perform '{action.value}' from state '{state.value}'. "
                  f"Valid actions: {valid}",
            code=TransitionErrorCode.INVALID_TRANSITION,
        )

    if actor not in transition.allowed_actors:
        allowed = ", ".join(a.value for a in transition.allowed_actors)
        return DisputeTransitionResult(
            False,
            error=f"Unauthorized: '{actor.value}' cannot perform '{action.value}'. Allowed actors: {allowed}",
            code=TransitionErrorCode.UNAUTHORIZED_ACTOR,
        )

    if transition.requires_reason and not (reason or "").strip():
        return DisputeTransitionResult(
            False,
            error=f"Reason is required for action '{action.value}'",
            code=TransitionErrorCode.REASON_REQUIRED,
        )

    return DisputeTransitionResult(True, new_state=transition.target)


def can_transition(state: DisputeState, action: DisputeAction, actor: DisputeActor) -> bool:
    return attempt_transition(state, action, actor, reason="validation").success


def get_state_description(state: DisputeState) -> str:
    return STATE_DESCRIPTIONS[state]


def resolution_to_action(resolution: ResolutionType) -> DisputeAction:
    if resolution == ResolutionType.FULL_REFUND:
        return DisputeAction.ADMIN_RESOLVE_REFUND
    if resolution in (ResolutionType.PARTIAL_REFUND, ResolutionType.CREDIT_ISSUED):
        return DisputeAction.ADMIN_RESOLVE_PARTIAL
    return DisputeAction.ADMIN_RESOLVE_DENIED
