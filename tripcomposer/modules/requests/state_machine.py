"""Travel request lifecycle.

draft -> submitted -> matching -> matched -> completed, with expired
(from submitted/matching) and cancelled (from any non-terminal state).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional


class RequestState(StrEnum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    MATCHING = "matching"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class TransitionTrigger(StrEnum):
    USER_ACTION = "user_action"
    SYSTEM_AUTO = "system_auto"
    ADMIN_ACTION = "admin_action"
    EXTERNAL_EVENT = "external_event"


STATE_TRANSITIONS: dict[RequestState, tuple[RequestState, ...]] = {
    RequestState.DRAFT: (RequestState.SUBMITTED, RequestState.CANCELLED),
    RequestState.SUBMITTED: (RequestState.MATCHING, RequestState.CANCELLED, RequestState.EXPIRED),
    RequestState.MATCHING: (RequestState.MATCHED, RequestState.CANCELLED, RequestState.EXPIRED),
    RequestState.MATCHED: (RequestState.COMPLETED, RequestState.CANCELLED),
    RequestState.EXPIRED: (),
    RequestState.CANCELLED: (),
    RequestState.COMPLETED: (),
}

STATE_LABELS: dict[RequestState, str] = {
    RequestState.DRAFT: "Draft",
    RequestState.SUBMITTED: "Submitted",
    RequestState.MATCHING: "Finding Agents",
    RequestState.MATCHED: "Agent Matched",
    RequestState.EXPIRED: "Expired",
    RequestState.CANCELLED: "Cancelled",
    RequestState.COMPLETED: "Completed",
}

# Count toward the per-user open request limit
OPEN_REQUEST_STATES = (
    RequestState.DRAFT,
    RequestState.SUBMITTED,
    RequestState.MATCHING,
    RequestState.MATCHED,
)

# Requests created today in these states count toward the daily cap
DAILY_CAP_COUNTED_STATES = OPEN_REQUEST_STATES + (RequestState.COMPLETED,)

# States the expiry sweep may move to expired
EXPIRABLE_STATES = (RequestState.SUBMITTED, RequestState.MATCHING)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    new_state: Optional[RequestState] = None
    error_code: Optional[str] = None
    message: str = ""


def get_valid_transitions(state: RequestState) -> tuple[RequestState, ...]:
    return STATE_TRANSITIONS[state]


def is_terminal(state: RequestState) -> bool:
    return not STATE_TRANSITIONS[state]


def is_valid_transition(current: RequestState, target: RequestState) -> bool:
    return target in STATE_TRANSITIONS[current]


def validate_transition(current: RequestState, target: RequestState) -> TransitionResult:
    if is_terminal(current):
        return TransitionResult(
            False,
            error_code="TERMINAL_STATE",
            message=f"Cannot transition from terminal state '{current.value}'",
        )
    if not is_valid_transition(current, target):
        valid = ", ".join(s.value for s in get_valid_transitions(current)) or "none"
        return TransitionResult(
            False,
            error_code="INVALID_TRANSITION",
            message=f"Invalid transition from '{current.value}' to '{target.value}'. Valid transitions: {valid}",
        )
    return TransitionResult(True, new_state=target)
