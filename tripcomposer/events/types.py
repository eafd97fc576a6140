"""Event envelope, metadata and event type names."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from tripcomposer.clock import utcnow


class EventType(StrEnum):
    """Cross-module event names published on the bus."""

    # Matching
    AGENTS_MATCHED = "AgentsMatched"
    AGENT_DECLINED = "AgentDeclined"
    AGENT_ACCEPTED = "AgentAccepted"
    MATCHING_FAILED = "MatchingFailed"
    MATCHING_STATUS_CHANGED = "MatchingStatusChanged"
    ADMIN_OVERRIDE_APPLIED = "AdminOverrideApplied"

    # Disputes
    DISPUTE_CREATED = "DisputeCreated"
    DISPUTE_STATE_CHANGED = "DisputeStateChanged"
    DISPUTE_WITHDRAWN = "DisputeWithdrawn"
    DISPUTE_RESOLVED = "DisputeResolved"
    DISPUTE_ESCALATED = "DisputeEscalated"
    EVIDENCE_SUBMITTED = "EvidenceSubmitted"
    REFUND_APPROVED = "RefundApproved"
    AGENT_RESPONDED_TO_DISPUTE = "AgentRespondedToDispute"

    # Bookings
    BOOKING_STATE_CHANGED = "BookingStateChanged"

    # Requests
    REQUEST_CREATED = "RequestCreated"
    REQUEST_SUBMITTED = "RequestSubmitted"
    REQUEST_STATE_CHANGED = "RequestStateChanged"

    # Trust
    REVIEW_SUBMITTED = "ReviewSubmitted"
    REVIEW_HIDDEN = "ReviewHidden"
    AGENT_SCORE_UPDATED = "AgentScoreUpdated"

    # Identity
    ACCOUNT_STATUS_CHANGED = "AccountStatusChanged"
    AGENT_VERIFICATION_CHANGED = "AgentVerificationChanged"


class ActorType(StrEnum):
    """Kinds of actors that can cause an event."""

    USER = "user"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


class EventMetadata(BaseModel):
    """Audit context attached to every event."""

    actor_id: str
    actor_type: ActorType = ActorType.SYSTEM
    source: str
    correlation_id: str = Field(default_factory=lambda: str(uuid4()))
    causation_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def system(cls, source: str, reason: Optional[str] = None) -> "EventMetadata":
        """Metadata for events raised by background jobs and internal reactions."""
        return cls(actor_id="system", actor_type=ActorType.SYSTEM, source=source, reason=reason)


class EventEnvelope(BaseModel):
    """A published event with its payload and metadata."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_type: str = ""
    aggregate_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata
    occurred_at: dt.datetime = Field(default_factory=utcnow)
    version: int = 1


class HandlerError(BaseModel):
    """Failure reported by a single handler during publish."""

    subscription_id: str
    error: str
    timed_out: bool = False


class PublishResult(BaseModel):
    """Outcome of delivering one event to its handlers."""

    event_id: str
    handlers_invoked: int = 0
    handlers_succeeded: int = 0
    errors: list[HandlerError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
