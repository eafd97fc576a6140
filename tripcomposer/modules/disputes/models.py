"""Dispute tables and request/response schemas."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from tripcomposer.database import Base
from tripcomposer.modules.disputes.state_machine import DisputeState, ResolutionType


class DisputeCategory(StrEnum):
    SERVICE_NOT_PROVIDED = "service_not_provided"
    SERVICE_SIGNIFICANTLY_DIFFERENT = "service_significantly_different"
    SAFETY_CONCERN = "safety_concern"
    UNAUTHORIZED_CHARGES = "unauthorized_charges"
    CANCELLATION_POLICY = "cancellation_policy"
    AGENT_MISCONDUCT = "agent_misconduct"
    OTHER = "other"


class EvidenceType(StrEnum):
    PHOTO = "photo"
    DOCUMENT = "document"
    SCREENSHOT = "screenshot"
    COMMUNICATION_LOG = "communication_log"
    RECEIPT = "receipt"
    VIDEO = "video"
    WRITTEN_STATEMENT = "written_statement"


class EvidenceSource(StrEnum):
    TRAVELER = "traveler"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


class EscalationPriority(StrEnum):
    HIGH = "high"
    CRITICAL = "critical"


class ArbitrationAction(StrEnum):
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_ASSIGNED = "dispute_assigned"
    EVIDENCE_REVIEWED = "evidence_reviewed"
    RESOLUTION_APPROVED = "resolution_approved"
    DISPUTE_ESCALATED = "dispute_escalated"
    NOTE_ADDED = "note_added"


class DisputeErrorCode(StrEnum):
    NOT_FOUND = "DISPUTE_NOT_FOUND"
    BOOKING_NOT_FOUND = "DISPUTE_BOOKING_NOT_FOUND"
    BOOKING_NOT_COMPLETED = "DISPUTE_BOOKING_NOT_COMPLETED"
    NOT_BOOKING_OWNER = "DISPUTE_NOT_BOOKING_OWNER"
    WINDOW_EXPIRED = "DISPUTE_WINDOW_EXPIRED"
    ALREADY_OPEN = "DISPUTE_ALREADY_OPEN"
    DAILY_LIMIT_EXCEEDED = "DISPUTE_DAILY_LIMIT_EXCEEDED"
    NOT_PARTICIPANT = "DISPUTE_NOT_PARTICIPANT"
    EVIDENCE_NOT_ALLOWED = "DISPUTE_EVIDENCE_NOT_ALLOWED"
    EVIDENCE_LIMIT_REACHED = "DISPUTE_EVIDENCE_LIMIT_REACHED"
    EVIDENCE_INVALID_FILE = "DISPUTE_EVIDENCE_INVALID_FILE"
    EVIDENCE_NOT_FOUND = "DISPUTE_EVIDENCE_NOT_FOUND"
    ALREADY_RESPONDED = "DISPUTE_ALREADY_RESPONDED"
    RESPONSE_NOT_ALLOWED = "DISPUTE_RESPONSE_NOT_ALLOWED"
    REASON_REQUIRED = "REASON_REQUIRED"
    SUBJECTIVE_NOT_REFUNDABLE = "DISPUTE_SUBJECTIVE_NOT_REFUNDABLE"
    INVALID_REFUND_AMOUNT = "DISPUTE_INVALID_REFUND_AMOUNT"


# Phrases that mark an "other" complaint as subjective and therefore not refundable
SUBJECTIVE_KEYWORDS = (
    "didn't like",
    "not my taste",
    "expected better",
    "personal preference",
    "changed my mind",
    "regret",
    "weather",
    "too crowded",
    "not as imagined",
)


def is_subjective_complaint(category: DisputeCategory, description: str) -> bool:
    if category != DisputeCategory.OTHER:
        return False
    text = description.lower()
    return any(keyword in text for keyword in SUBJECTIVE_KEYWORDS)


class Dispute(Base):
    """A traveler's complaint against a completed booking."""

    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    traveler_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String(40), nullable=False)
    state = Column(String(24), nullable=False, default=DisputeState.PENDING_EVIDENCE.value, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    is_subjective_complaint = Column(Boolean, default=False, nullable=False)
    booking_amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    agent_response_deadline = Column(DateTime, nullable=True)
    admin_assigned_id = Column(String(36), nullable=True, index=True)
    admin_assigned_at = Column(DateTime, nullable=True)
    escalation_priority = Column(String(8), nullable=True)

    resolution_type = Column(String(24), nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)
    resolution_reason = Column(Text, nullable=True)
    resolution_internal_notes = Column(Text, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False, index=True)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Dispute(id={self.id}, state={self.state})>"


class DisputeEvidence(Base):
    """A file attached to a dispute by one of its participants."""

    __tablename__ = "dispute_evidence"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, index=True)
    evidence_type = Column(String(24), nullable=False)
    source = Column(String(16), nullable=False)
    submitted_by = Column(String(36), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_url = Column(String(2048), nullable=False)
    file_size_bytes = Column(Integer, nullable=False)
    mime_type = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    verified_by = Column(String(36), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


class DisputeAgentResponse(Base):
    """The assigned agent's single answer to a dispute."""

    __tablename__ = "dispute_agent_responses"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, unique=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    response = Column(Text, nullable=False)
    accepts_responsibility = Column(Boolean, default=False, nullable=False)
    proposed_resolution = Column(Text, nullable=True)
    evidence_ids = Column(JSON, nullable=False, default=list)
    submitted_late = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


class DisputeNote(Base):
    __tablename__ = "dispute_notes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, index=True)
    admin_id = Column(String(36), nullable=False)
    note = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


class DisputeArbitration(Base):
    """Admin arbitration history for a dispute."""

    __tablename__ = "dispute_arbitrations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, index=True)
    admin_id = Column(String(36), nullable=False)
    action = Column(String(32), nullable=False)
    reason = Column(Text, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


# =============================================================================
# Pydantic schemas
# =============================================================================


class CreateDisputeInput(BaseModel):
    booking_id: str
    category: DisputeCategory
    title: str = Field(..., min_length=10, max_length=200)
    description: str = Field(..., min_length=50, max_length=5000)


class EvidenceInput(BaseModel):
    evidence_type: EvidenceType
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, max_length=2048)
    file_size_bytes: int = Field(..., gt=0)
    mime_type: str
    description: Optional[str] = Field(default=None, max_length=1000)


class AgentResponseInput(BaseModel):
    response: str = Field(..., min_length=50, max_length=5000)
    accepts_responsibility: bool
    proposed_resolution: Optional[str] = Field(default=None, max_length=2000)
    evidence_ids: list[str] = Field(default_factory=list)


class AdminDecisionInput(BaseModel):
    resolution: ResolutionType
    refund_amount_cents: Optional[int] = Field(default=None, ge=0)
    reason: str = Field(..., min_length=20, max_length=2000)
    internal_notes: Optional[str] = Field(default=None, max_length=5000)

    @model_validator(mode="after")
    def _check_partial_amount(self) -> "AdminDecisionInput":
        if self.resolution == ResolutionType.PARTIAL_REFUND and not self.refund_amount_cents:
            raise ValueError("Refund amount is required for partial refunds")
        return self


class EscalateInput(BaseModel):
    reason: str = Field(..., min_length=20, max_length=2000)
    priority: EscalationPriority


class NoteInput(BaseModel):
    note: str = Field(..., min_length=10, max_length=2000)
    is_internal: bool = True


class DisputeStatistics(BaseModel):
    total: int
    total_open: int
    pending_review: int
    pending_user_response: int
    pending_agent_response: int
    resolved_this_month: int
    average_resolution_days: float
    avg_resolution_time_hours: float
    subjective_complaint_count: int
    by_state: dict[str, int]
    by_category: dict[str, int]


class DeadlineWarning(BaseModel):
    dispute_id: str
    agent_id: str
    deadline: dt.datetime
    hours_remaining: float
