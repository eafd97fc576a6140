"""Trust tables (reviews, response events, scores) and schemas."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from tripcomposer.database import Base


class ReviewErrorCode(StrEnum):
    BOOKING_NOT_COMPLETED = "TRUST_REVIEW_001"
    REVIEW_ALREADY_EXISTS = "TRUST_REVIEW_002"
    REVIEW_WINDOW_EXPIRED = "TRUST_REVIEW_003"
    INVALID_RATINGS = "TRUST_REVIEW_004"
    BOOKING_NOT_FOUND = "TRUST_REVIEW_005"
    UNAUTHORIZED = "TRUST_REVIEW_006"
    REVIEW_NOT_FOUND = "TRUST_REVIEW_007"
    REVIEW_IMMUTABLE = "TRUST_REVIEW_008"
    NOT_ELIGIBLE = "TRUST_REVIEW_009"


class ResponseType(StrEnum):
    PROPOSAL_SUBMITTED = "PROPOSAL_SUBMITTED"
    MESSAGE_SENT = "MESSAGE_SENT"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class ResponseTimeLabel(StrEnum):
    NEW = "NEW"
    WITHIN_30_MIN = "WITHIN_30_MIN"
    WITHIN_1_HOUR = "WITHIN_1_HOUR"
    WITHIN_2_HOURS = "WITHIN_2_HOURS"
    WITHIN_4_HOURS = "WITHIN_4_HOURS"
    WITHIN_8_HOURS = "WITHIN_8_HOURS"
    WITHIN_24_HOURS = "WITHIN_24_HOURS"
    MORE_THAN_24_HOURS = "MORE_THAN_24_HOURS"


class ResponseTimeTrend(StrEnum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


class ReliabilityTier(StrEnum):
    NEW = "NEW"
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"
    SUSPENDED = "SUSPENDED"


class ScoreVisibility(StrEnum):
    INTERNAL_ONLY = "INTERNAL_ONLY"
    ADMIN_VISIBLE = "ADMIN_VISIBLE"
    PUBLIC = "PUBLIC"


# ── Tables ───────────────────────────────────────────────────────────


class TrustReview(Base):
    """An immutable traveler review of a completed booking."""

    __tablename__ = "trust_reviews"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    planning_quality = Column(Integer, nullable=False)
    responsiveness = Column(Integer, nullable=False)
    accuracy_vs_promise = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    is_hidden = Column(Boolean, default=False, nullable=False, index=True)
    hidden_at = Column(DateTime, nullable=True)
    hidden_by = Column(String(36), nullable=True)
    hidden_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<TrustReview(id={self.id}, agent={self.agent_id}, rating={self.rating})>"


class ResponseEvent(Base):
    """One request-to-first-response interaction for an agent."""

    __tablename__ = "response_events"
    __table_args__ = (UniqueConstraint("agent_id", "request_id"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    agent_id = Column(String(36), nullable=False, index=True)
    request_id = Column(String(36), nullable=False)
    request_received_at = Column(DateTime, nullable=False, index=True)
    first_response_at = Column(DateTime, nullable=True)
    response_time_minutes = Column(Integer, nullable=True)
    response_type = Column(String(24), nullable=True)
    was_within_business_hours = Column(Boolean, default=False, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


class AgentResponseMetrics(Base):
    """Cached 90-day response time metrics per agent."""

    __tablename__ = "agent_response_metrics"

    agent_id = Column(String(36), primary_key=True)
    total_requests_received = Column(Integer, default=0, nullable=False)
    total_responses = Column(Integer, default=0, nullable=False)
    total_proposals = Column(Integer, default=0, nullable=False)
    total_declined = Column(Integer, default=0, nullable=False)
    total_expired = Column(Integer, default=0, nullable=False)
    response_rate = Column(Float, default=0.0, nullable=False)
    response_time_p50 = Column(Float, nullable=True)
    response_time_p75 = Column(Float, nullable=True)
    response_time_p90 = Column(Float, nullable=True)
    response_time_avg = Column(Float, nullable=True)
    response_time_min = Column(Float, nullable=True)
    response_time_max = Column(Float, nullable=True)
    response_time_label = Column(String(24), default=ResponseTimeLabel.NEW.value, nullable=False)
    business_hours_p50 = Column(Float, nullable=True)
    after_hours_p50 = Column(Float, nullable=True)
    trend = Column(String(12), default=ResponseTimeTrend.STABLE.value, nullable=False)
    trend_change_minutes = Column(Float, default=0.0, nullable=False)
    sample_size = Column(Integer, default=0, nullable=False)
    last_response_at = Column(DateTime, nullable=True)
    last_recalculated_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


class AgentScore(Base):
    """Composite reliability score per agent.

    ``base_score`` is the undecayed composite; ``internal_score`` is the
    base with ``score_decay_applied`` taken off.
    """

    __tablename__ = "agent_scores"

    agent_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    base_score = Column(Float, default=0.0, nullable=False)
    internal_score = Column(Float, default=0.0, nullable=False)
    public_score = Column(Float, default=0.0, nullable=False)
    reliability_tier = Column(String(12), default=ReliabilityTier.NEW.value, nullable=False, index=True)
    breakdown = Column(JSON, nullable=False, default=dict)
    gaming_risk_score = Column(Float, default=0.0, nullable=False)
    is_under_investigation = Column(Boolean, default=False, nullable=False)
    investigation_reason = Column(Text, nullable=True)
    last_review_at = Column(DateTime, nullable=True)
    score_decay_applied = Column(Float, default=0.0, nullable=False)
    visibility = Column(String(16), default=ScoreVisibility.INTERNAL_ONLY.value, nullable=False)
    visibility_reason = Column(Text, nullable=True)
    total_bookings = Column(Integer, default=0, nullable=False)
    total_reviews = Column(Integer, default=0, nullable=False)
    positive_reviews = Column(Integer, default=0, nullable=False)
    neutral_reviews = Column(Integer, default=0, nullable=False)
    negative_reviews = Column(Integer, default=0, nullable=False)
    average_response_time_minutes = Column(Float, default=0.0, nullable=False)
    calculated_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )


class ScoreHistory(Base):
    __tablename__ = "agent_score_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    agent_id = Column(String(36), nullable=False, index=True)
    internal_score = Column(Float, nullable=False)
    public_score = Column(Float, nullable=False)
    reliability_tier = Column(String(12), nullable=False)
    breakdown = Column(JSON, nullable=False, default=dict)
    triggered_by = Column(String(128), nullable=False)
    calculated_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)


# =============================================================================
# Pydantic schemas
# =============================================================================


class ReviewSubmission(BaseModel):
    booking_id: str
    rating: int
    planning_quality: int
    responsiveness: int
    accuracy_vs_promise: int
    comment: Optional[str] = None


class ReviewEligibility(BaseModel):
    booking_id: str
    user_id: str
    agent_id: str
    is_eligible: bool
    reason: Optional[str] = None
    error_code: Optional[ReviewErrorCode] = None
    expires_at: Optional[dt.datetime] = None
    already_reviewed: bool = False


class AggregatedReviewStats(BaseModel):
    agent_id: str
    total_reviews: int
    average_overall_rating: Optional[float] = None
    average_planning_quality: Optional[float] = None
    average_responsiveness: Optional[float] = None
    average_accuracy: Optional[float] = None
    rating_distribution: dict[str, int]
    last_reviewed_at: Optional[dt.datetime] = None
    calculated_at: dt.datetime


class ResponseTimeDisplay(BaseModel):
    label: ResponseTimeLabel
    display_text: str
    short_text: str
    response_rate: int
    trend: ResponseTimeTrend
    trend_text: Optional[str] = None
    is_reliable: bool


class ScoreBreakdown(BaseModel):
    review_score: float = Field(default=0.0, ge=0, le=5)
    review_count: int = 0
    review_weight: float = 0.40
    completion_rate: float = Field(default=0.0, ge=0, le=1)
    completed_bookings: int = 0
    accepted_bookings: int = 0
    completion_weight: float = 0.25
    response_rate: float = Field(default=0.0, ge=0, le=1)
    average_response_time_minutes: float = 0.0
    response_weight: float = 0.20
    dispute_rate: float = Field(default=0.0, ge=0, le=1)
    dispute_count: int = 0
    dispute_weight: float = 0.15


class ReviewStatsInput(BaseModel):
    total_reviews: int = 0
    average_rating: float = 0.0
    positive_reviews: int = 0
    neutral_reviews: int = 0
    negative_reviews: int = 0


class BookingStatsInput(BaseModel):
    completed_bookings: int = 0
    accepted_bookings: int = 0
    cancelled_bookings: int = 0


class ResponseStatsInput(BaseModel):
    total_messages: int = 0
    responded_messages: int = 0
    average_response_time_minutes: float = 0.0


class DisputeStatsInput(BaseModel):
    total_disputes: int = 0
    disputes_against_agent: int = 0
    resolved_in_agent_favor: int = 0


class ScoreCalculationInput(BaseModel):
    agent_id: str
    review_stats: ReviewStatsInput = Field(default_factory=ReviewStatsInput)
    booking_stats: BookingStatsInput = Field(default_factory=BookingStatsInput)
    response_stats: ResponseStatsInput = Field(default_factory=ResponseStatsInput)
    dispute_stats: DisputeStatsInput = Field(default_factory=DisputeStatsInput)


class ScoreRecalculationResult(BaseModel):
    agent_id: str
    previous_internal_score: Optional[float] = None
    internal_score: float
    public_score: float
    reliability_tier: ReliabilityTier
    previous_tier: Optional[ReliabilityTier] = None
    tier_changed: bool
    visibility: ScoreVisibility
    visibility_changed: bool
    history_entry_id: str


class PublicAgentRating(BaseModel):
    agent_id: str
    overall_rating: float
    review_count: int
    reliability_tier: ReliabilityTier
    planning_rating: Optional[float] = None
    responsiveness_rating: Optional[float] = None
    accuracy_rating: Optional[float] = None
    average_response_time: Optional[str] = None
    last_updated_at: dt.datetime
