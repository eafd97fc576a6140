"""Matching types, configuration and the agent performance table."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String

from tripcomposer.config import Settings, get_settings
from tripcomposer.database import Base


class AgentTier(StrEnum):
    STAR = "STAR"
    BENCH = "BENCH"


class AgentAvailability(StrEnum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"
    ON_VACATION = "ON_VACATION"


class AgentSpecialization(StrEnum):
    ADVENTURE = "ADVENTURE"
    HONEYMOON = "HONEYMOON"
    FAMILY = "FAMILY"
    LUXURY = "LUXURY"
    BUDGET = "BUDGET"
    BUSINESS = "BUSINESS"
    SOLO = "SOLO"
    GROUP = "GROUP"
    CRUISE = "CRUISE"
    SAFARI = "SAFARI"


class TripType(StrEnum):
    ADVENTURE = "ADVENTURE"
    HONEYMOON = "HONEYMOON"
    FAMILY = "FAMILY"
    LUXURY = "LUXURY"
    BUDGET = "BUDGET"
    BUSINESS = "BUSINESS"
    SOLO = "SOLO"
    GROUP = "GROUP"


class MatchingStatus(StrEnum):
    PENDING = "PENDING"
    MATCHING_IN_PROGRESS = "MATCHING_IN_PROGRESS"
    AGENTS_MATCHED = "AGENTS_MATCHED"
    AWAITING_AGENT_RESPONSE = "AWAITING_AGENT_RESPONSE"
    AGENT_CONFIRMED = "AGENT_CONFIRMED"
    NO_AGENTS_AVAILABLE = "NO_AGENTS_AVAILABLE"
    MATCHING_FAILED = "MATCHING_FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class DeclineReason(StrEnum):
    AGENT_UNAVAILABLE = "AGENT_UNAVAILABLE"
    AGENT_DECLINED = "AGENT_DECLINED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    WORKLOAD_EXCEEDED = "WORKLOAD_EXCEEDED"
    REGION_MISMATCH = "REGION_MISMATCH"
    SPECIALIZATION_MISMATCH = "SPECIALIZATION_MISMATCH"


class AdminOverrideAction(StrEnum):
    FORCE_MATCH = "FORCE_MATCH"
    FORCE_REMATCH = "FORCE_REMATCH"
    CANCEL_MATCHING = "CANCEL_MATCHING"
    EXTEND_TIMEOUT = "EXTEND_TIMEOUT"
    OVERRIDE_TIER_REQUIREMENT = "OVERRIDE_TIER_REQUIREMENT"


# Primary specialization first.
TRIP_TYPE_SPECIALIZATIONS: dict[TripType, list[AgentSpecialization]] = {
    TripType.ADVENTURE: [AgentSpecialization.ADVENTURE, AgentSpecialization.SOLO],
    TripType.HONEYMOON: [AgentSpecialization.HONEYMOON, AgentSpecialization.LUXURY],
    TripType.FAMILY: [AgentSpecialization.FAMILY, AgentSpecialization.GROUP],
    TripType.LUXURY: [AgentSpecialization.LUXURY, AgentSpecialization.HONEYMOON],
    TripType.BUDGET: [AgentSpecialization.BUDGET, AgentSpecialization.SOLO],
    TripType.BUSINESS: [AgentSpecialization.BUSINESS],
    TripType.SOLO: [AgentSpecialization.SOLO, AgentSpecialization.ADVENTURE, AgentSpecialization.BUDGET],
    TripType.GROUP: [AgentSpecialization.GROUP, AgentSpecialization.FAMILY],
}


# =============================================================================
# Configuration
# =============================================================================


class PeakSeasonConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    allow_single_agent: bool = False
    timeout_hours: int = Field(default=48, ge=1, le=168)


class MatchingConfig(BaseModel):
    """Tunable matching limits; built from settings unless overridden."""

    model_config = ConfigDict(frozen=True)

    min_agents: int = Field(default=2, ge=1, le=10)
    max_agents: int = Field(default=3, ge=1, le=10)
    response_timeout_hours: int = Field(default=24, ge=1, le=168)
    star_min_rating: float = Field(default=4.5, ge=0, le=5)
    star_min_completed_bookings: int = Field(default=10, ge=0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_cooldown_seconds: float = Field(default=300, ge=0)
    enable_bench_fallback: bool = True
    enable_geo_matching: bool = True
    enable_specialization_matching: bool = True
    peak_season: PeakSeasonConfig = Field(default_factory=PeakSeasonConfig)

    @model_validator(mode="after")
    def _check_bounds(self) -> "MatchingConfig":
        if self.min_agents > self.max_agents:
            raise ValueError("min_agents cannot exceed max_agents")
        return self

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MatchingConfig":
        s = settings or get_settings()
        return cls(
            min_agents=s.matching_min_agents,
            max_agents=s.matching_max_agents,
            response_timeout_hours=s.matching_response_timeout_hours,
            star_min_rating=s.matching_star_min_rating,
            star_min_completed_bookings=s.matching_star_min_completed_bookings,
            max_attempts=s.matching_max_attempts,
            retry_cooldown_seconds=s.matching_retry_cooldown_seconds,
            enable_bench_fallback=s.matching_enable_bench_fallback,
            enable_geo_matching=s.matching_enable_geo_matching,
            enable_specialization_matching=s.matching_enable_specialization_matching,
            peak_season=PeakSeasonConfig(
                enabled=s.peak_season_enabled,
                allow_single_agent=s.peak_season_allow_single_agent,
                timeout_hours=s.peak_season_timeout_hours,
            ),
        )


class ScoringWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: float = 0.20
    rating: float = 0.25
    response_time: float = 0.15
    specialization: float = 0.20
    region: float = 0.15
    workload: float = 0.05

    @property
    def total(self) -> float:
        return self.tier + self.rating + self.response_time + self.specialization + self.region + self.workload


# =============================================================================
# Agents, requests and results
# =============================================================================


class MatchingAgent(BaseModel):
    """Internal view of an agent used while scoring."""

    agent_id: str
    first_name: str = ""
    photo_url: Optional[str] = None
    tier: AgentTier = AgentTier.BENCH
    rating: float = Field(default=0.0, ge=0, le=5)
    completed_bookings: int = Field(default=0, ge=0)
    average_response_time_hours: float = Field(default=24.0, ge=0)
    availability: AgentAvailability = AgentAvailability.AVAILABLE
    specializations: list[AgentSpecialization] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    current_workload: int = Field(default=0, ge=0)
    max_workload: int = Field(default=10, ge=1)
    is_active: bool = True


class ObfuscatedAgent(BaseModel):
    """What a traveler sees of a matched agent before confirmation."""

    agent_id: str
    first_name: str
    photo_url: Optional[str] = None
    tier: AgentTier
    rating: float
    completed_bookings: int
    response_time_hours: float
    specializations: list[AgentSpecialization]
    regions: list[str]

    @classmethod
    def from_agent(cls, agent: MatchingAgent) -> "ObfuscatedAgent":
        return cls(
            agent_id=agent.agent_id,
            first_name=agent.first_name,
            photo_url=agent.photo_url,
            tier=agent.tier,
            rating=agent.rating,
            completed_bookings=agent.completed_bookings,
            response_time_hours=agent.average_response_time_hours,
            specializations=agent.specializations,
            regions=agent.regions,
        )


class TravelRequestInput(BaseModel):
    """Request data handed to the matching engine."""

    request_id: str
    user_id: str
    destinations: list[str] = Field(..., min_length=1)
    trip_type: TripType
    start_date: dt.datetime
    end_date: dt.datetime
    travelers: int = Field(..., ge=1, le=100)
    budget_min: float = Field(default=0, ge=0)
    budget_max: float = Field(default=0, ge=0)
    budget_currency: str = Field(default="INR", min_length=3, max_length=3)
    preferences: list[str] = Field(default_factory=list)

    @field_validator("destinations")
    @classmethod
    def _non_blank_destinations(cls, value: list[str]) -> list[str]:
        cleaned = [d.strip() for d in value]
        if any(not d for d in cleaned):
            raise ValueError("destinations must not contain blank entries")
        return cleaned

    @field_validator("budget_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("budget_currency must be a 3-letter code")
        return value.upper()

    @model_validator(mode="after")
    def _check_ranges(self) -> "TravelRequestInput":
        if self.budget_max < self.budget_min:
            raise ValueError("budget_max must be greater than or equal to budget_min")
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ScoreBreakdown(BaseModel):
    tier: float = 0
    rating: float = 0
    response_time: float = 0
    specialization: float = 0
    region: float = 0
    workload: float = 0


class ScoredAgent(BaseModel):
    agent: MatchingAgent
    total_score: float
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    reasons: list[str] = Field(default_factory=list)
    exclusion_reason: Optional[str] = None


class AgentMatch(BaseModel):
    match_id: str
    agent_id: str
    request_id: str
    tier: AgentTier
    match_score: float
    match_reasons: list[str] = Field(default_factory=list)
    matched_at: dt.datetime
    expires_at: dt.datetime


class MatchingResult(BaseModel):
    request_id: str
    status: MatchingStatus
    matches: list[AgentMatch] = Field(default_factory=list)
    star_agents_count: int = 0
    bench_agents_count: int = 0
    total_candidates_evaluated: int = 0
    matching_duration_ms: float = 0
    is_peak_season: bool = False
    attempt: int = 1
    completed_at: dt.datetime


class AgentDecline(BaseModel):
    match_id: Optional[str] = None
    agent_id: str
    request_id: str
    reason: DeclineReason
    declined_at: dt.datetime


class AdminOverrideRequest(BaseModel):
    request_id: str
    admin_user_id: str
    action: AdminOverrideAction
    reason: str = Field(..., min_length=10, max_length=1000)
    target_agent_ids: Optional[list[str]] = None
    new_timeout_hours: Optional[int] = Field(default=None, ge=1, le=168)


class RequestMatchingState(BaseModel):
    """Engine bookkeeping for one travel request."""

    request_id: str
    request: Optional[TravelRequestInput] = None
    status: MatchingStatus = MatchingStatus.PENDING
    current_attempt: int = 0
    excluded_agent_ids: set[str] = Field(default_factory=set)
    active_match_ids: list[str] = Field(default_factory=list)
    active_matches: dict[str, AgentMatch] = Field(default_factory=dict)
    declines: list[AgentDecline] = Field(default_factory=list)
    last_result: Optional[MatchingResult] = None
    confirmed_agent_id: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


# =============================================================================
# Persistence
# =============================================================================


class AgentPerformanceRecord(Base):
    """Tier, ratings and matching attributes for a travel agent."""

    __tablename__ = "matching_agents"

    agent_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    tier = Column(String(16), nullable=False, default=AgentTier.BENCH.value, index=True)
    rating = Column(Float, nullable=False, default=0.0)
    completed_bookings = Column(Integer, nullable=False, default=0)
    average_response_time_hours = Column(Float, nullable=False, default=24.0)
    availability = Column(String(16), nullable=False, default=AgentAvailability.AVAILABLE.value)
    specializations = Column(JSON, nullable=False, default=list)
    regions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    last_active_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AgentPerformanceRecord(agent_id={self.agent_id}, tier={self.tier}, rating={self.rating})>"
