"""Agent scoring: weighted component scores with human-readable reasons."""

from __future__ import annotations

from typing import Optional

from tripcomposer.logging_config import get_logger
from tripcomposer.modules.matching.models import (
    TRIP_TYPE_SPECIALIZATIONS,
    AgentAvailability,
    AgentTier,
    MatchingAgent,
    MatchingConfig,
    ScoreBreakdown,
    ScoredAgent,
    ScoringWeights,
    TravelRequestInput,
)

logger = get_logger(__name__)

_WEIGHT_TOLERANCE = 0.001


class ScoringConfigurationError(ValueError):
    """Raised when scoring weights do not sum to 1."""


class AgentScorer:
    """Scores candidate agents against a travel request."""

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        weights: Optional[ScoringWeights] = None,
    ) -> None:
        self._config = config or MatchingConfig.from_settings()
        self._weights = weights or ScoringWeights()
        if abs(self._weights.total - 1.0) > _WEIGHT_TOLERANCE:
            raise ScoringConfigurationError(
                f"Scoring weights must sum to 1.0, got {self._weights.total:.3f}"
            )

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def score_agents(self, agents: list[MatchingAgent], request: TravelRequestInput) -> list[ScoredAgent]:
        """Score every agent and return the eligible ones, best first."""
        eligible: list[ScoredAgent] = []
        for agent in agents:
            scored = self.score_agent(agent, request)
            if scored.exclusion_reason:
                logger.debug(
                    "agent_excluded",
                    agent_id=agent.agent_id,
                    request_id=request.request_id,
                    reason=scored.exclusion_reason,
                )
                continue
            eligible.append(scored)
        eligible.sort(key=lambda s: s.total_score, reverse=True)
        return eligible

    def score_agent(self, agent: MatchingAgent, request: TravelRequestInput) -> ScoredAgent:
        exclusion = self.exclusion_reason(agent)
        if exclusion:
            return ScoredAgent(agent=agent, total_score=0, exclusion_reason=exclusion)

        reasons: list[str] = []
        tier, reason = self._tier_score(agent)
        reasons.append(reason)
        rating, reason = self._rating_score(agent)
        if reason:
            reasons.append(reason)
        response, reason = self._response_score(agent)
        if reason:
            reasons.append(reason)
        specialization, reason = self._specialization_score(agent, request)
        if reason:
            reasons.append(reason)
        region, reason = self._region_score(agent, request)
        if reason:
            reasons.append(reason)
        workload, reason = self._workload_score(agent)
        if reason:
            reasons.append(reason)

        breakdown = ScoreBreakdown(
            tier=tier,
            rating=rating,
            response_time=response,
            specialization=specialization,
            region=region,
            workload=workload,
        )
        w = self._weights
        total = (
            tier * w.tier
            + rating * w.rating
            + response * w.response_time
            + specialization * w.specialization
            + region * w.region
            + workload * w.workload
        )
        return ScoredAgent(agent=agent, total_score=round(total, 2), breakdown=breakdown, reasons=reasons)

    @staticmethod
    def exclusion_reason(agent: MatchingAgent) -> Optional[str]:
        if not agent.is_active:
            return "Agent is not active"
        if agent.availability != AgentAvailability.AVAILABLE:
            return f"Agent unavailable: {agent.availability.value}"
        if agent.current_workload >= agent.max_workload:
            return "Agent at maximum workload capacity"
        return None

    # ── Components ───────────────────────────────────────────────────

    def meets_star_thresholds(self, agent: MatchingAgent) -> bool:
        return (
            agent.rating >= self._config.star_min_rating
            and agent.completed_bookings >= self._config.star_min_completed_bookings
        )

    def _tier_score(self, agent: MatchingAgent) -> tuple[float, str]:
        if agent.tier == AgentTier.STAR:
            if self.meets_star_thresholds(agent):
                return 100, "Star-tier agent with verified high performance"
            return 85, "Star-tier agent (grandfathered status)"
        if agent.completed_bookings >= self._config.star_min_completed_bookings / 2:
            return 60, "Experienced bench agent"
        return 40, "Newer bench agent building reputation"

    @staticmethod
    def _rating_score(agent: MatchingAgent) -> tuple[float, Optional[str]]:
        score = agent.rating / 5 * 100
        if agent.rating >= 4.8:
            return score, "Exceptional rating (4.8+)"
        if agent.rating >= 4.5:
            return score, "Excellent rating (4.5+)"
        if agent.rating >= 4.0:
            return score, "Good rating (4.0+)"
        return score, None

    @staticmethod
    def _response_score(agent: MatchingAgent) -> tuple[float, Optional[str]]:
        hours = agent.average_response_time_hours
        if hours <= 1:
            return 100, "Extremely fast responder (<1 hour)"
        if hours <= 4:
            return 90, "Very fast responder (<4 hours)"
        if hours <= 12:
            return 75, "Fast responder (<12 hours)"
        if hours <= 24:
            return 60, "Same-day responder"
        if hours <= 48:
            return 40, None
        return 20, None

    def _specialization_score(
        self, agent: MatchingAgent, request: TravelRequestInput
    ) -> tuple[float, Optional[str]]:
        if not self._config.enable_specialization_matching:
            return 50, None
        desired = TRIP_TYPE_SPECIALIZATIONS.get(request.trip_type, [])
        matched = [s for s in desired if s in agent.specializations]
        if not matched:
            return 30, None
        if desired and desired[0] in agent.specializations:
            return 100, f"Primary specialization match: {desired[0].value}"
        return 70, f"Secondary specialization match: {', '.join(s.value for s in matched)}"

    def _region_score(self, agent: MatchingAgent, request: TravelRequestInput) -> tuple[float, Optional[str]]:
        if not self._config.enable_geo_matching:
            return 50, None
        if not agent.regions:
            return 40, None

        regions = [r.lower() for r in agent.regions]
        matched = [
            d for d in request.destinations
            if any(r in d.lower() or d.lower() in r for r in regions)
        ]
        if not matched:
            return 20, None
        ratio = len(matched) / len(request.destinations)
        if ratio >= 1:
            return 100, f"Expert in all destinations: {', '.join(matched)}"
        if ratio >= 0.5:
            return 70, f"Expert in some destinations: {', '.join(matched)}"
        return 50, None

    @staticmethod
    def _workload_score(agent: MatchingAgent) -> tuple[float, Optional[str]]:
        capacity = (agent.max_workload - agent.current_workload) / agent.max_workload
        if capacity >= 0.8:
            return 100, "High availability"
        if capacity >= 0.5:
            return 70, "Moderate availability"
        if capacity >= 0.2:
            return 40, None
        return 20, None
