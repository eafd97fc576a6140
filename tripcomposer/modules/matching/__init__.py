"""Agent matching: scoring, star/bench selection and per-request state."""

from tripcomposer.modules.matching.engine import MatchingEngine
from tripcomposer.modules.matching.models import (
    AdminOverrideAction,
    AdminOverrideRequest,
    AgentMatch,
    AgentTier,
    DeclineReason,
    MatchingAgent,
    MatchingConfig,
    MatchingResult,
    MatchingStatus,
    TravelRequestInput,
    TripType,
)
from tripcomposer.modules.matching.repository import AgentRepository
from tripcomposer.modules.matching.scoring import AgentScorer
from tripcomposer.modules.matching.selection import AgentSelector

__all__ = [
    "AdminOverrideAction",
    "AdminOverrideRequest",
    "AgentMatch",
    "AgentRepository",
    "AgentScorer",
    "AgentSelector",
    "AgentTier",
    "DeclineReason",
    "MatchingAgent",
    "MatchingConfig",
    "MatchingEngine",
    "MatchingResult",
    "MatchingStatus",
    "TravelRequestInput",
    "TripType",
]
