"""Trust: immutable reviews, response time metrics and agent scores."""

from tripcomposer.modules.trust.models import (
    AgentScore,
    ReliabilityTier,
    ResponseType,
    ReviewErrorCode,
    ReviewSubmission,
    ScoreCalculationInput,
    ScoreVisibility,
    TrustReview,
)
from tripcomposer.modules.trust.response_time import ResponseTimeService, format_display, percentile
from tripcomposer.modules.trust.reviews import ReviewService
from tripcomposer.modules.trust.score_calculator import ScoreCalculatorService, round_to_half

__all__ = [
    "AgentScore",
    "ReliabilityTier",
    "ResponseTimeService",
    "ResponseType",
    "ReviewErrorCode",
    "ReviewService",
    "ReviewSubmission",
    "ScoreCalculationInput",
    "ScoreCalculatorService",
    "ScoreVisibility",
    "TrustReview",
    "format_display",
    "percentile",
    "round_to_half",
]
