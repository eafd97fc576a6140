"""Composite agent reliability scores.

The internal score blends four components on a 0-5 scale:

    review      40%  average star rating
    completion  25%  completed / accepted bookings
    response    20%  responded / received requests
    dispute     15%  inverted share of bookings disputed against the agent

Scores decay once an agent goes without reviews for longer than the
configured threshold, up to 30%. The public score is the decayed score
rounded to the nearest half star and is only shown once an agent has
enough reviews.
"""

from __future__ import annotations

import datetime as dt
import math
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.config import get_settings
from tripcomposer.database import session_scope
from tripcomposer.errors import NotFoundError, ValidationFailedError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings.models import Booking
from tripcomposer.modules.bookings.state_machine import BookingState
from tripcomposer.modules.disputes.models import Dispute
from tripcomposer.modules.disputes.state_machine import DisputeState
from tripcomposer.modules.identity.models import AdminActionContext
from tripcomposer.modules.trust.models import (
    AgentResponseMetrics,
    AgentScore,
    BookingStatsInput,
    DisputeStatsInput,
    PublicAgentRating,
    ReliabilityTier,
    ResponseStatsInput,
    ReviewStatsInput,
    ScoreBreakdown,
    ScoreCalculationInput,
    ScoreHistory,
    ScoreRecalculationResult,
    ScoreVisibility,
    TrustReview,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

SOURCE = "trust"

SCORE_WEIGHTS = {"review": 0.40, "completion": 0.25, "response": 0.20, "dispute": 0.15}

MAX_DECAY = 0.3
DECAY_PER_DAY = 0.001
MIN_CATEGORY_RATINGS = 3

# Completed trips and score needed per tier, best first
TIER_THRESHOLDS = (
    (ReliabilityTier.PLATINUM, 200, 4.5),
    (ReliabilityTier.GOLD, 51, 4.0),
    (ReliabilityTier.SILVER, 11, 3.5),
    (ReliabilityTier.BRONZE, 3, 3.0),
)
MIN_BOOKINGS_FOR_TIER = 3

# Dispute outcomes that do not count against the agent
_AGENT_CLEARED_STATES = (
    DisputeState.RESOLVED_DENIED.value,
    DisputeState.CLOSED_WITHDRAWN.value,
    DisputeState.CLOSED_EXPIRED.value,
)


# ── Pure scoring ─────────────────────────────────────────────────────


def round_to_half(value: float) -> float:
    """Round to the nearest 0.5, halves rounding up."""
    return math.floor(value * 2 + 0.5) / 2


def calculate_breakdown(data: ScoreCalculationInput) -> ScoreBreakdown:
    reviews, bookings = data.review_stats, data.booking_stats
    responses, disputes = data.response_stats, data.dispute_stats

    total_bookings = bookings.completed_bookings + bookings.cancelled_bookings
    return ScoreBreakdown(
        review_score=reviews.average_rating if reviews.total_reviews > 0 else 0.0,
        review_count=reviews.total_reviews,
        review_weight=SCORE_WEIGHTS["review"],
        completion_rate=(
            min(1.0, bookings.completed_bookings / bookings.accepted_bookings) if bookings.accepted_bookings else 0.0
        ),
        completed_bookings=bookings.completed_bookings,
        accepted_bookings=bookings.accepted_bookings,
        completion_weight=SCORE_WEIGHTS["completion"],
        response_rate=(
            min(1.0, responses.responded_messages / responses.total_messages) if responses.total_messages else 0.0
        ),
        average_response_time_minutes=responses.average_response_time_minutes,
        response_weight=SCORE_WEIGHTS["response"],
        dispute_rate=min(1.0, disputes.disputes_against_agent / total_bookings) if total_bookings else 0.0,
        dispute_count=disputes.disputes_against_agent,
        dispute_weight=SCORE_WEIGHTS["dispute"],
    )


def calculate_composite(breakdown: ScoreBreakdown) -> float:
    composite = (
        breakdown.review_score * breakdown.review_weight
        + breakdown.completion_rate * 5 * breakdown.completion_weight
        + breakdown.response_rate * 5 * breakdown.response_weight
        + (1 - breakdown.dispute_rate) * 5 * breakdown.dispute_weight
    )
    return min(5.0, max(0.0, composite))


def calculate_decay(
    last_review_at: Optional[dt.datetime], threshold_days: int, now: Optional[dt.datetime] = None
) -> float:
    """Fraction to take off the score: 0.1% per day past the threshold, capped at 30%."""
    if last_review_at is None:
        return 0.0
    days = ((now or utcnow()) - as_utc(last_review_at)).total_seconds() / 86400
    if days <= threshold_days:
        return 0.0
    return min(MAX_DECAY, (days - threshold_days) * DECAY_PER_DAY)


def calculate_reliability_tier(completed_bookings: int, score: float, suspended: bool = False) -> ReliabilityTier:
    if suspended:
        return ReliabilityTier.SUSPENDED
    if completed_bookings < MIN_BOOKINGS_FOR_TIER:
        return ReliabilityTier.NEW
    for tier, min_bookings, min_score in TIER_THRESHOLDS:
        if completed_bookings >= min_bookings and score >= min_score:
            return tier
    return ReliabilityTier.NEW


def determine_visibility(
    review_count: int, under_investigation: bool, min_reviews: int
) -> tuple[ScoreVisibility, Optional[str]]:
    if under_investigation:
        return ScoreVisibility.INTERNAL_ONLY, "Under investigation"
    if review_count < min_reviews:
        return ScoreVisibility.INTERNAL_ONLY, f"Requires at least {min_reviews} reviews for public display"
    return ScoreVisibility.PUBLIC, None


def category_averages(reviews: Iterable[TrustReview]) -> dict[str, Optional[float]]:
    """Half-star averages per rating dimension, or None below three ratings."""
    fields = {
        "planning": "planning_quality",
        "responsiveness": "responsiveness",
        "accuracy": "accuracy_vs_promise",
    }
    values: dict[str, list[int]] = {key: [] for key in fields}
    for review in reviews:
        for key, attr in fields.items():
            rating = getattr(review, attr)
            if rating:
                values[key].append(rating)
    return {
        key: round_to_half(sum(ratings) / len(ratings)) if len(ratings) >= MIN_CATEGORY_RATINGS else None
        for key, ratings in values.items()
    }


def format_response_time(minutes: Optional[float]) -> Optional[str]:
    if not minutes:
        return None
    if minutes < 60:
        return f"Usually responds within {round(minutes)} minutes"
    if minutes < 120:
        return "Usually responds within an hour"
    if minutes < 240:
        return "Usually responds within a few hours"
    if minutes < 1440:
        return "Usually responds within a day"
    return "Response time varies"


# ── Service ──────────────────────────────────────────────────────────


class ScoreCalculatorService:
    """Calculates, stores and administers agent scores."""

    def __init__(self, session: Optional[AsyncSession] = None, event_bus: Optional[EventBus] = None) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()
        self._settings = get_settings()

    async def gather_inputs(self, agent_id: str) -> ScoreCalculationInput:
        """Collect review, booking, response and dispute counts for one agent."""
        async with session_scope(self._session) as session:
            review_row = (
                await session.execute(
                    select(
                        func.count(TrustReview.id),
                        func.avg(TrustReview.rating),
                        func.sum(case((TrustReview.rating >= 4, 1), else_=0)),
                        func.sum(case((TrustReview.rating == 3, 1), else_=0)),
                        func.sum(case((TrustReview.rating <= 2, 1), else_=0)),
                    ).where(TrustReview.agent_id == agent_id, TrustReview.is_hidden.is_(False))
                )
            ).one()

            bookings = (await session.execute(select(Booking).where(Booking.agent_id == agent_id))).scalars().all()
            metrics = await session.get(AgentResponseMetrics, agent_id)
            disputes = (
                await session.execute(select(Dispute.state).where(Dispute.agent_id == agent_id))
            ).scalars().all()

        total_reviews, avg_rating, positive, neutral, negative = review_row
        completed = sum(1 for b in bookings if b.trip_completed_at is not None)
        accepted = sum(1 for b in bookings if b.agent_confirmed_at is not None)
        cancelled = sum(1 for b in bookings if b.state == BookingState.CANCELLED.value)
        cleared = sum(1 for state in disputes if state in _AGENT_CLEARED_STATES)

        return ScoreCalculationInput(
            agent_id=agent_id,
            review_stats=ReviewStatsInput(
                total_reviews=total_reviews or 0,
                average_rating=float(avg_rating or 0.0),
                positive_reviews=positive or 0,
                neutral_reviews=neutral or 0,
                negative_reviews=negative or 0,
            ),
            booking_stats=BookingStatsInput(
                completed_bookings=completed, accepted_bookings=accepted, cancelled_bookings=cancelled
            ),
            response_stats=ResponseStatsInput(
                total_messages=metrics.total_requests_received if metrics else 0,
                responded_messages=metrics.total_responses if metrics else 0,
                average_response_time_minutes=(metrics.response_time_avg or 0.0) if metrics else 0.0,
            ),
            dispute_stats=DisputeStatsInput(
                total_disputes=len(disputes),
                disputes_against_agent=len(disputes) - cleared,
                resolved_in_agent_favor=sum(1 for s in disputes if s == DisputeState.RESOLVED_DENIED.value),
            ),
        )

    async def recalculate(self, agent_id: str, triggered_by: str) -> ScoreRecalculationResult:
        return await self.calculate_score(await self.gather_inputs(agent_id), triggered_by)

    async def calculate_score(
        self, data: ScoreCalculationInput, triggered_by: str, now: Optional[dt.datetime] = None
    ) -> ScoreRecalculationResult:
        """Recompute and store an agent's score, appending a history entry."""
        now = now or utcnow()
        breakdown = calculate_breakdown(data)
        base = calculate_composite(breakdown)
        reviews = data.review_stats

        async with session_scope(self._session) as session:
            score = await session.get(AgentScore, data.agent_id)
            previous = None
            if score is None:
                score = AgentScore(agent_id=data.agent_id, created_at=now)
                session.add(score)
            else:
                previous = (score.internal_score, ReliabilityTier(score.reliability_tier), score.visibility)

            if reviews.total_reviews > (score.total_reviews or 0):
                score.last_review_at = now
            decay = calculate_decay(score.last_review_at, self._settings.score_decay_factor_days, now=now)
            internal = base * (1 - decay)
            suspended = previous is not None and previous[1] == ReliabilityTier.SUSPENDED
            tier = calculate_reliability_tier(breakdown.completed_bookings, internal, suspended)
            visibility, visibility_reason = determine_visibility(
                reviews.total_reviews, bool(score.is_under_investigation), self._settings.score_min_reviews_for_public
            )

            score.base_score = base
            score.internal_score = internal
            score.public_score = round_to_half(internal)
            score.reliability_tier = tier.value
            score.breakdown = breakdown.model_dump()
            score.score_decay_applied = decay
            score.visibility = visibility.value
            score.visibility_reason = visibility_reason
            score.total_bookings = data.booking_stats.completed_bookings + data.booking_stats.cancelled_bookings
            score.total_reviews = reviews.total_reviews
            score.positive_reviews = reviews.positive_reviews
            score.neutral_reviews = reviews.neutral_reviews
            score.negative_reviews = reviews.negative_reviews
            score.average_response_time_minutes = data.response_stats.average_response_time_minutes
            score.calculated_at = now

            history = ScoreHistory(
                agent_id=data.agent_id,
                internal_score=internal,
                public_score=score.public_score,
                reliability_tier=tier.value,
                breakdown=score.breakdown,
                triggered_by=triggered_by,
                calculated_at=now,
            )
            session.add(history)
            await session.flush()

        result = ScoreRecalculationResult(
            agent_id=data.agent_id,
            previous_internal_score=previous[0] if previous else None,
            internal_score=internal,
            public_score=score.public_score,
            reliability_tier=tier,
            previous_tier=previous[1] if previous else None,
            tier_changed=previous is not None and previous[1] != tier,
            visibility=visibility,
            visibility_changed=previous is not None and previous[2] != visibility.value,
            history_entry_id=history.id,
        )
        await self._publish_update(score, triggered_by, EventMetadata.system(SOURCE))
        logger.info(
            "agent_score_calculated",
            agent_id=data.agent_id,
            internal_score=round(internal, 3),
            tier=tier.value,
            triggered_by=triggered_by,
        )
        return result

    async def _publish_update(self, score: AgentScore, triggered_by: str, metadata: EventMetadata) -> None:
        await self._bus.publish(
            EventType.AGENT_SCORE_UPDATED,
            {
                "agent_id": score.agent_id,
                "internal_score": score.internal_score,
                "public_score": score.public_score,
                "reliability_tier": score.reliability_tier,
                "visibility": score.visibility,
                "completed_bookings": (score.breakdown or {}).get("completed_bookings", 0),
                "average_response_time_minutes": score.average_response_time_minutes,
                "triggered_by": triggered_by,
            },
            metadata,
            aggregate_type="AgentScore",
            aggregate_id=score.agent_id,
        )

    # ── Reads ────────────────────────────────────────────────────────

    async def get_score(self, agent_id: str) -> AgentScore:
        async with session_scope(self._session) as session:
            score = await session.get(AgentScore, agent_id)
        if score is None:
            raise NotFoundError(f"No score found for agent {agent_id}", code="SCORE_NOT_FOUND")
        return score

    async def get_history(self, agent_id: str, limit: int = 50) -> list[ScoreHistory]:
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(ScoreHistory)
                .where(ScoreHistory.agent_id == agent_id)
                .order_by(ScoreHistory.calculated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_public_rating(self, agent_id: str) -> Optional[PublicAgentRating]:
        """The rating shown to travelers, or None while the score is not public."""
        async with session_scope(self._session) as session:
            score = await session.get(AgentScore, agent_id)
            if score is None or score.visibility != ScoreVisibility.PUBLIC.value:
                return None
            result = await session.execute(
                select(TrustReview)
                .where(TrustReview.agent_id == agent_id, TrustReview.is_hidden.is_(False))
                .order_by(TrustReview.created_at.desc())
                .limit(100)
            )
            averages = category_averages(result.scalars().all())

        return PublicAgentRating(
            agent_id=agent_id,
            overall_rating=score.public_score,
            review_count=score.total_reviews,
            reliability_tier=ReliabilityTier(score.reliability_tier),
            planning_rating=averages["planning"],
            responsiveness_rating=averages["responsiveness"],
            accuracy_rating=averages["accuracy"],
            average_response_time=format_response_time(score.average_response_time_minutes),
            last_updated_at=as_utc(score.updated_at),
        )

    # ── Maintenance ──────────────────────────────────────────────────

    async def apply_decay_to_all(self, now: Optional[dt.datetime] = None) -> int:
        """Apply time decay to every score whose last review is past the threshold.

        Decay is always taken off the undecayed base, so repeated runs do
        not compound.
        """
        now = now or utcnow()
        threshold = self._settings.score_decay_factor_days
        cutoff = (now - dt.timedelta(days=threshold)).replace(tzinfo=None)
        updated = 0
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AgentScore).where(AgentScore.last_review_at.is_not(None), AgentScore.last_review_at < cutoff)
            )
            for score in result.scalars().all():
                decay = calculate_decay(score.last_review_at, threshold, now=now)
                if decay <= score.score_decay_applied:
                    continue
                score.internal_score = score.base_score * (1 - decay)
                score.public_score = round_to_half(score.internal_score)
                score.score_decay_applied = decay
                score.calculated_at = now
                updated += 1
        logger.info("score_decay_applied", updated=updated)
        return updated

    # ── Admin ────────────────────────────────────────────────────────

    async def _admin_update(
        self,
        agent_id: str,
        ctx: AdminActionContext,
        action: str,
        details: dict[str, Any],
        apply: Callable[[AgentScore], None],
    ) -> AgentScore:
        async with session_scope(self._session) as session:
            score = await session.get(AgentScore, agent_id)
            if score is None:
                raise NotFoundError(f"No score found for agent {agent_id}", code="SCORE_NOT_FOUND")
            apply(score)
            score.calculated_at = utcnow()
            await log_action(
                ctx.admin_id,
                action,
                SOURCE,
                details={**details, "reason": ctx.reason, "reference_id": ctx.reference_id},
                actor_type="admin",
                entity_type="agent_score",
                entity_id=agent_id,
                session=session,
            )
        await self._publish_update(
            score,
            action,
            EventMetadata(actor_id=ctx.admin_id, actor_type=ActorType.ADMIN, source=SOURCE, reason=ctx.reason),
        )
        logger.info(action, agent_id=agent_id, admin_id=ctx.admin_id)
        return score

    async def adjust_score(self, agent_id: str, adjustment: float, ctx: AdminActionContext) -> AgentScore:
        """Shift the internal score by ``adjustment``, clamped to 0-5, and recompute the tier."""
        if not -5 <= adjustment <= 5:
            raise ValidationFailedError("Adjustment must be between -5 and 5", code="INVALID_ADJUSTMENT")

        def apply(score: AgentScore) -> None:
            score.internal_score = min(5.0, max(0.0, score.internal_score + adjustment))
            score.base_score = min(5.0, max(0.0, score.base_score + adjustment))
            score.public_score = round_to_half(score.internal_score)
            score.reliability_tier = calculate_reliability_tier(
                (score.breakdown or {}).get("completed_bookings", 0),
                score.internal_score,
                score.reliability_tier == ReliabilityTier.SUSPENDED.value,
            ).value

        return await self._admin_update(agent_id, ctx, "score_adjusted", {"adjustment": adjustment}, apply)

    async def override_tier(self, agent_id: str, tier: ReliabilityTier, ctx: AdminActionContext) -> AgentScore:
        def apply(score: AgentScore) -> None:
            score.reliability_tier = tier.value

        return await self._admin_update(agent_id, ctx, "tier_overridden", {"tier": tier.value}, apply)

    async def set_investigation(self, agent_id: str, under_investigation: bool, ctx: AdminActionContext) -> AgentScore:
        """Flag or clear an investigation. Flagged scores are kept internal only."""

        def apply(score: AgentScore) -> None:
            score.is_under_investigation = under_investigation
            score.investigation_reason = ctx.reason if under_investigation else None
            visibility, reason = determine_visibility(
                score.total_reviews, under_investigation, self._settings.score_min_reviews_for_public
            )
            score.visibility = visibility.value
            score.visibility_reason = reason

        action = "investigation_opened" if under_investigation else "investigation_closed"
        return await self._admin_update(agent_id, ctx, action, {}, apply)
