"""Immutable traveler reviews of completed bookings.

Reviews can be submitted once per booking inside the review window and
are never edited or deleted afterwards. Admins may hide a review, with a
reason, which removes it from every non-admin view and from aggregates.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.config import get_settings
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings.models import Booking
from tripcomposer.modules.bookings.state_machine import BookingState
from tripcomposer.modules.trust.models import (
    AggregatedReviewStats,
    ReviewEligibility,
    ReviewErrorCode,
    ReviewSubmission,
    TrustReview,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

SOURCE = "trust"

MAX_COMMENT_LENGTH = 2000

# Bookings whose trip has finished and may be reviewed
REVIEWABLE_STATES = (BookingState.COMPLETED.value, BookingState.SETTLED.value)

_RATING_FIELDS = ("rating", "planning_quality", "responsiveness", "accuracy_vs_promise")


def validate_ratings(data: ReviewSubmission) -> list[str]:
    """Return a list of problems with the submitted ratings and comment."""
    errors = []
    for name in _RATING_FIELDS:
        value = getattr(data, name)
        if not isinstance(value, int) or not 1 <= value <= 5:
            errors.append(f"{name} must be an integer between 1 and 5")
    if data.comment is not None and len(data.comment) > MAX_COMMENT_LENGTH:
        errors.append(f"comment must be at most {MAX_COMMENT_LENGTH} characters")
    return errors


_ELIGIBILITY_ERRORS = {
    ReviewErrorCode.BOOKING_NOT_COMPLETED: ValidationFailedError,
    ReviewErrorCode.REVIEW_ALREADY_EXISTS: ConflictError,
    ReviewErrorCode.REVIEW_WINDOW_EXPIRED: ValidationFailedError,
}


class ReviewService:
    """Submits, reads and moderates trust reviews."""

    def __init__(self, session: Optional[AsyncSession] = None, event_bus: Optional[EventBus] = None) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()
        self._settings = get_settings()

    # ── Eligibility ──────────────────────────────────────────────────

    async def check_eligibility(
        self, booking_id: str, user_id: str, now: Optional[dt.datetime] = None
    ) -> ReviewEligibility:
        """Work out whether ``user_id`` may review ``booking_id`` right now.

        Raises:
            NotFoundError: The booking does not exist.
            ForbiddenError: The user is not the booking's traveler.
        """
        now = now or utcnow()
        async with session_scope(self._session) as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found", code=ReviewErrorCode.BOOKING_NOT_FOUND)
            if booking.user_id != user_id:
                raise ForbiddenError(
                    "Only the traveler who made the booking can review it", code=ReviewErrorCode.UNAUTHORIZED
                )
            existing = await session.scalar(select(TrustReview.id).where(TrustReview.booking_id == booking_id))

        result = ReviewEligibility(
            booking_id=booking_id, user_id=user_id, agent_id=booking.agent_id, is_eligible=False
        )
        if booking.state not in REVIEWABLE_STATES:
            result.reason = "Booking must be completed before it can be reviewed"
            result.error_code = ReviewErrorCode.BOOKING_NOT_COMPLETED
            return result
        if existing is not None:
            result.reason = "This booking has already been reviewed"
            result.error_code = ReviewErrorCode.REVIEW_ALREADY_EXISTS
            result.already_reviewed = True
            return result

        completed_at = as_utc(booking.trip_completed_at or booking.trip_end_date)
        opens_at = completed_at + dt.timedelta(hours=self._settings.review_cooling_off_hours)
        expires_at = completed_at + dt.timedelta(days=self._settings.review_window_days)
        result.expires_at = expires_at
        if now < opens_at:
            result.reason = "Review window has not opened yet"
            result.error_code = ReviewErrorCode.NOT_ELIGIBLE
            return result
        if now > expires_at:
            result.reason = f"Reviews must be submitted within {self._settings.review_window_days} days of trip completion"
            result.error_code = ReviewErrorCode.REVIEW_WINDOW_EXPIRED
            return result

        result.is_eligible = True
        return result

    # ── Submission ───────────────────────────────────────────────────

    async def submit_review(
        self, user_id: str, data: ReviewSubmission, now: Optional[dt.datetime] = None
    ) -> TrustReview:
        """Store a review. There is no way to change it afterwards."""
        now = now or utcnow()
        problems = validate_ratings(data)
        if problems:
            raise ValidationFailedError(
                "Invalid review ratings", code=ReviewErrorCode.INVALID_RATINGS, details={"errors": problems}
            )

        eligibility = await self.check_eligibility(data.booking_id, user_id, now=now)
        if not eligibility.is_eligible:
            error_cls = _ELIGIBILITY_ERRORS.get(eligibility.error_code, ValidationFailedError)
            raise error_cls(eligibility.reason or "Not eligible to review", code=eligibility.error_code)

        async with session_scope(self._session) as session:
            review = TrustReview(
                booking_id=data.booking_id,
                agent_id=eligibility.agent_id,
                user_id=user_id,
                rating=data.rating,
                planning_quality=data.planning_quality,
                responsiveness=data.responsiveness,
                accuracy_vs_promise=data.accuracy_vs_promise,
                comment=data.comment,
                created_at=now,
            )
            session.add(review)
            await session.flush()
            await log_action(
                user_id,
                "review_submitted",
                SOURCE,
                details={"booking_id": data.booking_id, "agent_id": eligibility.agent_id, "rating": data.rating},
                actor_type="user",
                entity_type="review",
                entity_id=review.id,
                session=session,
            )

        await self._bus.publish(
            EventType.REVIEW_SUBMITTED,
            {
                "review_id": review.id,
                "booking_id": data.booking_id,
                "agent_id": eligibility.agent_id,
                "user_id": user_id,
                "rating": data.rating,
            },
            EventMetadata(actor_id=user_id, actor_type=ActorType.USER, source=SOURCE),
            aggregate_type="Review",
            aggregate_id=review.id,
        )
        logger.info("review_submitted", review_id=review.id, agent_id=eligibility.agent_id, rating=data.rating)
        return review

    async def update_review(self, review_id: str, user_id: str) -> None:
        """Reviews cannot be edited."""
        raise ConflictError("Reviews are immutable and cannot be edited", code=ReviewErrorCode.REVIEW_IMMUTABLE)

    async def delete_review(self, review_id: str, user_id: str) -> None:
        """Reviews cannot be deleted; admins hide them instead."""
        raise ConflictError("Reviews are immutable and cannot be deleted", code=ReviewErrorCode.REVIEW_IMMUTABLE)

    # ── Reads ────────────────────────────────────────────────────────

    async def get_review(self, review_id: str, include_hidden: bool = False) -> TrustReview:
        async with session_scope(self._session) as session:
            review = await session.get(TrustReview, review_id)
        if review is None or (review.is_hidden and not include_hidden):
            raise NotFoundError(f"Review {review_id} not found", code=ReviewErrorCode.REVIEW_NOT_FOUND)
        return review

    async def get_review_by_booking(self, booking_id: str, include_hidden: bool = False) -> Optional[TrustReview]:
        async with session_scope(self._session) as session:
            review = await session.scalar(select(TrustReview).where(TrustReview.booking_id == booking_id))
        if review is not None and review.is_hidden and not include_hidden:
            return None
        return review

    async def list_agent_reviews(
        self, agent_id: str, include_hidden: bool = False, limit: int = 20, offset: int = 0
    ) -> list[TrustReview]:
        query = select(TrustReview).where(TrustReview.agent_id == agent_id)
        if not include_hidden:
            query = query.where(TrustReview.is_hidden.is_(False))
        query = query.order_by(TrustReview.created_at.desc()).limit(limit).offset(offset)
        async with session_scope(self._session) as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_aggregated_stats(self, agent_id: str) -> AggregatedReviewStats:
        """Averages per rating dimension and the 1-5 star distribution of visible reviews."""
        visible = (TrustReview.agent_id == agent_id, TrustReview.is_hidden.is_(False))
        async with session_scope(self._session) as session:
            row = (
                await session.execute(
                    select(
                        func.count(TrustReview.id),
                        func.avg(TrustReview.rating),
                        func.avg(TrustReview.planning_quality),
                        func.avg(TrustReview.responsiveness),
                        func.avg(TrustReview.accuracy_vs_promise),
                        func.max(TrustReview.created_at),
                    ).where(*visible)
                )
            ).one()
            buckets = await session.execute(
                select(TrustReview.rating, func.count(TrustReview.id)).where(*visible).group_by(TrustReview.rating)
            )
            distribution = {str(star): 0 for star in range(1, 6)}
            for star, count in buckets.all():
                distribution[str(star)] = count

        total, overall, planning, responsiveness, accuracy, last = row

        def _avg(value: Optional[float]) -> Optional[float]:
            return round(float(value), 2) if value is not None else None

        return AggregatedReviewStats(
            agent_id=agent_id,
            total_reviews=total or 0,
            average_overall_rating=_avg(overall),
            average_planning_quality=_avg(planning),
            average_responsiveness=_avg(responsiveness),
            average_accuracy=_avg(accuracy),
            rating_distribution=distribution,
            last_reviewed_at=as_utc(last),
            calculated_at=utcnow(),
        )

    # ── Moderation ───────────────────────────────────────────────────

    async def hide_review(self, review_id: str, admin_id: str, reason: str) -> TrustReview:
        """Hide a review from public view. The review itself is kept unchanged."""
        if not (reason or "").strip():
            raise ValidationFailedError("A reason is required to hide a review", code="REASON_REQUIRED")
        async with session_scope(self._session) as session:
            review = await session.get(TrustReview, review_id)
            if review is None:
                raise NotFoundError(f"Review {review_id} not found", code=ReviewErrorCode.REVIEW_NOT_FOUND)
            if review.is_hidden:
                raise ConflictError("Review is already hidden", code=ReviewErrorCode.REVIEW_IMMUTABLE)
            review.is_hidden = True
            review.hidden_at = utcnow()
            review.hidden_by = admin_id
            review.hidden_reason = reason
            await log_action(
                admin_id,
                "review_hidden",
                SOURCE,
                details={"reason": reason, "agent_id": review.agent_id},
                actor_type="admin",
                entity_type="review",
                entity_id=review_id,
                session=session,
            )

        await self._bus.publish(
            EventType.REVIEW_HIDDEN,
            {"review_id": review_id, "agent_id": review.agent_id, "hidden_by": admin_id, "reason": reason},
            EventMetadata(actor_id=admin_id, actor_type=ActorType.ADMIN, source=SOURCE, reason=reason),
            aggregate_type="Review",
            aggregate_id=review_id,
        )
        logger.info("review_hidden", review_id=review_id, admin_id=admin_id)
        return review
