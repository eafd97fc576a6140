"""Tests for trust reviews."""

from __future__ import annotations

import datetime as dt

import pytest

from factories import make_agent, make_booking, make_user
from tripcomposer.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from tripcomposer.events import ActorType, EventType
from tripcomposer.modules.bookings.state_machine import BookingState
from tripcomposer.modules.trust import ReviewErrorCode, ReviewService, ReviewSubmission
from tripcomposer.modules.trust.reviews import validate_ratings
from tripcomposer.security.audit import list_audit_entries


def _submission(booking_id: str, rating: int = 5, **overrides) -> ReviewSubmission:
    data = {
        "booking_id": booking_id,
        "rating": rating,
        "planning_quality": 4,
        "responsiveness": 5,
        "accuracy_vs_promise": 4,
        "comment": "Smooth trip, great homestays",
    }
    data.update(overrides)
    return ReviewSubmission(**data)


@pytest.fixture
def reviews(db_session, event_bus) -> ReviewService:
    return ReviewService(db_session, event_bus)


class TestValidateRatings:
    """Tests for rating and comment checks."""

    def test_valid_submission(self) -> None:
        assert validate_ratings(_submission("b1")) == []

    def test_out_of_range_ratings(self) -> None:
        problems = validate_ratings(_submission("b1", rating=0, responsiveness=6))
        assert problems == [
            "rating must be an integer between 1 and 5",
            "responsiveness must be an integer between 1 and 5",
        ]

    def test_comment_length(self) -> None:
        assert validate_ratings(_submission("b1", comment="x" * 2001)) == [
            "comment must be at most 2000 characters"
        ]


class TestEligibility:
    """Tests for who may review which booking, and when."""

    @pytest.mark.asyncio
    async def test_completed_booking_is_eligible(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)

        eligibility = await reviews.check_eligibility(booking.id, user.id)
        assert eligibility.is_eligible
        assert eligibility.agent_id == agent.id
        assert eligibility.expires_at is not None

    @pytest.mark.asyncio
    async def test_settled_booking_is_eligible(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        completed = dt.datetime.now(dt.UTC) - dt.timedelta(days=1)
        booking = await make_booking(db_session, user.id, agent.id, BookingState.SETTLED, completed_at=completed)
        assert (await reviews.check_eligibility(booking.id, user.id)).is_eligible

    @pytest.mark.asyncio
    async def test_unfinished_booking(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id, BookingState.IN_PROGRESS)

        eligibility = await reviews.check_eligibility(booking.id, user.id)
        assert not eligibility.is_eligible
        assert eligibility.error_code == ReviewErrorCode.BOOKING_NOT_COMPLETED

    @pytest.mark.asyncio
    async def test_window_expired(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)

        later = dt.datetime.now(dt.UTC) + dt.timedelta(days=29)
        eligibility = await reviews.check_eligibility(booking.id, user.id, now=later)
        assert eligibility.error_code == ReviewErrorCode.REVIEW_WINDOW_EXPIRED
        assert "30 days" in eligibility.reason

    @pytest.mark.asyncio
    async def test_only_the_traveler_may_review(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        with pytest.raises(ForbiddenError):
            await reviews.check_eligibility(booking.id, agent.id)

    @pytest.mark.asyncio
    async def test_missing_booking(self, reviews) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await reviews.check_eligibility("missing", "user-1")
        assert exc_info.value.code == ReviewErrorCode.BOOKING_NOT_FOUND


class TestSubmitReview:
    """Tests for storing reviews."""

    @pytest.mark.asyncio
    async def test_submit_publishes_event(self, reviews, db_session, recorder) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)

        review = await reviews.submit_review(user.id, _submission(booking.id))
        assert review.agent_id == agent.id
        assert not review.is_hidden

        event = recorder.of_type(EventType.REVIEW_SUBMITTED)[0]
        assert event.payload["rating"] == 5
        assert event.payload["agent_id"] == agent.id
        assert event.metadata.actor_type == ActorType.USER

    @pytest.mark.asyncio
    async def test_second_review_conflicts(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        await reviews.submit_review(user.id, _submission(booking.id))

        with pytest.raises(ConflictError) as exc_info:
            await reviews.submit_review(user.id, _submission(booking.id, rating=1))
        assert exc_info.value.code == ReviewErrorCode.REVIEW_ALREADY_EXISTS
        assert (await reviews.check_eligibility(booking.id, user.id)).already_reviewed

    @pytest.mark.asyncio
    async def test_invalid_ratings_rejected_before_lookup(self, reviews) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            await reviews.submit_review("user-1", _submission("missing", rating=9))
        assert exc_info.value.code == ReviewErrorCode.INVALID_RATINGS
        assert exc_info.value.details["errors"] == ["rating must be an integer between 1 and 5"]

    @pytest.mark.asyncio
    async def test_unfinished_booking_rejected(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id, BookingState.AGENT_CONFIRMED)
        with pytest.raises(ValidationFailedError) as exc_info:
            await reviews.submit_review(user.id, _submission(booking.id))
        assert exc_info.value.code == ReviewErrorCode.BOOKING_NOT_COMPLETED

    @pytest.mark.asyncio
    async def test_reviews_are_immutable(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        review = await reviews.submit_review(user.id, _submission(booking.id))

        for operation in (reviews.update_review, reviews.delete_review):
            with pytest.raises(ConflictError) as exc_info:
                await operation(review.id, user.id)
            assert exc_info.value.code == ReviewErrorCode.REVIEW_IMMUTABLE


class TestModeration:
    """Tests for hiding reviews and aggregate statistics."""

    @pytest.mark.asyncio
    async def test_hidden_review_leaves_public_views(self, reviews, db_session, recorder) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        review = await reviews.submit_review(user.id, _submission(booking.id))

        await reviews.hide_review(review.id, "admin-1", "Contains a phone number")

        with pytest.raises(NotFoundError):
            await reviews.get_review(review.id)
        assert (await reviews.get_review(review.id, include_hidden=True)).hidden_by == "admin-1"
        assert await reviews.get_review_by_booking(booking.id) is None
        assert await reviews.list_agent_reviews(agent.id) == []
        assert len(await reviews.list_agent_reviews(agent.id, include_hidden=True)) == 1

        hidden = recorder.of_type(EventType.REVIEW_HIDDEN)[0]
        assert hidden.metadata.reason == "Contains a phone number"
        assert hidden.metadata.actor_type == ActorType.ADMIN
        actions = [a.action for a in await list_audit_entries(entity_id=review.id, session=db_session)]
        assert "review_hidden" in actions

    @pytest.mark.asyncio
    async def test_hide_requires_reason(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        review = await reviews.submit_review(user.id, _submission(booking.id))
        with pytest.raises(ValidationFailedError):
            await reviews.hide_review(review.id, "admin-1", "   ")

    @pytest.mark.asyncio
    async def test_hide_twice_conflicts(self, reviews, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, user.id, agent.id)
        review = await reviews.submit_review(user.id, _submission(booking.id))
        await reviews.hide_review(review.id, "admin-1", "Spam")
        with pytest.raises(ConflictError):
            await reviews.hide_review(review.id, "admin-1", "Spam")

    @pytest.mark.asyncio
    async def test_aggregated_stats_skip_hidden(self, reviews, db_session) -> None:
        agent = await make_agent(db_session)
        submitted = []
        for rating in (5, 4, 4, 1):
            user = await make_user(db_session)
            booking = await make_booking(db_session, user.id, agent.id)
            submitted.append(await reviews.submit_review(user.id, _submission(booking.id, rating=rating)))
        await reviews.hide_review(submitted[-1].id, "admin-1", "Review of a different agent")

        stats = await reviews.get_aggregated_stats(agent.id)
        assert stats.total_reviews == 3
        assert stats.average_overall_rating == 4.33
        assert stats.average_responsiveness == 5.0
        assert stats.rating_distribution == {"1": 0, "2": 0, "3": 0, "4": 2, "5": 1}
        assert stats.last_reviewed_at is not None

    @pytest.mark.asyncio
    async def test_stats_for_unreviewed_agent(self, reviews) -> None:
        stats = await reviews.get_aggregated_stats("agent-none")
        assert stats.total_reviews == 0
        assert stats.average_overall_rating is None
        assert stats.last_reviewed_at is None
