"""Tests for the booking state machine, fee arithmetic and booking service."""

from __future__ import annotations

import datetime as dt

import pytest

from factories import make_agent, make_user
from tripcomposer.config import Settings
from tripcomposer.errors import ConflictError, ForbiddenError, InvalidTransitionError, ValidationFailedError
from tripcomposer.events import ActorType, EventType
from tripcomposer.modules.bookings import (
    BookingEvent,
    BookingEventInput,
    BookingService,
    BookingState,
    CancellationReason,
    CreateBookingInput,
    DisputeOutcome,
    FeeCalculator,
    PaymentState,
    apply_event,
)
from tripcomposer.modules.bookings.state_machine import (
    BookingContext,
    accepted_events,
    is_final,
    is_valid_booking_transition,
)
from tripcomposer.modules.identity.models import FullAgentIdentity, PublicAgentIdentity

T0 = dt.datetime(2026, 11, 1, 10, 0, tzinfo=dt.UTC)


def _ctx(state: BookingState, **overrides) -> BookingContext:
    return BookingContext(state=state, agent_id="agent-1", **overrides)


def _event(kind: BookingEvent, **data) -> BookingEventInput:
    return BookingEventInput(type=kind, **data)


class TestBookingStateMachine:
    """Tests for the pure booking transition function."""

    def test_full_lifecycle(self) -> None:
        context = _ctx(BookingState.PENDING_PAYMENT)
        for kind, expected in [
            (BookingEvent.INITIATE_PAYMENT, BookingState.PAYMENT_PROCESSING),
            (BookingEvent.PAYMENT_CONFIRMED, BookingState.PAYMENT_CONFIRMED),
            (BookingEvent.AGENT_CONFIRM, BookingState.AGENT_CONFIRMED),
            (BookingEvent.START_TRIP, BookingState.IN_PROGRESS),
            (BookingEvent.COMPLETE_TRIP, BookingState.COMPLETED),
            (BookingEvent.SETTLE, BookingState.SETTLED),
        ]:
            result = apply_event(context, _event(kind, payment_intent_id="pi_1"), now=T0)
            assert result.success, result.error
            assert result.new_state == expected
            context = result.context

        assert context.version == 6
        assert context.payment_state == PaymentState.RELEASED
        assert context.payment_intent_id == "pi_1"
        assert context.agent_confirmed_at == T0
        assert context.settled_at == T0

    def test_payment_failure_returns_to_pending(self) -> None:
        result = apply_event(_ctx(BookingState.PAYMENT_PROCESSING), _event(BookingEvent.PAYMENT_FAILED))
        assert result.new_state == BookingState.PENDING_PAYMENT
        assert result.context.payment_state == PaymentState.FAILED
        assert result.context.error_message == "Payment failed"

        retry = apply_event(result.context, _event(BookingEvent.INITIATE_PAYMENT))
        assert retry.context.error_message is None

    def test_agent_decline_requests_refund(self) -> None:
        result = apply_event(_ctx(BookingState.PAYMENT_CONFIRMED), _event(BookingEvent.AGENT_DECLINE))
        assert result.new_state == BookingState.CANCELLED
        assert result.context.cancellation_reason == CancellationReason.AGENT_DECLINED
        assert result.context.cancelled_by == "agent-1"
        assert result.context.payment_state == PaymentState.REFUND_REQUESTED

    def test_cancel_after_payment_requests_refund(self) -> None:
        result = apply_event(
            _ctx(BookingState.PAYMENT_CONFIRMED, payment_state=PaymentState.SUCCEEDED),
            _event(BookingEvent.CANCEL, cancelled_by="USER"),
        )
        assert result.context.payment_state == PaymentState.REFUND_REQUESTED
        assert result.context.cancellation_reason == CancellationReason.USER_REQUESTED

        early = apply_event(_ctx(BookingState.PENDING_PAYMENT), _event(BookingEvent.CANCEL))
        assert early.context.payment_state == PaymentState.NOT_STARTED

    def test_dispute_path(self) -> None:
        result = apply_event(_ctx(BookingState.SETTLED), _event(BookingEvent.OPEN_DISPUTE, dispute_id="d1"))
        assert result.new_state == BookingState.DISPUTED
        assert result.context.dispute_id == "d1"

        resolved = apply_event(result.context, _event(BookingEvent.RESOLVE_DISPUTE, outcome=DisputeOutcome.WON))
        assert resolved.new_state == BookingState.DISPUTE_RESOLVED
        assert resolved.context.dispute_outcome == DisputeOutcome.WON
        assert apply_event(resolved.context, _event(BookingEvent.SETTLE)).new_state == BookingState.SETTLED

    def test_rejected_event_leaves_context_untouched(self) -> None:
        context = _ctx(BookingState.PENDING_PAYMENT, version=3)
        result = apply_event(context, _event(BookingEvent.COMPLETE_TRIP))
        assert not result.success
        assert result.context is context
        assert "COMPLETE_TRIP" in result.error

    def test_cancelled_is_final(self) -> None:
        assert is_final(BookingState.CANCELLED)
        assert not is_final(BookingState.SETTLED)
        assert accepted_events(BookingState.CANCELLED) == []
        assert not apply_event(_ctx(BookingState.CANCELLED), _event(BookingEvent.OPEN_DISPUTE)).success

    def test_event_targets_respect_transition_table(self) -> None:
        for state in BookingState:
            for kind in accepted_events(state):
                result = apply_event(_ctx(state), _event(kind))
                assert is_valid_booking_transition(state, result.new_state)


class TestFeeCalculator:
    """Tests for integer-cent fee arithmetic."""

    def test_breakdown(self) -> None:
        fees = FeeCalculator(Settings(_env_file=None))
        breakdown = fees.calculate(100_000)
        assert breakdown.booking_fee_cents == 2_930
        assert breakdown.total_amount_cents == 102_930
        assert breakdown.platform_commission_cents == 10_000
        assert breakdown.agent_payout_cents == 90_000

    def test_fee_rounds_up_and_commission_rounds_down(self) -> None:
        fees = FeeCalculator(Settings(_env_file=None))
        breakdown = fees.calculate(1_001)
        # 1001 * 0.029 = 29.029 -> 30, plus the fixed 30
        assert breakdown.booking_fee_cents == 60
        assert breakdown.platform_commission_cents == 100

    @pytest.mark.parametrize("amount", [999, 10_000_001])
    def test_amount_bounds(self, amount: int) -> None:
        with pytest.raises(ValidationFailedError):
            FeeCalculator(Settings(_env_file=None)).calculate(amount)

    def test_non_integer_amount_rejected(self) -> None:
        with pytest.raises(ValidationFailedError):
            FeeCalculator(Settings(_env_file=None)).validate_price(1500.5)

    def test_refund_rules(self) -> None:
        assert FeeCalculator.refund_amount(102_930, 2_930, True, agent_at_fault=True) == 102_930
        assert FeeCalculator.refund_amount(102_930, 2_930, True, agent_at_fault=False) == 100_000
        assert FeeCalculator.refund_amount(102_930, 2_930, False, agent_at_fault=False) == 50_000


def _booking_input(agent_id: str) -> CreateBookingInput:
    start = dt.datetime.now(dt.UTC) + dt.timedelta(days=20)
    return CreateBookingInput(
        agent_id=agent_id,
        trip_start_date=start,
        trip_end_date=start + dt.timedelta(days=5),
        destination_city="Leh",
        traveler_count=2,
        base_price_cents=100_000,
    )


@pytest.fixture
def bookings(db_session, event_bus) -> BookingService:
    return BookingService(db_session, event_bus)


class TestBookingService:
    """Tests for persisted bookings."""

    @pytest.mark.asyncio
    async def test_create_booking_applies_fees(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))
        assert booking.state == BookingState.PENDING_PAYMENT.value
        assert booking.total_amount_cents == 102_930
        assert booking.agent_payout_cents == 90_000
        assert booking.version == 0

    @pytest.mark.asyncio
    async def test_apply_event_publishes_state_change(self, bookings, db_session, recorder) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))

        booking = await bookings.apply_event(
            booking.id, _event(BookingEvent.INITIATE_PAYMENT), user.id, ActorType.USER, expected_version=0
        )
        assert booking.state == BookingState.PAYMENT_PROCESSING.value
        assert booking.version == 1

        change = recorder.of_type(EventType.BOOKING_STATE_CHANGED)[0]
        assert change.payload["from"] == "PENDING_PAYMENT"
        assert change.payload["to"] == "PAYMENT_PROCESSING"
        assert change.payload["version"] == 1

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))
        await bookings.apply_event(booking.id, _event(BookingEvent.INITIATE_PAYMENT), user.id)
        with pytest.raises(ConflictError):
            await bookings.apply_event(booking.id, _event(BookingEvent.CANCEL), user.id, expected_version=0)

    @pytest.mark.asyncio
    async def test_invalid_event_lists_accepted(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))
        with pytest.raises(InvalidTransitionError) as exc_info:
            await bookings.apply_event(booking.id, _event(BookingEvent.START_TRIP), agent.id)
        assert set(exc_info.value.details["accepted_events"]) == {"INITIATE_PAYMENT", "CANCEL", "EXPIRE"}

    @pytest.mark.asyncio
    async def test_participants_only(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        stranger = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))

        assert (await bookings.get_booking_for(booking.id, agent.id)).id == booking.id
        assert (await bookings.get_booking_for(booking.id, stranger.id, is_admin=True)).id == booking.id
        with pytest.raises(ForbiddenError):
            await bookings.get_booking_for(booking.id, stranger.id)

    @pytest.mark.asyncio
    async def test_agent_identity_revealed_after_confirmation(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))

        identity = await bookings.get_agent_identity(booking.id)
        assert isinstance(identity, PublicAgentIdentity)
        assert not isinstance(identity, FullAgentIdentity)

        for kind in (BookingEvent.INITIATE_PAYMENT, BookingEvent.PAYMENT_CONFIRMED, BookingEvent.AGENT_CONFIRM):
            await bookings.apply_event(booking.id, _event(kind), "system")
        assert isinstance(await bookings.get_agent_identity(booking.id), FullAgentIdentity)

    @pytest.mark.asyncio
    async def test_list_bookings_filters(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        other_agent = await make_agent(db_session)
        await bookings.create_booking(user.id, _booking_input(agent.id))
        await bookings.create_booking(user.id, _booking_input(other_agent.id))

        assert len(await bookings.list_bookings(user_id=user.id)) == 2
        assert len(await bookings.list_bookings(agent_id=agent.id)) == 1
        assert await bookings.list_bookings(state=BookingState.SETTLED) == []

    @pytest.mark.asyncio
    async def test_refund_amount_depends_on_confirmation(self, bookings, db_session) -> None:
        user = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await bookings.create_booking(user.id, _booking_input(agent.id))
        assert bookings.refund_amount(booking, agent_at_fault=False) == 100_000
        assert bookings.refund_amount(booking, agent_at_fault=True) == 102_930
