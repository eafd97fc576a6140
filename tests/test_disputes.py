"""Tests for the dispute state machine, filing, evidence and arbitration."""

from __future__ import annotations

import datetime as dt

import pytest
import pytest_asyncio
from pydantic import ValidationError

from factories import make_agent, make_booking, make_user
from tripcomposer.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from tripcomposer.events import EventType
from tripcomposer.modules.bookings import BookingState
from tripcomposer.modules.disputes import (
    AdminDecisionInput,
    AgentResponseInput,
    AgentResponseService,
    ArbitrationService,
    CreateDisputeInput,
    DisputeAction,
    DisputeActor,
    DisputeCategory,
    DisputeService,
    DisputeState,
    EscalateInput,
    EvidenceInput,
    EvidenceService,
    NoteInput,
    ResolutionType,
    attempt_transition,
)
from tripcomposer.modules.disputes.models import DisputeErrorCode, EvidenceType, is_subjective_complaint
from tripcomposer.modules.disputes.state_machine import (
    TransitionErrorCode,
    can_transition,
    get_possible_next_states,
    get_state_description,
    get_valid_actions,
    is_refund_state,
    requires_admin_attention,
    resolution_to_action,
)

DESCRIPTION = (
    "The guide never arrived at the hotel and the trek we paid for was not arranged at all."
)


def _dispute_input(booking_id: str, **overrides) -> CreateDisputeInput:
    data = {
        "booking_id": booking_id,
        "category": DisputeCategory.SERVICE_NOT_PROVIDED,
        "title": "Trek was never arranged",
        "description": DESCRIPTION,
    }
    data.update(overrides)
    return CreateDisputeInput(**data)


def _evidence(**overrides) -> EvidenceInput:
    data = {
        "evidence_type": EvidenceType.PHOTO,
        "file_name": "empty-lobby.png",
        "file_url": "https://files.example.com/empty-lobby.png",
        "file_size_bytes": 120_000,
        "mime_type": "image/png",
    }
    data.update(overrides)
    return EvidenceInput(**data)


def _decision(resolution: ResolutionType, amount: int | None = None) -> AdminDecisionInput:
    return AdminDecisionInput(
        resolution=resolution,
        refund_amount_cents=amount,
        reason="Evidence shows the service was not delivered",
    )


RESPONSE = AgentResponseInput(
    response="The trek operator cancelled last minute and I tried to rebook the guide the same day.",
    accepts_responsibility=True,
    proposed_resolution="Refund the trek portion",
)


class TestDisputeStateMachine:
    """Tests for the dispute transition table."""

    def test_happy_path(self) -> None:
        steps = [
            (DisputeState.PENDING_EVIDENCE, DisputeAction.SUBMIT_EVIDENCE, DisputeActor.TRAVELER),
            (DisputeState.EVIDENCE_SUBMITTED, DisputeAction.AGENT_RESPOND, DisputeActor.AGENT),
            (DisputeState.AGENT_RESPONDED, DisputeAction.ADMIN_START_REVIEW, DisputeActor.ADMIN),
            (DisputeState.UNDER_ADMIN_REVIEW, DisputeAction.ADMIN_RESOLVE_REFUND, DisputeActor.ADMIN),
        ]
        for state, action, actor in steps:
            assert attempt_transition(state, action, actor, reason="checked").success

    def test_terminal_states_reject_everything(self) -> None:
        resolved = attempt_transition(
            DisputeState.RESOLVED_DENIED, DisputeAction.ADMIN_ESCALATE, DisputeActor.ADMIN, "late appeal"
        )
        assert resolved.code == TransitionErrorCode.ALREADY_RESOLVED
        closed = attempt_transition(
            DisputeState.CLOSED_WITHDRAWN, DisputeAction.SUBMIT_EVIDENCE, DisputeActor.TRAVELER
        )
        assert closed.code == TransitionErrorCode.ALREADY_CLOSED

    def test_wrong_actor(self) -> None:
        result = attempt_transition(
            DisputeState.UNDER_ADMIN_REVIEW, DisputeAction.ADMIN_RESOLVE_REFUND, DisputeActor.AGENT, "mine"
        )
        assert result.code == TransitionErrorCode.UNAUTHORIZED_ACTOR

    def test_admin_actions_need_reason(self) -> None:
        result = attempt_transition(
            DisputeState.AGENT_RESPONDED, DisputeAction.ADMIN_START_REVIEW, DisputeActor.ADMIN, "  "
        )
        assert result.code == TransitionErrorCode.REASON_REQUIRED

    def test_escalated_cannot_be_withdrawn(self) -> None:
        result = attempt_transition(
            DisputeState.ESCALATED, DisputeAction.TRAVELER_WITHDRAW, DisputeActor.TRAVELER, "never mind"
        )
        assert result.code == TransitionErrorCode.INVALID_TRANSITION
        assert DisputeAction.TRAVELER_WITHDRAW not in get_valid_actions(DisputeState.ESCALATED, DisputeActor.TRAVELER)

    def test_resolution_actions(self) -> None:
        assert resolution_to_action(ResolutionType.FULL_REFUND) == DisputeAction.ADMIN_RESOLVE_REFUND
        assert resolution_to_action(ResolutionType.CREDIT_ISSUED) == DisputeAction.ADMIN_RESOLVE_PARTIAL
        assert resolution_to_action(ResolutionType.NO_REFUND_SUBJECTIVE) == DisputeAction.ADMIN_RESOLVE_DENIED

    def test_state_helpers(self) -> None:
        assert can_transition(DisputeState.ESCALATED, DisputeAction.ADMIN_RESOLVE_DENIED, DisputeActor.ADMIN)
        assert not can_transition(DisputeState.ESCALATED, DisputeAction.ADMIN_RESOLVE_DENIED, DisputeActor.AGENT)
        assert is_refund_state(DisputeState.RESOLVED_PARTIAL)
        assert not is_refund_state(DisputeState.RESOLVED_DENIED)
        assert requires_admin_attention(DisputeState.AGENT_RESPONDED)
        assert not requires_admin_attention(DisputeState.PENDING_EVIDENCE)
        assert get_possible_next_states(DisputeState.RESOLVED_REFUND) == []
        assert DisputeState.EVIDENCE_SUBMITTED in get_possible_next_states(DisputeState.PENDING_EVIDENCE)
        assert get_state_description(DisputeState.PENDING_EVIDENCE) == "Awaiting evidence from traveler"

    def test_subjective_detection(self) -> None:
        assert is_subjective_complaint(DisputeCategory.OTHER, "Honestly the weather ruined it")
        assert not is_subjective_complaint(DisputeCategory.SAFETY_CONCERN, "the weather was dangerous")

    def test_partial_refund_requires_amount(self) -> None:
        with pytest.raises(ValidationError):
            _decision(ResolutionType.PARTIAL_REFUND)


@pytest.fixture
def disputes(db_session, event_bus) -> DisputeService:
    return DisputeService(db_session, event_bus)


@pytest_asyncio.fixture
async def parties(db_session):
    traveler = await make_user(db_session)
    agent = await make_agent(db_session)
    booking = await make_booking(db_session, traveler.id, agent.id)
    return traveler, agent, booking


async def _open_with_evidence(disputes: DisputeService, traveler, booking):
    dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
    await EvidenceService(disputes).submit_evidence(dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence())
    return dispute


class TestDisputeFiling:
    """Tests for opening disputes."""

    @pytest.mark.asyncio
    async def test_create_dispute(self, disputes, parties, recorder) -> None:
        traveler, agent, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        assert dispute.state == DisputeState.PENDING_EVIDENCE.value
        assert dispute.agent_id == agent.id
        assert dispute.booking_amount_cents == booking.total_amount_cents
        assert not dispute.is_subjective_complaint

        created = recorder.of_type(EventType.DISPUTE_CREATED)[0]
        assert created.payload["currency"] == "INR"
        assert created.aggregate_id == dispute.id

    @pytest.mark.asyncio
    async def test_only_booking_owner(self, disputes, parties, db_session) -> None:
        _, _, booking = parties
        stranger = await make_user(db_session)
        with pytest.raises(ForbiddenError):
            await disputes.create_dispute(stranger.id, _dispute_input(booking.id))

    @pytest.mark.asyncio
    async def test_booking_must_be_completed(self, disputes, db_session) -> None:
        traveler = await make_user(db_session)
        agent = await make_agent(db_session)
        booking = await make_booking(db_session, traveler.id, agent.id, state=BookingState.IN_PROGRESS)
        with pytest.raises(ValidationFailedError) as exc_info:
            await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        assert exc_info.value.code == DisputeErrorCode.BOOKING_NOT_COMPLETED

    @pytest.mark.asyncio
    async def test_window_expired(self, disputes, parties) -> None:
        traveler, _, booking = parties
        late = dt.datetime.now(dt.UTC) + dt.timedelta(days=10)
        with pytest.raises(ValidationFailedError) as exc_info:
            await disputes.create_dispute(traveler.id, _dispute_input(booking.id), now=late)
        assert exc_info.value.code == DisputeErrorCode.WINDOW_EXPIRED

    @pytest.mark.asyncio
    async def test_one_open_dispute_per_booking(self, disputes, parties) -> None:
        traveler, _, booking = parties
        await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        with pytest.raises(ConflictError) as exc_info:
            await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        assert exc_info.value.code == DisputeErrorCode.ALREADY_OPEN

    @pytest.mark.asyncio
    async def test_daily_limit(self, disputes, db_session) -> None:
        traveler = await make_user(db_session)
        agent = await make_agent(db_session)
        for _ in range(3):
            booking = await make_booking(db_session, traveler.id, agent.id)
            await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        booking = await make_booking(db_session, traveler.id, agent.id)
        with pytest.raises(ConflictError) as exc_info:
            await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        assert exc_info.value.code == DisputeErrorCode.DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_subjective_complaint_flagged(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(
            traveler.id,
            _dispute_input(
                booking.id,
                category=DisputeCategory.OTHER,
                description="The beaches were too crowded and honestly I didn't like the food at all there.",
            ),
        )
        assert dispute.is_subjective_complaint

    @pytest.mark.asyncio
    async def test_missing_dispute(self, disputes) -> None:
        with pytest.raises(NotFoundError):
            await disputes.get_dispute("missing")


class TestEvidence:
    """Tests for evidence submission."""

    @pytest.mark.asyncio
    async def test_first_traveler_upload_advances_state(self, disputes, parties, recorder) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        assert (await disputes.get_dispute(dispute.id)).state == DisputeState.EVIDENCE_SUBMITTED.value
        assert recorder.of_type(EventType.EVIDENCE_SUBMITTED)[0].payload["total_evidence_count"] == 1

        evidence = EvidenceService(disputes)
        await evidence.submit_evidence(dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence())
        assert len(recorder.of_type(EventType.DISPUTE_STATE_CHANGED)) == 1
        assert len(await evidence.list_evidence(dispute.id)) == 2

    @pytest.mark.asyncio
    async def test_agent_upload_keeps_state(self, disputes, parties) -> None:
        traveler, agent, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        await EvidenceService(disputes).submit_evidence(dispute.id, agent.id, DisputeActor.AGENT, _evidence())
        assert (await disputes.get_dispute(dispute.id)).state == DisputeState.PENDING_EVIDENCE.value

    @pytest.mark.asyncio
    async def test_non_participants_rejected(self, disputes, parties, db_session) -> None:
        traveler, _, booking = parties
        stranger = await make_user(db_session)
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        evidence = EvidenceService(disputes)
        with pytest.raises(ForbiddenError):
            await evidence.submit_evidence(dispute.id, stranger.id, DisputeActor.TRAVELER, _evidence())
        with pytest.raises(ForbiddenError):
            await evidence.submit_evidence(dispute.id, stranger.id, DisputeActor.AGENT, _evidence())

    @pytest.mark.asyncio
    async def test_file_rules(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        evidence = EvidenceService(disputes)
        with pytest.raises(ValidationFailedError):
            await evidence.submit_evidence(
                dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence(mime_type="application/zip")
            )
        with pytest.raises(ValidationFailedError):
            await evidence.submit_evidence(
                dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence(file_size_bytes=11 * 1024 * 1024)
            )

    @pytest.mark.asyncio
    async def test_evidence_closed_after_review_starts(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        await ArbitrationService(disputes).start_review(dispute.id, "admin-1", "Picking this up for review")
        with pytest.raises(ConflictError):
            await EvidenceService(disputes).submit_evidence(
                dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence()
            )

    @pytest.mark.asyncio
    async def test_verify_and_stats(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        evidence = EvidenceService(disputes)
        item = await evidence.submit_evidence(dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence())
        item = await evidence.verify_evidence(item.id, "admin-1", True)
        assert item.is_verified
        stats = await evidence.evidence_stats(dispute.id)
        assert stats["total"] == 1
        assert stats["by_type"]["photo"] == 1
        assert stats["by_source"]["traveler"] == 1
        assert stats["verified_count"] == 1


class TestAgentResponse:
    """Tests for the agent's answer."""

    @pytest.mark.asyncio
    async def test_submit_response(self, disputes, parties, recorder) -> None:
        traveler, agent, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        responses = AgentResponseService(disputes)
        response = await responses.submit_response(dispute.id, agent.id, RESPONSE)
        assert not response.submitted_late
        assert (await disputes.get_dispute(dispute.id)).state == DisputeState.AGENT_RESPONDED.value
        assert recorder.of_type(EventType.AGENT_RESPONDED_TO_DISPUTE)[0].payload["accepts_responsibility"]

        with pytest.raises(ConflictError) as exc_info:
            await responses.submit_response(dispute.id, agent.id, RESPONSE)
        assert exc_info.value.code == DisputeErrorCode.ALREADY_RESPONDED

    @pytest.mark.asyncio
    async def test_response_requires_evidence_first(self, disputes, parties) -> None:
        traveler, agent, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        with pytest.raises(ConflictError) as exc_info:
            await AgentResponseService(disputes).submit_response(dispute.id, agent.id, RESPONSE)
        assert exc_info.value.code == DisputeErrorCode.RESPONSE_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_only_assigned_agent(self, disputes, parties, db_session) -> None:
        traveler, _, booking = parties
        other = await make_agent(db_session)
        dispute = await _open_with_evidence(disputes, traveler, booking)
        with pytest.raises(ForbiddenError):
            await AgentResponseService(disputes).submit_response(dispute.id, other.id, RESPONSE)

    @pytest.mark.asyncio
    async def test_late_response_flagged(self, disputes, parties) -> None:
        traveler, agent, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        responses = AgentResponseService(disputes)
        later = dt.datetime.now(dt.UTC) + dt.timedelta(hours=60)
        assert await responses.is_overdue(dispute.id, later)
        response = await responses.submit_response(dispute.id, agent.id, RESPONSE, now=later)
        assert response.submitted_late

    @pytest.mark.asyncio
    async def test_nearing_deadline(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        responses = AgentResponseService(disputes)
        soon = dt.datetime.now(dt.UTC) + dt.timedelta(hours=30)
        warnings = await responses.nearing_deadline(24, now=soon)
        assert [w.dispute_id for w in warnings] == [dispute.id]
        assert await responses.nearing_deadline(24) == []


class TestArbitration:
    """Tests for admin review, resolution and escalation."""

    @pytest.mark.asyncio
    async def test_start_review_assigns_admin(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        arbitration = ArbitrationService(disputes)
        dispute = await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")
        assert dispute.state == DisputeState.UNDER_ADMIN_REVIEW.value
        assert dispute.admin_assigned_id == "admin-1"
        history = await arbitration.history(dispute.id)
        assert [h.action for h in history] == ["dispute_opened"]

        queue = await disputes.admin_queue(assigned_to="admin-1")
        assert [d.id for d in queue] == [dispute.id]
        assert await disputes.admin_queue(unassigned=True) == []

    @pytest.mark.asyncio
    async def test_full_refund(self, disputes, parties, recorder) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        arbitration = ArbitrationService(disputes)
        await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")

        dispute = await arbitration.resolve(dispute.id, "admin-1", _decision(ResolutionType.FULL_REFUND))
        assert dispute.state == DisputeState.RESOLVED_REFUND.value
        assert dispute.refund_amount_cents == booking.total_amount_cents
        assert dispute.resolved_by == "admin-1"

        refund = recorder.of_type(EventType.REFUND_APPROVED)[0]
        assert refund.payload["refund_type"] == "full"
        assert refund.metadata.reason == "Evidence shows the service was not delivered"

        with pytest.raises(InvalidTransitionError):
            await arbitration.resolve(dispute.id, "admin-1", _decision(ResolutionType.NO_REFUND_OBJECTIVE))

    @pytest.mark.asyncio
    async def test_partial_refund_bounded_by_booking(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        arbitration = ArbitrationService(disputes)
        await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")
        with pytest.raises(ValidationFailedError):
            await arbitration.resolve(
                dispute.id, "admin-1", _decision(ResolutionType.PARTIAL_REFUND, booking.total_amount_cents + 1)
            )
        dispute = await arbitration.resolve(dispute.id, "admin-1", _decision(ResolutionType.PARTIAL_REFUND, 25_000))
        assert dispute.state == DisputeState.RESOLVED_PARTIAL.value
        assert dispute.refund_amount_cents == 25_000

    @pytest.mark.asyncio
    async def test_subjective_cannot_be_refunded(self, disputes, parties, recorder) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(
            traveler.id,
            _dispute_input(
                booking.id,
                category=DisputeCategory.OTHER,
                description="It was not as imagined and I regret picking this itinerary for the family.",
            ),
        )
        await EvidenceService(disputes).submit_evidence(dispute.id, traveler.id, DisputeActor.TRAVELER, _evidence())
        arbitration = ArbitrationService(disputes)
        await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")

        for resolution, amount in (
            (ResolutionType.FULL_REFUND, None),
            (ResolutionType.CREDIT_ISSUED, 5_000),
        ):
            with pytest.raises(ValidationFailedError) as exc_info:
                await arbitration.resolve(dispute.id, "admin-1", _decision(resolution, amount))
            assert exc_info.value.code == DisputeErrorCode.SUBJECTIVE_NOT_REFUNDABLE

        dispute = await arbitration.resolve(dispute.id, "admin-1", _decision(ResolutionType.NO_REFUND_SUBJECTIVE))
        assert dispute.state == DisputeState.RESOLVED_DENIED.value
        assert recorder.of_type(EventType.REFUND_APPROVED) == []

    @pytest.mark.asyncio
    async def test_escalate_then_resolve(self, disputes, parties, recorder) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        arbitration = ArbitrationService(disputes)
        await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")

        dispute = await arbitration.escalate(
            dispute.id, "admin-1", EscalateInput(reason="Possible safety issue with operator", priority="critical")
        )
        assert dispute.state == DisputeState.ESCALATED.value
        assert dispute.escalation_priority == "critical"
        assert recorder.of_type(EventType.DISPUTE_ESCALATED)[0].payload["priority"] == "critical"

        dispute = await arbitration.resolve(dispute.id, "admin-2", _decision(ResolutionType.NO_REFUND_OBJECTIVE))
        assert dispute.state == DisputeState.RESOLVED_DENIED.value

    @pytest.mark.asyncio
    async def test_notes_visibility(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        arbitration = ArbitrationService(disputes)
        await arbitration.add_note(dispute.id, "admin-1", NoteInput(note="Called the operator, no answer"))
        await arbitration.add_note(
            dispute.id, "admin-1", NoteInput(note="We are reviewing your case", is_internal=False)
        )
        assert len(await arbitration.list_notes(dispute.id, include_internal=True)) == 2
        public = await arbitration.list_notes(dispute.id)
        assert [n.note for n in public] == ["We are reviewing your case"]


class TestDisputeLifecycle:
    """Tests for withdrawal, expiry and statistics."""

    @pytest.mark.asyncio
    async def test_withdraw(self, disputes, parties, recorder) -> None:
        traveler, agent, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        with pytest.raises(ForbiddenError):
            await disputes.withdraw(dispute.id, agent.id, "Not mine to withdraw")
        dispute = await disputes.withdraw(dispute.id, traveler.id, "Agent refunded me directly")
        assert dispute.state == DisputeState.CLOSED_WITHDRAWN.value
        assert recorder.of_type(EventType.DISPUTE_WITHDRAWN)[0].payload["reason"] == "Agent refunded me directly"

        # A closed dispute no longer blocks a new one for the same booking
        again = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        assert again.state == DisputeState.PENDING_EVIDENCE.value

    @pytest.mark.asyncio
    async def test_agent_cannot_drive_admin_transitions(self, disputes, parties) -> None:
        traveler, agent, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        with pytest.raises(ForbiddenError):
            await disputes.transition(
                dispute.id, DisputeAction.ADMIN_START_REVIEW, DisputeActor.AGENT, agent.id, "self review"
            )

    @pytest.mark.asyncio
    async def test_expire_stale(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await disputes.create_dispute(traveler.id, _dispute_input(booking.id))
        later = dt.datetime.now(dt.UTC) + dt.timedelta(days=31)
        assert await disputes.expire_stale_disputes(later) == 1
        assert (await disputes.get_dispute(dispute.id)).state == DisputeState.CLOSED_EXPIRED.value

    @pytest.mark.asyncio
    async def test_statistics(self, disputes, parties) -> None:
        traveler, _, booking = parties
        dispute = await _open_with_evidence(disputes, traveler, booking)
        arbitration = ArbitrationService(disputes)
        await arbitration.start_review(dispute.id, "admin-1", "Picking this up for review")
        await arbitration.resolve(dispute.id, "admin-1", _decision(ResolutionType.NO_REFUND_OBJECTIVE))

        stats = await disputes.get_statistics()
        assert stats.total == 1
        assert stats.total_open == 0
        assert stats.resolved_this_month == 1
        assert stats.by_state["resolved_denied"] == 1
        assert stats.by_category["service_not_provided"] == 1
