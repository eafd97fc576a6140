"""Admin arbitration: review, resolution, escalation and notes.

Every admin action here requires a reason and leaves both an audit entry and
a row in the dispute's arbitration history.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import utcnow
from tripcomposer.database import session_scope
from tripcomposer.errors import InvalidTransitionError, ValidationFailedError
from tripcomposer.events import EventType
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.disputes.models import (
    AdminDecisionInput,
    ArbitrationAction,
    Dispute,
    DisputeArbitration,
    DisputeErrorCode,
    DisputeNote,
    EscalateInput,
    NoteInput,
)
from tripcomposer.modules.disputes.service import SOURCE, DisputeService, dispute_metadata
from tripcomposer.modules.disputes.state_machine import (
    DisputeAction,
    DisputeActor,
    DisputeState,
    ResolutionType,
    TransitionErrorCode,
    is_terminal,
    resolution_to_action,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

_REFUND_RESOLUTIONS = (ResolutionType.FULL_REFUND, ResolutionType.PARTIAL_REFUND, ResolutionType.CREDIT_ISSUED)


def _require_reason(reason: Optional[str], what: str) -> None:
    if not (reason or "").strip():
        raise ValidationFailedError(f"Admin reason is mandatory for {what}", code=DisputeErrorCode.REASON_REQUIRED)


class ArbitrationService:
    """Admin-side dispute handling."""

    def __init__(self, disputes: Optional[DisputeService] = None) -> None:
        self._disputes = disputes or DisputeService()

    @property
    def _session(self) -> Optional[AsyncSession]:
        return self._disputes.session

    async def _record(
        self, dispute_id: str, admin_id: str, action: ArbitrationAction, reason: str, details: dict[str, Any]
    ) -> None:
        async with session_scope(self._session) as session:
            session.add(
                DisputeArbitration(
                    dispute_id=dispute_id, admin_id=admin_id, action=action.value, reason=reason, details=details
                )
            )

    async def start_review(self, dispute_id: str, admin_id: str, reason: str) -> Dispute:
        """Move a dispute under admin review, assigning the admin if nobody is assigned yet."""
        _require_reason(reason, "starting review")
        dispute = await self._disputes.get_dispute(dispute_id)
        previous = dispute.state
        if not dispute.admin_assigned_id:
            await self._disputes.assign_to_admin(dispute_id, admin_id, reason)
        dispute = await self._disputes.transition(
            dispute_id, DisputeAction.ADMIN_START_REVIEW, DisputeActor.ADMIN, admin_id, reason
        )
        await self._record(
            dispute_id, admin_id, ArbitrationAction.DISPUTE_OPENED, reason, {"previous_state": previous}
        )
        logger.info("admin_review_started", dispute_id=dispute_id, admin_id=admin_id)
        return dispute

    async def resolve(self, dispute_id: str, admin_id: str, decision: AdminDecisionInput) -> Dispute:
        """Resolve a dispute.

        Subjective complaints cannot be refunded. A full refund returns the
        booking amount; partial refunds and credits must be positive and no
        larger than the booking amount.
        """
        _require_reason(decision.reason, "dispute resolution")
        dispute = await self._disputes.get_dispute(dispute_id)
        if is_terminal(DisputeState(dispute.state)):
            raise InvalidTransitionError(
                f"Dispute is already in terminal state: {dispute.state}",
                code=(
                    TransitionErrorCode.ALREADY_RESOLVED.value
                    if dispute.state.startswith("resolved_")
                    else TransitionErrorCode.ALREADY_CLOSED.value
                ),
            )
        if dispute.is_subjective_complaint and decision.resolution in _REFUND_RESOLUTIONS:
            raise ValidationFailedError(
                "Subjective complaints are not eligible for refunds. Use no_refund_subjective instead.",
                code=DisputeErrorCode.SUBJECTIVE_NOT_REFUNDABLE,
            )

        refund: Optional[int] = None
        if decision.resolution == ResolutionType.FULL_REFUND:
            refund = dispute.booking_amount_cents
        elif decision.resolution in (ResolutionType.PARTIAL_REFUND, ResolutionType.CREDIT_ISSUED):
            amount = decision.refund_amount_cents or 0
            if amount <= 0:
                raise ValidationFailedError(
                    "Refund amount is required for partial refunds", code=DisputeErrorCode.INVALID_REFUND_AMOUNT
                )
            if amount > dispute.booking_amount_cents:
                raise ValidationFailedError(
                    "Refund amount cannot exceed booking amount", code=DisputeErrorCode.INVALID_REFUND_AMOUNT
                )
            refund = amount

        dispute = await self._disputes.transition(
            dispute_id, resolution_to_action(decision.resolution), DisputeActor.ADMIN, admin_id, decision.reason
        )
        async with session_scope(self._session) as session:
            dispute = await session.get(Dispute, dispute_id)
            dispute.resolution_type = decision.resolution.value
            dispute.refund_amount_cents = refund
            dispute.resolution_reason = decision.reason
            dispute.resolution_internal_notes = decision.internal_notes
            dispute.resolved_by = admin_id
            dispute.resolved_at = utcnow()
            await log_action(
                admin_id,
                f"resolution:{decision.resolution.value}",
                SOURCE,
                details={"refund_amount_cents": refund, "reason": decision.reason},
                actor_type="admin",
                entity_type="resolution",
                entity_id=dispute_id,
                session=session,
            )
        await self._record(
            dispute_id,
            admin_id,
            ArbitrationAction.RESOLUTION_APPROVED,
            decision.reason,
            {
                "resolution": decision.resolution.value,
                "refund_amount_cents": refund,
                "is_subjective_complaint": dispute.is_subjective_complaint,
            },
        )

        bus = self._disputes.event_bus
        metadata = dispute_metadata(DisputeActor.ADMIN, admin_id, decision.reason)
        await bus.publish(
            EventType.DISPUTE_RESOLVED,
            {
                "dispute_id": dispute_id,
                "booking_id": dispute.booking_id,
                "traveler_id": dispute.traveler_id,
                "agent_id": dispute.agent_id,
                "resolution": decision.resolution.value,
                "refund_amount_cents": refund,
                "currency": dispute.currency,
                "admin_id": admin_id,
                "reason": decision.reason,
            },
            metadata,
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        if refund:
            await bus.publish(
                EventType.REFUND_APPROVED,
                {
                    "dispute_id": dispute_id,
                    "booking_id": dispute.booking_id,
                    "traveler_id": dispute.traveler_id,
                    "agent_id": dispute.agent_id,
                    "refund_amount_cents": refund,
                    "currency": dispute.currency,
                    "refund_type": "full" if decision.resolution == ResolutionType.FULL_REFUND else "partial",
                    "approved_by": admin_id,
                },
                metadata,
                aggregate_type="Dispute",
                aggregate_id=dispute_id,
            )
        logger.info(
            "dispute_resolved",
            dispute_id=dispute_id,
            resolution=decision.resolution.value,
            refund_amount_cents=refund,
            admin_id=admin_id,
        )
        return dispute

    async def escalate(self, dispute_id: str, admin_id: str, data: EscalateInput) -> Dispute:
        _require_reason(data.reason, "escalation")
        dispute = await self._disputes.transition(
            dispute_id, DisputeAction.ADMIN_ESCALATE, DisputeActor.ADMIN, admin_id, data.reason
        )
        async with session_scope(self._session) as session:
            dispute = await session.get(Dispute, dispute_id)
            dispute.escalation_priority = data.priority.value
        await self._record(
            dispute_id, admin_id, ArbitrationAction.DISPUTE_ESCALATED, data.reason, {"priority": data.priority.value}
        )
        await self._disputes.event_bus.publish(
            EventType.DISPUTE_ESCALATED,
            {
                "dispute_id": dispute_id,
                "escalated_by": admin_id,
                "priority": data.priority.value,
                "reason": data.reason,
            },
            dispute_metadata(DisputeActor.ADMIN, admin_id, data.reason),
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        logger.info("dispute_escalated", dispute_id=dispute_id, priority=data.priority.value, admin_id=admin_id)
        return dispute

    async def add_note(self, dispute_id: str, admin_id: str, data: NoteInput) -> DisputeNote:
        await self._disputes.get_dispute(dispute_id)
        async with session_scope(self._session) as session:
            note = DisputeNote(dispute_id=dispute_id, admin_id=admin_id, note=data.note, is_internal=data.is_internal)
            session.add(note)
            await session.flush()
            await log_action(
                admin_id,
                "note_added",
                SOURCE,
                details={"note_id": note.id, "is_internal": data.is_internal},
                actor_type="admin",
                entity_type="dispute",
                entity_id=dispute_id,
                session=session,
            )
        await self._record(
            dispute_id, admin_id, ArbitrationAction.NOTE_ADDED, data.note, {"is_internal": data.is_internal}
        )
        logger.info("dispute_note_added", dispute_id=dispute_id, note_id=note.id, internal=data.is_internal)
        return note

    async def list_notes(self, dispute_id: str, include_internal: bool = False) -> list[DisputeNote]:
        query = select(DisputeNote).where(DisputeNote.dispute_id == dispute_id)
        if not include_internal:
            query = query.where(DisputeNote.is_internal.is_(False))
        async with session_scope(self._session) as session:
            result = await session.execute(query.order_by(DisputeNote.created_at.asc()))
            return list(result.scalars().all())

    async def history(self, dispute_id: str) -> list[DisputeArbitration]:
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(DisputeArbitration)
                .where(DisputeArbitration.dispute_id == dispute_id)
                .order_by(DisputeArbitration.created_at.asc())
            )
            return list(result.scalars().all())
