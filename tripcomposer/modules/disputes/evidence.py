"""Evidence collection for disputes."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select

from tripcomposer.clock import utcnow
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from tripcomposer.events import EventType
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.disputes.models import (
    DisputeErrorCode,
    DisputeEvidence,
    EvidenceInput,
    EvidenceSource,
    EvidenceType,
)
from tripcomposer.modules.disputes.service import ACTOR_TYPES, SOURCE, DisputeService, dispute_metadata
from tripcomposer.modules.disputes.state_machine import (
    DisputeAction,
    DisputeActor,
    DisputeState,
    can_submit_evidence,
)
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)


class EvidenceService:
    """Accepts, lists and verifies dispute evidence."""

    def __init__(self, disputes: Optional[DisputeService] = None) -> None:
        self._disputes = disputes or DisputeService()
        self._settings = self._disputes.settings

    def validate_file(self, data: EvidenceInput) -> None:
        max_mb = self._settings.dispute_max_evidence_size_mb
        if data.file_size_bytes > max_mb * 1024 * 1024:
            raise ValidationFailedError(
                f"File size exceeds limit of {max_mb}MB", code=DisputeErrorCode.EVIDENCE_INVALID_FILE
            )
        allowed = self._settings.evidence_mime_types
        if data.mime_type not in allowed:
            raise ValidationFailedError(
                f"File type '{data.mime_type}' is not allowed. Allowed types: {', '.join(allowed)}",
                code=DisputeErrorCode.EVIDENCE_INVALID_FILE,
            )

    async def submit_evidence(
        self,
        dispute_id: str,
        submitter_id: str,
        submitter: DisputeActor,
        data: EvidenceInput,
    ) -> DisputeEvidence:
        """Attach evidence; the traveler's first upload moves the dispute to evidence_submitted."""
        dispute = await self._disputes.get_dispute(dispute_id)
        state = DisputeState(dispute.state)
        if not can_submit_evidence(state):
            raise ConflictError(
                f"Cannot submit evidence in state '{state.value}'. Evidence can only be submitted in "
                "'pending_evidence' or 'evidence_submitted' states.",
                code=DisputeErrorCode.EVIDENCE_NOT_ALLOWED,
            )
        if submitter == DisputeActor.TRAVELER and dispute.traveler_id != submitter_id:
            raise ForbiddenError(
                "Only the dispute creator can submit evidence as traveler", code=DisputeErrorCode.NOT_PARTICIPANT
            )
        if submitter == DisputeActor.AGENT and dispute.agent_id != submitter_id:
            raise ForbiddenError("Only the assigned agent can submit evidence", code=DisputeErrorCode.NOT_PARTICIPANT)
        if submitter not in (DisputeActor.TRAVELER, DisputeActor.AGENT):
            raise ForbiddenError("Only dispute participants can submit evidence", code=DisputeErrorCode.NOT_PARTICIPANT)

        async with session_scope(self._disputes.session) as session:
            count = await session.scalar(
                select(func.count()).select_from(DisputeEvidence).where(DisputeEvidence.dispute_id == dispute_id)
            ) or 0
            limit = self._settings.dispute_max_evidence_files
            if count >= limit:
                raise ConflictError(
                    f"Maximum evidence limit of {limit} files reached",
                    code=DisputeErrorCode.EVIDENCE_LIMIT_REACHED,
                )
            self.validate_file(data)

            evidence = DisputeEvidence(
                dispute_id=dispute_id,
                evidence_type=data.evidence_type.value,
                source=submitter.value,
                submitted_by=submitter_id,
                file_name=data.file_name,
                file_url=data.file_url,
                file_size_bytes=data.file_size_bytes,
                mime_type=data.mime_type,
                description=data.description,
            )
            session.add(evidence)
            await session.flush()
            await log_action(
                submitter_id,
                "evidence_submitted",
                SOURCE,
                details={"dispute_id": dispute_id, "type": data.evidence_type.value},
                actor_type=ACTOR_TYPES[submitter].value,
                entity_type="evidence",
                entity_id=evidence.id,
                session=session,
            )

        await self._disputes.event_bus.publish(
            EventType.EVIDENCE_SUBMITTED,
            {
                "dispute_id": dispute_id,
                "evidence_id": evidence.id,
                "submitted_by": submitter_id,
                "submitter_type": submitter.value,
                "evidence_type": data.evidence_type.value,
                "total_evidence_count": count + 1,
            },
            dispute_metadata(submitter, submitter_id),
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        logger.info(
            "evidence_submitted",
            evidence_id=evidence.id,
            dispute_id=dispute_id,
            type=data.evidence_type.value,
            submitter=submitter.value,
        )

        if state == DisputeState.PENDING_EVIDENCE and submitter == DisputeActor.TRAVELER:
            await self._disputes.transition(
                dispute_id, DisputeAction.SUBMIT_EVIDENCE, DisputeActor.TRAVELER, submitter_id
            )
        return evidence

    async def list_evidence(self, dispute_id: str) -> list[DisputeEvidence]:
        async with session_scope(self._disputes.session) as session:
            result = await session.execute(
                select(DisputeEvidence)
                .where(DisputeEvidence.dispute_id == dispute_id)
                .order_by(DisputeEvidence.created_at.asc())
            )
            return list(result.scalars().all())

    async def verify_evidence(self, evidence_id: str, admin_id: str, verified: bool) -> DisputeEvidence:
        async with session_scope(self._disputes.session) as session:
            evidence = await session.get(DisputeEvidence, evidence_id)
            if evidence is None:
                raise NotFoundError(
                    f"Evidence not found: {evidence_id}", code=DisputeErrorCode.EVIDENCE_NOT_FOUND
                )
            was_verified = evidence.is_verified
            evidence.is_verified = verified
            evidence.verified_by = admin_id
            evidence.verified_at = utcnow()
            await log_action(
                admin_id,
                "evidence_verified" if verified else "evidence_rejected",
                SOURCE,
                details={"previous": was_verified, "verified": verified},
                actor_type="admin",
                entity_type="evidence",
                entity_id=evidence_id,
                session=session,
            )
        logger.info("evidence_verification_updated", evidence_id=evidence_id, verified=verified, admin_id=admin_id)
        return evidence

    async def evidence_stats(self, dispute_id: str) -> dict:
        evidence = await self.list_evidence(dispute_id)
        by_type = {t.value: 0 for t in EvidenceType}
        by_source = {s.value: 0 for s in EvidenceSource}
        for item in evidence:
            by_type[item.evidence_type] += 1
            by_source[item.source] += 1
        return {
            "total": len(evidence),
            "by_type": by_type,
            "by_source": by_source,
            "verified_count": sum(1 for item in evidence if item.is_verified),
        }
