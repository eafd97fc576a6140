"""The assigned agent's response to a dispute."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import select

from tripcomposer.clock import as_utc, hours_between, utcnow
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, ForbiddenError
from tripcomposer.events import EventType
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.disputes.models import (
    AgentResponseInput,
    DeadlineWarning,
    DisputeAgentResponse,
    DisputeErrorCode,
)
from tripcomposer.modules.disputes.service import SOURCE, DisputeService, dispute_metadata
from tripcomposer.modules.disputes.state_machine import DisputeAction, DisputeActor, DisputeState
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)


class AgentResponseService:
    def __init__(self, disputes: Optional[DisputeService] = None) -> None:
        self._disputes = disputes or DisputeService()

    async def get_response(self, dispute_id: str) -> Optional[DisputeAgentResponse]:
        async with session_scope(self._disputes.session) as session:
            return await session.scalar(
                select(DisputeAgentResponse).where(DisputeAgentResponse.dispute_id == dispute_id)
            )

    async def submit_response(
        self, dispute_id: str, agent_id: str, data: AgentResponseInput, now: Optional[dt.datetime] = None
    ) -> DisputeAgentResponse:
        """Record the agent's one response; late responses are accepted but flagged."""
        now = now or utcnow()
        dispute = await self._disputes.get_dispute(dispute_id)
        if dispute.agent_id != agent_id:
            raise ForbiddenError(
                "Only the assigned agent can respond to this dispute", code=DisputeErrorCode.NOT_PARTICIPANT
            )
        if await self.get_response(dispute_id) is not None:
            raise ConflictError(
                "Agent has already responded to this dispute", code=DisputeErrorCode.ALREADY_RESPONDED
            )
        if dispute.state != DisputeState.EVIDENCE_SUBMITTED.value:
            raise ConflictError(
                f"Cannot respond in state '{dispute.state}'. Agent can only respond when evidence has been submitted.",
                code=DisputeErrorCode.RESPONSE_NOT_ALLOWED,
            )

        deadline = as_utc(dispute.agent_response_deadline)
        late = deadline is not None and now > deadline
        if late:
            logger.warning("agent_response_after_deadline", dispute_id=dispute_id, agent_id=agent_id, deadline=deadline)

        async with session_scope(self._disputes.session) as session:
            response = DisputeAgentResponse(
                dispute_id=dispute_id,
                agent_id=agent_id,
                response=data.response,
                accepts_responsibility=data.accepts_responsibility,
                proposed_resolution=data.proposed_resolution,
                evidence_ids=list(data.evidence_ids),
                submitted_late=late,
                created_at=now,
            )
            session.add(response)
            await session.flush()

        await self._disputes.transition(
            dispute_id, DisputeAction.AGENT_RESPOND, DisputeActor.AGENT, agent_id, "Agent submitted response"
        )
        await log_action(
            agent_id,
            "agent_responded",
            SOURCE,
            details={
                "response_id": response.id,
                "accepts_responsibility": data.accepts_responsibility,
                "has_proposed_resolution": bool(data.proposed_resolution),
                "late": late,
            },
            actor_type="agent",
            entity_type="dispute",
            entity_id=dispute_id,
            session=self._disputes.session,
        )
        await self._disputes.event_bus.publish(
            EventType.AGENT_RESPONDED_TO_DISPUTE,
            {
                "dispute_id": dispute_id,
                "agent_id": agent_id,
                "accepts_responsibility": data.accepts_responsibility,
                "has_proposed_resolution": bool(data.proposed_resolution),
            },
            dispute_metadata(DisputeActor.AGENT, agent_id),
            aggregate_type="Dispute",
            aggregate_id=dispute_id,
        )
        logger.info(
            "agent_response_submitted",
            response_id=response.id,
            dispute_id=dispute_id,
            accepts_responsibility=data.accepts_responsibility,
        )
        return response

    async def is_overdue(self, dispute_id: str, now: Optional[dt.datetime] = None) -> bool:
        dispute = await self._disputes.get_dispute(dispute_id)
        if dispute.state != DisputeState.EVIDENCE_SUBMITTED.value or dispute.agent_response_deadline is None:
            return False
        return (now or utcnow()) > as_utc(dispute.agent_response_deadline)

    async def nearing_deadline(
        self, hours_threshold: float = 24, now: Optional[dt.datetime] = None
    ) -> list[DeadlineWarning]:
        """Disputes awaiting an agent response whose deadline falls within ``hours_threshold``."""
        now = now or utcnow()
        warnings = []
        for dispute in await self._disputes.admin_queue(state=DisputeState.EVIDENCE_SUBMITTED):
            if dispute.agent_response_deadline is None:
                continue
            remaining = hours_between(now, dispute.agent_response_deadline)
            if 0 < remaining <= hours_threshold:
                warnings.append(
                    DeadlineWarning(
                        dispute_id=dispute.id,
                        agent_id=dispute.agent_id,
                        deadline=as_utc(dispute.agent_response_deadline),
                        hours_remaining=round(remaining, 2),
                    )
                )
        return warnings
