"""Disputes: filing, evidence, agent response and admin arbitration."""

from tripcomposer.modules.disputes.agent_response import AgentResponseService
from tripcomposer.modules.disputes.arbitration import ArbitrationService
from tripcomposer.modules.disputes.evidence import EvidenceService
from tripcomposer.modules.disputes.models import (
    AdminDecisionInput,
    AgentResponseInput,
    CreateDisputeInput,
    Dispute,
    DisputeCategory,
    EscalateInput,
    EvidenceInput,
    NoteInput,
)
from tripcomposer.modules.disputes.service import DisputeService
from tripcomposer.modules.disputes.state_machine import (
    DisputeAction,
    DisputeActor,
    DisputeState,
    ResolutionType,
    attempt_transition,
)

__all__ = [
    "AdminDecisionInput",
    "AgentResponseInput",
    "AgentResponseService",
    "ArbitrationService",
    "CreateDisputeInput",
    "Dispute",
    "DisputeAction",
    "DisputeActor",
    "DisputeCategory",
    "DisputeService",
    "DisputeState",
    "EscalateInput",
    "EvidenceInput",
    "EvidenceService",
    "NoteInput",
    "ResolutionType",
    "attempt_transition",
]
