"""Loads the candidate agent pool for matching."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import utcnow
from tripcomposer.config import get_settings
from tripcomposer.database import session_scope
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.identity.models import AccountStatus, AgentProfile, AgentVerificationStatus, User
from tripcomposer.modules.matching.models import (
    AgentAvailability,
    AgentPerformanceRecord,
    AgentSpecialization,
    AgentTier,
    MatchingAgent,
    ObfuscatedAgent,
)
from tripcomposer.modules.workload.models import AdvisorWorkloadLimits
from tripcomposer.modules.workload.service import WorkloadService

logger = get_logger(__name__)


@dataclass
class CandidatePool:
    agents: list[MatchingAgent] = field(default_factory=list)
    off_hours_agent_ids: set[str] = field(default_factory=set)

    def by_id(self) -> dict[str, MatchingAgent]:
        return {a.agent_id: a for a in self.agents}


def _to_matching_agent(
    record: AgentPerformanceRecord,
    user: User,
    limits: Optional[AdvisorWorkloadLimits],
    default_max_workload: int,
) -> MatchingAgent:
    return MatchingAgent(
        agent_id=record.agent_id,
        first_name=user.first_name,
        photo_url=user.photo_url,
        tier=AgentTier(record.tier),
        rating=record.rating,
        completed_bookings=record.completed_bookings,
        average_response_time_hours=record.average_response_time_hours,
        availability=AgentAvailability(record.availability),
        specializations=[AgentSpecialization(s) for s in record.specializations or []],
        regions=list(record.regions or []),
        current_workload=limits.current_active_requests if limits else 0,
        max_workload=limits.max_active_requests if limits else default_max_workload,
        is_active=record.is_active,
    )


class AgentRepository:
    """Reads verified, active agents joined with their workload limits."""

    def __init__(self, session: Optional[AsyncSession] = None, workload: Optional[WorkloadService] = None) -> None:
        self._session = session
        self._workload = workload or WorkloadService(session)

    async def load_candidate_pool(self, now: Optional[dt.datetime] = None) -> CandidatePool:
        """Return agents that are verified, active and allowed new work."""
        now = now or utcnow()
        defaults = get_settings()
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AgentPerformanceRecord, User, AdvisorWorkloadLimits)
                .join(User, User.id == AgentPerformanceRecord.agent_id)
                .join(AgentProfile, AgentProfile.user_id == AgentPerformanceRecord.agent_id)
                .outerjoin(AdvisorWorkloadLimits, AdvisorWorkloadLimits.agent_id == AgentPerformanceRecord.agent_id)
                .where(
                    User.status == AccountStatus.ACTIVE.value,
                    AgentProfile.verification_status == AgentVerificationStatus.VERIFIED.value,
                    AgentPerformanceRecord.is_active.is_(True),
                )
            )
            rows = result.all()

        agents: dict[str, MatchingAgent] = {}
        for record, user, limits in rows:
            agents[record.agent_id] = _to_matching_agent(
                record, user, limits, defaults.workload_default_max_active_requests
            )

        availability = await self._workload.get_availability_map(list(agents), now)
        pool = CandidatePool()
        for agent_id, agent in agents.items():
            status = availability[agent_id]
            if not status.is_available:
                logger.debug("agent_filtered_by_workload", agent_id=agent_id, reasons=status.unavailable_reasons)
                continue
            pool.agents.append(agent)
            if not status.within_working_hours:
                pool.off_hours_agent_ids.add(agent_id)

        logger.info("candidate_pool_loaded", candidates=len(rows), available=len(pool.agents))
        return pool

    async def get_public_views(self, agent_ids: list[str]) -> list[ObfuscatedAgent]:
        """Pre-confirmation views of the given agents, in the order asked for."""
        if not agent_ids:
            return []
        defaults = get_settings()
        async with session_scope(self._session) as session:
            result = await session.execute(
                select(AgentPerformanceRecord, User)
                .join(User, User.id == AgentPerformanceRecord.agent_id)
                .where(AgentPerformanceRecord.agent_id.in_(agent_ids))
            )
            rows = {record.agent_id: (record, user) for record, user in result.all()}
        return [
            ObfuscatedAgent.from_agent(
                _to_matching_agent(*rows[agent_id], None, defaults.workload_default_max_active_requests)
            )
            for agent_id in agent_ids
            if agent_id in rows
        ]

    async def upsert_agent(self, agent_id: str, **fields: Any) -> AgentPerformanceRecord:
        """Create or update an agent's matching attributes."""
        async with session_scope(self._session) as session:
            record = await session.get(AgentPerformanceRecord, agent_id)
            if record is None:
                record = AgentPerformanceRecord(
                    agent_id=agent_id,
                    tier=AgentTier.BENCH.value,
                    rating=0.0,
                    completed_bookings=0,
                    average_response_time_hours=24.0,
                    availability=AgentAvailability.AVAILABLE.value,
                    specializations=[],
                    regions=[],
                    is_active=True,
                )
                session.add(record)
            for name, value in fields.items():
                if not hasattr(AgentPerformanceRecord, name):
                    raise AttributeError(f"Unknown agent attribute: {name}")
                if isinstance(value, list):
                    value = [str(v) for v in value]
                elif hasattr(value, "value"):
                    value = value.value
                setattr(record, name, value)
            record.last_active_at = utcnow()
        return record
