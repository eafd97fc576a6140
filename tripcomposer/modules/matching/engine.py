"""Matching engine: runs selection attempts and tracks per-request state.

Matching is advisory: it proposes agents and records what they did. Every
status change is published as ``MatchingStatusChanged``.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import as_utc, utcnow
from tripcomposer.errors import ConflictError, NotFoundError, ValidationFailedError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.matching.models import (
    AdminOverrideAction,
    AdminOverrideRequest,
    AgentDecline,
    AgentMatch,
    DeclineReason,
    MatchingConfig,
    MatchingResult,
    MatchingStatus,
    RequestMatchingState,
    TravelRequestInput,
)
from tripcomposer.modules.matching.repository import AgentRepository
from tripcomposer.modules.matching.selection import AgentSelector
from tripcomposer.modules.workload.service import WorkloadService
from tripcomposer.security.audit import log_action

logger = get_logger(__name__)

_SOURCE = "matching"

# Statuses after which matching takes no further action
_CLOSED_STATUSES = (MatchingStatus.MATCHING_FAILED, MatchingStatus.EXPIRED, MatchingStatus.CANCELLED)

Sleeper = Callable[[float], Awaitable[Any]]


class MatchingEngine:
    """Owns matching state for in-flight travel requests."""

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        repository: Optional[AgentRepository] = None,
        workload: Optional[WorkloadService] = None,
        event_bus: Optional[EventBus] = None,
        session: Optional[AsyncSession] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._config = config or MatchingConfig.from_settings()
        self._session = session
        self._workload = workload or WorkloadService(session)
        self._repository = repository or AgentRepository(session, self._workload)
        self._bus = event_bus or get_event_bus()
        self._selector = AgentSelector(self._config)
        self._sleep = sleep
        self._states: dict[str, RequestMatchingState] = {}

    @property
    def config(self) -> MatchingConfig:
        return self._config

    @property
    def repository(self) -> AgentRepository:
        return self._repository

    @property
    def active_state_count(self) -> int:
        return len(self._states)

    # ── Matching ─────────────────────────────────────────────────────

    async def process_request(self, request: TravelRequestInput) -> MatchingResult:
        """Match agents to a newly submitted request."""
        now = utcnow()
        state = RequestMatchingState(request_id=request.request_id, request=request, created_at=now, updated_at=now)
        self._states[request.request_id] = state

        await self.update_status(state, MatchingStatus.MATCHING_IN_PROGRESS, "Initial matching started")
        result = await self._perform_matching(state)
        await self._settle(state, result, "Agents matched, awaiting responses")
        return result

    async def _perform_matching(
        self, state: RequestMatchingState, selector: Optional[AgentSelector] = None
    ) -> MatchingResult:
        selector = selector or self._selector
        max_attempts = selector.config.max_attempts
        while True:
            state.current_attempt += 1
            pool = await self._repository.load_candidate_pool()
            result = selector.select(
                state.request,
                pool.agents,
                attempt=state.current_attempt,
                excluded_agent_ids=state.excluded_agent_ids,
                off_hours_agent_ids=pool.off_hours_agent_ids,
            )
            state.last_result = result
            if result.status in (MatchingStatus.AGENTS_MATCHED, MatchingStatus.MATCHING_FAILED):
                return result
            if state.current_attempt >= max_attempts:
                return result
            logger.info(
                "matching_retry_scheduled",
                request_id=state.request_id,
                attempt=state.current_attempt,
                cooldown_seconds=selector.config.retry_cooldown_seconds,
            )
            await self._sleep(selector.config.retry_cooldown_seconds)
            if state.status in _CLOSED_STATUSES:
                return result

    async def _settle(self, state: RequestMatchingState, result: MatchingResult, reason: str) -> None:
        """Record the outcome of a matching run and notify listeners."""
        if state.status in _CLOSED_STATUSES:
            logger.info("matching_result_discarded", request_id=state.request_id, status=state.status.value)
            return
        if result.status == MatchingStatus.AGENTS_MATCHED:
            await self._activate_matches(state, result.matches)
            await self.update_status(state, MatchingStatus.AWAITING_AGENT_RESPONSE, reason)
            await self._publish(
                EventType.AGENTS_MATCHED,
                state.request_id,
                {
                    "request_id": result.request_id,
                    "user_id": state.request.user_id if state.request else None,
                    "matches": [m.model_dump(mode="json") for m in result.matches],
                    "star_agents_count": result.star_agents_count,
                    "bench_agents_count": result.bench_agents_count,
                    "total_candidates_evaluated": result.total_candidates_evaluated,
                    "matching_duration_ms": result.matching_duration_ms,
                    "is_peak_season": result.is_peak_season,
                    "attempt": result.attempt,
                    "expires_at": result.matches[0].expires_at.isoformat(),
                },
            )
        else:
            await self._fail(state, "No available agents match the request criteria")

    async def _activate_matches(self, state: RequestMatchingState, matches: list[AgentMatch]) -> None:
        state.active_match_ids = [m.match_id for m in matches]
        state.active_matches = {m.match_id: m for m in matches}
        for match in matches:
            await self._workload.increment_workload(match.agent_id)

    async def _fail(self, state: RequestMatchingState, reason: str) -> None:
        await self.update_status(state, MatchingStatus.MATCHING_FAILED, reason)
        last = state.last_result
        await self._publish(
            EventType.MATCHING_FAILED,
            state.request_id,
            {
                "request_id": state.request_id,
                "reason": reason,
                "attempts_made": state.current_attempt,
                "total_agents_evaluated": last.total_candidates_evaluated if last else 0,
                "is_peak_season": last.is_peak_season if last else False,
            },
        )

    # ── Agent responses ──────────────────────────────────────────────

    async def handle_agent_decline(
        self,
        request_id: str,
        agent_id: str,
        reason: DeclineReason = DeclineReason.AGENT_DECLINED,
        match_id: Optional[str] = None,
    ) -> RequestMatchingState:
        """Record a decline, release the agent and rematch if too few remain."""
        state = self._require_state(request_id)
        self._require_awaiting(state)
        match = self._find_active_match(state, agent_id, match_id)
        if match is None:
            raise ConflictError(f"Agent {agent_id} has no active match for {request_id}", code="MATCH_NOT_FOUND")

        decline = AgentDecline(
            match_id=match.match_id,
            agent_id=agent_id,
            request_id=request_id,
            reason=reason,
            declined_at=utcnow(),
        )
        state.declines.append(decline)
        state.excluded_agent_ids.add(agent_id)
        state.active_match_ids.remove(match.match_id)
        state.active_matches.pop(match.match_id, None)
        await self._workload.decrement_workload(agent_id)

        remaining = len(state.active_match_ids)
        requires_rematch = remaining < self._config.min_agents
        await self._publish(
            EventType.AGENT_DECLINED,
            request_id,
            {
                "decline": decline.model_dump(mode="json"),
                "remaining_matches": remaining,
                "requires_rematch": requires_rematch,
            },
        )
        logger.info(
            "agent_decline_processed",
            request_id=request_id,
            agent_id=agent_id,
            reason=reason.value,
            remaining=remaining,
            requires_rematch=requires_rematch,
        )

        if requires_rematch and state.current_attempt < self._config.max_attempts:
            await self._rematch(state, "Insufficient remaining matches after agent decline")
        elif remaining == 0:
            await self._handle_all_declined(state)
        return state

    async def handle_agent_accept(self, request_id: str, agent_id: str) -> RequestMatchingState:
        """Confirm the accepting agent and release the other matched agents."""
        state = self._require_state(request_id)
        self._require_awaiting(state)
        match = self._find_active_match(state, agent_id)
        if match is None:
            raise ConflictError(f"Agent {agent_id} has no active match for {request_id}", code="MATCH_NOT_FOUND")
        if as_utc(match.expires_at) < utcnow():
            raise ConflictError(f"Match {match.match_id} has expired", code="MATCH_EXPIRED")

        for other in list(state.active_matches.values()):
            if other.agent_id != agent_id:
                await self._workload.decrement_workload(other.agent_id)
        state.confirmed_agent_id = agent_id
        state.active_match_ids = [match.match_id]
        state.active_matches = {match.match_id: match}

        await self._publish(
            EventType.AGENT_ACCEPTED,
            request_id,
            {"request_id": request_id, "agent_id": agent_id, "match_id": match.match_id},
            EventMetadata(actor_id=agent_id, actor_type=ActorType.AGENT, source=_SOURCE),
        )
        await self.update_status(state, MatchingStatus.AGENT_CONFIRMED, f"Agent {agent_id} accepted")
        return state

    async def _rematch(
        self, state: RequestMatchingState, reason: str, selector: Optional[AgentSelector] = None
    ) -> None:
        previous = list(state.active_match_ids)
        await self._release_matches(state)
        logger.info("rematch_initiated", request_id=state.request_id, previous_matches=previous, reason=reason)

        await self.update_status(state, MatchingStatus.MATCHING_IN_PROGRESS, "Rematch initiated")
        result = await self._perform_matching(state, selector)
        if result.status == MatchingStatus.AGENTS_MATCHED:
            await self._settle(state, result, "Rematch successful")
        else:
            await self._handle_all_declined(state)

    async def _release_matches(self, state: RequestMatchingState) -> None:
        for match in state.active_matches.values():
            await self._workload.decrement_workload(match.agent_id)
        state.active_match_ids = []
        state.active_matches = {}

    async def _handle_all_declined(self, state: RequestMatchingState) -> None:
        if state.status in _CLOSED_STATUSES:
            return
        if state.current_attempt < self._config.max_attempts:
            await self._rematch(state, "All matched agents declined")
            return
        await self._fail(state, "All agents declined or no suitable agents available after maximum attempts")

    async def process_expired_matches(self, now: Optional[dt.datetime] = None) -> int:
        """Treat every active match past its deadline as an agent timeout."""
        now = now or utcnow()
        timed_out = 0
        for state in list(self._states.values()):
            while state.status == MatchingStatus.AWAITING_AGENT_RESPONSE:
                match = next((m for m in state.active_matches.values() if as_utc(m.expires_at) <= now), None)
                if match is None:
                    break
                await self.handle_agent_decline(
                    state.request_id, match.agent_id, DeclineReason.AGENT_TIMEOUT, match.match_id
                )
                timed_out += 1
        if timed_out:
            logger.info("matching_timeouts_processed", count=timed_out)
        return timed_out

    async def close_request(
        self, request_id: str, status: MatchingStatus, reason: str
    ) -> Optional[RequestMatchingState]:
        """Stop matching for a request that ended, releasing its pending matches.

        A confirmed agent's slot belongs to the booking from then on and is
        released by the booking lifecycle.
        """
        state = self._states.get(request_id)
        if state is None or state.status in _CLOSED_STATUSES:
            return state
        if state.status != MatchingStatus.AGENT_CONFIRMED:
            await self._release_matches(state)
        await self.update_status(state, status, reason)
        return state

    # ── Admin overrides ──────────────────────────────────────────────

    async def apply_admin_override(
        self, override: AdminOverrideRequest, request: Optional[TravelRequestInput] = None
    ) -> RequestMatchingState:
        """Apply an audited admin override to a request's matching."""
        state = self._states.get(override.request_id)
        if state is None:
            if request is None:
                raise NotFoundError(f"No matching state for request {override.request_id}")
            now = utcnow()
            state = RequestMatchingState(request_id=request.request_id, request=request, created_at=now, updated_at=now)
            self._states[request.request_id] = state
        elif request is not None:
            state.request = request

        logger.info(
            "admin_override_processing",
            request_id=override.request_id,
            action=override.action.value,
            admin_id=override.admin_user_id,
        )

        action = override.action
        if action == AdminOverrideAction.FORCE_MATCH:
            await self._force_match(state, override)
        elif action == AdminOverrideAction.FORCE_REMATCH:
            self._require_request(state)
            state.excluded_agent_ids.clear()
            state.current_attempt = 0
            await self._rematch(state, f"Forced by admin: {override.reason}")
        elif action == AdminOverrideAction.CANCEL_MATCHING:
            await self._release_matches(state)
            await self.update_status(state, MatchingStatus.CANCELLED, f"Cancelled by admin: {override.reason}")
        elif action == AdminOverrideAction.EXTEND_TIMEOUT:
            if override.new_timeout_hours is None:
                raise ValidationFailedError("EXTEND_TIMEOUT requires new_timeout_hours")
            expires_at = utcnow() + dt.timedelta(hours=override.new_timeout_hours)
            for match in state.active_matches.values():
                match.expires_at = expires_at
        elif action == AdminOverrideAction.OVERRIDE_TIER_REQUIREMENT:
            self._require_request(state)
            relaxed = AgentSelector(
                self._config.model_copy(update={"min_agents": 1, "enable_bench_fallback": True})
            )
            state.current_attempt = 0
            await self._rematch(state, f"Tier requirement relaxed by admin: {override.reason}", relaxed)

        await log_action(
            override.admin_user_id,
            f"matching_{action.value.lower()}",
            _SOURCE,
            details={
                "reason": override.reason,
                "target_agent_ids": override.target_agent_ids or [],
                "new_timeout_hours": override.new_timeout_hours,
            },
            actor_type=ActorType.ADMIN.value,
            entity_type="travel_request",
            entity_id=override.request_id,
            session=self._session,
        )
        await self._publish(
            EventType.ADMIN_OVERRIDE_APPLIED,
            override.request_id,
            {
                "request_id": override.request_id,
                "admin_user_id": override.admin_user_id,
                "action": action.value,
                "reason": override.reason,
                "affected_agent_ids": override.target_agent_ids or [],
                "result": "Override applied successfully",
            },
            EventMetadata(
                actor_id=override.admin_user_id,
                actor_type=ActorType.ADMIN,
                source=_SOURCE,
                reason=override.reason,
            ),
        )
        return state

    async def _force_match(self, state: RequestMatchingState, override: AdminOverrideRequest) -> None:
        if not override.target_agent_ids:
            raise ValidationFailedError("FORCE_MATCH requires target_agent_ids")
        request = self._require_request(state)
        pool = (await self._repository.load_candidate_pool()).by_id()
        missing = [a for a in override.target_agent_ids if a not in pool]
        if missing:
            raise ConflictError(
                "Some target agents not found in available pool",
                code="AGENTS_NOT_AVAILABLE",
                details={"agent_ids": missing},
            )

        forced = AgentSelector(self._config.model_copy(update={"min_agents": 1, "max_attempts": 1}))
        targets = [pool[a] for a in override.target_agent_ids]
        result = forced.select(request, targets, attempt=state.current_attempt + 1)
        # Scoring exclusions (e.g. capacity) may still drop a forced agent
        if result.status != MatchingStatus.AGENTS_MATCHED:
            raise ConflictError("Target agents cannot take this request", code="AGENTS_NOT_AVAILABLE")

        await self._release_matches(state)
        state.current_attempt += 1
        state.last_result = result
        await self._settle(state, result, f"Force matched by admin: {override.reason}")

    # ── State ────────────────────────────────────────────────────────

    async def update_status(self, state: RequestMatchingState, status: MatchingStatus, reason: str) -> None:
        previous = state.status
        state.status = status
        state.updated_at = utcnow()
        await self._publish(
            EventType.MATCHING_STATUS_CHANGED,
            state.request_id,
            {
                "request_id": state.request_id,
                "previous_status": previous.value,
                "new_status": status.value,
                "reason": reason,
            },
        )
        logger.info(
            "matching_status_changed",
            request_id=state.request_id,
            previous=previous.value,
            new=status.value,
            reason=reason,
        )

    def get_state(self, request_id: str) -> Optional[RequestMatchingState]:
        return self._states.get(request_id)

    def cleanup_states(self, max_age: dt.timedelta = dt.timedelta(hours=24)) -> int:
        """Forget states whose last result completed more than ``max_age`` ago."""
        cutoff = utcnow() - max_age
        stale = [
            request_id
            for request_id, state in self._states.items()
            if state.last_result is not None and as_utc(state.last_result.completed_at) < cutoff
        ]
        for request_id in stale:
            del self._states[request_id]
        if stale:
            logger.info("matching_states_cleaned", count=len(stale))
        return len(stale)

    # ── Helpers ──────────────────────────────────────────────────────

    def _require_state(self, request_id: str) -> RequestMatchingState:
        state = self._states.get(request_id)
        if state is None:
            raise NotFoundError(f"No matching state for request {request_id}", code="MATCHING_STATE_NOT_FOUND")
        return state

    @staticmethod
    def _require_awaiting(state: RequestMatchingState) -> None:
        if state.status != MatchingStatus.AWAITING_AGENT_RESPONSE:
            raise ConflictError(
                f"Request {state.request_id} is {state.status.value}, not awaiting agent responses",
                code="MATCHING_NOT_AWAITING_RESPONSE",
            )

    @staticmethod
    def _require_request(state: RequestMatchingState) -> TravelRequestInput:
        if state.request is None:
            raise ValidationFailedError(f"Request data for {state.request_id} is required")
        return state.request

    @staticmethod
    def _find_active_match(
        state: RequestMatchingState, agent_id: str, match_id: Optional[str] = None
    ) -> Optional[AgentMatch]:
        for match in state.active_matches.values():
            if match.agent_id == agent_id and (match_id is None or match.match_id == match_id):
                return match
        return None

    async def _publish(
        self,
        event_type: EventType,
        request_id: str,
        payload: dict[str, Any],
        metadata: Optional[EventMetadata] = None,
    ) -> None:
        await self._bus.publish(
            event_type,
            payload,
            metadata or EventMetadata.system(_SOURCE),
            aggregate_type="TravelRequest",
            aggregate_id=request_id,
        )
