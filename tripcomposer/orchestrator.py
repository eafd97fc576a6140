"""Central orchestrator wiring marketplace services to the event bus.

Modules never call each other directly for cross-cutting reactions; they
publish events and the orchestrator turns those into follow-up actions:

    DisputeCreated        -> booking OPEN_DISPUTE
    DisputeResolved       -> booking RESOLVE_DISPUTE (won/lost)
    RequestSubmitted      -> request ``matching`` then the matching engine
    AgentsMatched         -> request ``matched`` and response clocks started
    AgentAccepted/Declined-> first responses recorded
    BookingStateChanged   -> workload released, request completed
    RequestStateChanged   -> response clocks of dead requests expired
    ReviewSubmitted       -> agent score recalculation
    AgentScoreUpdated     -> matching attributes refreshed
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Optional

from tripcomposer.clock import utcnow
from tripcomposer.config import get_settings
from tripcomposer.errors import TripComposerError
from tripcomposer.events import EventBus, EventEnvelope, EventType, get_event_bus
from tripcomposer.events.redis_bridge import RedisEventBridge
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.bookings import BookingEvent, BookingEventInput, BookingService, BookingState, DisputeOutcome
from tripcomposer.modules.disputes import (
    AgentResponseService,
    ArbitrationService,
    DisputeService,
    EvidenceService,
    ResolutionType,
)
from tripcomposer.modules.identity.service import IdentityService
from tripcomposer.modules.matching.engine import MatchingEngine
from tripcomposer.modules.matching.models import DeclineReason, MatchingStatus, TravelRequestInput
from tripcomposer.modules.requests.service import RequestService
from tripcomposer.modules.requests.state_machine import RequestState
from tripcomposer.modules.scheduler import SchedulerService
from tripcomposer.modules.trust import ResponseTimeService, ResponseType, ReviewService, ScoreCalculatorService
from tripcomposer.modules.wishlist import WishlistService
from tripcomposer.modules.workload.service import WorkloadService

logger = get_logger(__name__)

# Resolutions where the traveler wins and the booking is refunded
_TRAVELER_WINS = (ResolutionType.FULL_REFUND.value, ResolutionType.PARTIAL_REFUND.value)

# Booking states that end the agent's work on a trip
_WORK_RELEASED_STATES = (BookingState.COMPLETED.value, BookingState.CANCELLED.value)

# Request states that end matching and stop the response clocks of matched agents
_REQUEST_DEAD_STATES = {
    RequestState.EXPIRED.value: MatchingStatus.EXPIRED,
    RequestState.CANCELLED.value: MatchingStatus.CANCELLED,
}


class Orchestrator:
    """Owns every service instance and the event subscriptions between them."""

    def __init__(self, event_bus: Optional[EventBus] = None) -> None:
        self._settings = get_settings()
        self.bus = event_bus or get_event_bus()
        self.identity = IdentityService(event_bus=self.bus)
        self.workload = WorkloadService()
        self.matching = MatchingEngine(workload=self.workload, event_bus=self.bus)
        self.requests = RequestService(event_bus=self.bus)
        self.bookings = BookingService(event_bus=self.bus)
        self.disputes = DisputeService(event_bus=self.bus)
        self.evidence = EvidenceService(self.disputes)
        self.agent_responses = AgentResponseService(self.disputes)
        self.arbitration = ArbitrationService(self.disputes)
        self.reviews = ReviewService(event_bus=self.bus)
        self.response_times = ResponseTimeService()
        self.scores = ScoreCalculatorService(event_bus=self.bus)
        self.wishlist = WishlistService()
        self.scheduler = SchedulerService()
        self._redis_bridge: Optional[RedisEventBridge] = None
        self._subscriptions: list[str] = []
        self._background: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────

    def register_handlers(self) -> None:
        """Subscribe the cross-module reactions. Calling it twice is harmless."""
        if self._subscriptions:
            return
        handlers = {
            EventType.DISPUTE_CREATED: self._on_dispute_created,
            EventType.DISPUTE_RESOLVED: self._on_dispute_resolved,
            EventType.REQUEST_SUBMITTED: self._on_request_submitted,
            EventType.AGENTS_MATCHED: self._on_agents_matched,
            EventType.AGENT_ACCEPTED: self._on_agent_accepted,
            EventType.AGENT_DECLINED: self._on_agent_declined,
            EventType.BOOKING_STATE_CHANGED: self._on_booking_state_changed,
            EventType.REQUEST_STATE_CHANGED: self._on_request_state_changed,
            EventType.REVIEW_SUBMITTED: self._on_review_changed,
            EventType.REVIEW_HIDDEN: self._on_review_changed,
            EventType.AGENT_SCORE_UPDATED: self._on_score_updated,
        }
        for event_type, handler in handlers.items():
            self._subscriptions.append(self.bus.subscribe(event_type, handler))
        logger.info("orchestrator_handlers_registered", count=len(self._subscriptions))

    async def startup(self, start_scheduler: bool = True) -> None:
        logger.info("orchestrator_startup_begin")
        self.register_handlers()

        if self._settings.event_bus_backend == "redis":
            self._redis_bridge = RedisEventBridge()
            self.bus.add_forwarder(self._redis_bridge)
            logger.info("redis_event_bridge_attached", url=self._settings.redis_url)

        if start_scheduler:
            try:
                await self.scheduler.start()
                self._register_scheduled_tasks()
            except Exception as exc:
                logger.error("scheduler_start_failed", error=str(exc))
        logger.info("orchestrator_startup_complete")

    def _spawn(self, coro) -> asyncio.Task:
        """Run a long reaction outside the publishing handler's timeout."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background reactions started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        logger.info("orchestrator_shutdown_begin")
        for task in list(self._background):
            task.cancel()
        await self.drain()
        try:
            await self.scheduler.stop()
        except Exception as exc:
            logger.error("scheduler_stop_failed", error=str(exc))
        for sub_id in self._subscriptions:
            self.bus.unsubscribe(sub_id)
        self._subscriptions.clear()
        if self._redis_bridge is not None:
            await self.bus.flush()
            await self._redis_bridge.close()
            self._redis_bridge = None
        logger.info("orchestrator_shutdown_complete")

    # ── Scheduled maintenance ────────────────────────────────────────

    def _register_scheduled_tasks(self) -> None:
        """Register the recurring sweeps, skipping any already registered."""
        existing = {t.name for t in self.scheduler.list_tasks()}

        async def _reset_daily():
            return await self.workload.reset_daily_counters()

        async def _reset_weekly():
            return await self.workload.reset_weekly_counters()

        async def _end_vacations():
            return await self.workload.end_expired_vacations()

        async def _expire_requests():
            return await self.requests.process_expired_requests()

        async def _expire_disputes():
            return await self.disputes.expire_stale_disputes()

        async def _decay_scores():
            return await self.scores.apply_decay_to_all()

        async def _refresh_response_metrics():
            return await self.response_times.recalculate_all()

        async def _expire_matches():
            return await self.matching.process_expired_matches()

        async def _cleanup_matching():
            return self.matching.cleanup_states()

        cron_jobs = (
            ("Workload Daily Reset", _reset_daily, "0 0 * * *"),
            ("Workload Weekly Reset", _reset_weekly, "5 0 * * mon"),
            ("Stale Dispute Expiry", _expire_disputes, "30 1 * * *"),
            ("Trust Score Decay", _decay_scores, "0 2 * * *"),
            ("Response Metrics Refresh", _refresh_response_metrics, "30 2 * * *"),
        )
        interval_jobs = (
            ("Vacation Sweep", _end_vacations, {"hours": 1}),
            ("Request Expiry", _expire_requests, {"minutes": 15}),
            ("Matching Timeout Sweep", _expire_matches, {"minutes": 5}),
            ("Matching State Cleanup", _cleanup_matching, {"hours": 1}),
        )
        for name, func, cron in cron_jobs:
            if name not in existing:
                self.scheduler.schedule_recurring(name=name, func=func, cron_expression=cron)
        for name, func, interval in interval_jobs:
            if name not in existing:
                self.scheduler.schedule_interval(name=name, func=func, **interval)
        logger.info("scheduled_tasks_registered", count=len(self.scheduler.list_tasks()))

    # ── Event reactions ──────────────────────────────────────────────

    async def _safely(self, action: str, coro) -> Any:
        """Run a follow-up action, logging domain errors instead of failing the publisher."""
        try:
            return await coro
        except TripComposerError as exc:
            logger.warning("orchestrator_reaction_rejected", action=action, code=exc.code, error=exc.message)
            return None

    async def _on_dispute_created(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        await self._safely(
            "booking_open_dispute",
            self.bookings.apply_event(
                payload["booking_id"],
                BookingEventInput(type=BookingEvent.OPEN_DISPUTE, dispute_id=payload["dispute_id"]),
                actor_id="system",
            ),
        )

    async def _on_dispute_resolved(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        outcome = DisputeOutcome.WON if payload.get("resolution") in _TRAVELER_WINS else DisputeOutcome.LOST
        await self._safely(
            "booking_resolve_dispute",
            self.bookings.apply_event(
                payload["booking_id"],
                BookingEventInput(type=BookingEvent.RESOLVE_DISPUTE, dispute_id=payload["dispute_id"], outcome=outcome),
                actor_id="system",
            ),
        )
        if payload.get("agent_id"):
            await self._safely("score_after_dispute", self.scores.recalculate(payload["agent_id"], "dispute_resolved"))

    async def _on_request_submitted(self, envelope: EventEnvelope) -> None:
        request = TravelRequestInput.model_validate(envelope.payload["request"])
        if await self._safely("request_mark_matching", self.requests.mark_matching(request.request_id)) is None:
            return
        self._spawn(self._run_matching(request))

    async def _run_matching(self, request: TravelRequestInput) -> None:
        try:
            result = await self.matching.process_request(request)
        except Exception as exc:
            logger.error("request_matching_crashed", request_id=request.request_id, error=str(exc))
            return
        logger.info("request_matching_finished", request_id=request.request_id, status=result.status.value)

    async def _on_agents_matched(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        request_id = payload["request_id"]
        await self._safely("request_mark_matched", self.requests.mark_matched(request_id))
        received_at = envelope.occurred_at
        for match in payload.get("matches", []):
            await self.response_times.record_request_received(match["agent_id"], request_id, received_at)

    async def _on_agent_accepted(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        await self.response_times.record_response(
            payload["agent_id"], payload["request_id"], ResponseType.PROPOSAL_SUBMITTED, envelope.occurred_at
        )

    async def _on_agent_declined(self, envelope: EventEnvelope) -> None:
        decline = envelope.payload["decline"]
        if decline["reason"] == DeclineReason.AGENT_TIMEOUT.value:
            await self.response_times.mark_request_expired(
                decline["agent_id"], decline["request_id"], envelope.occurred_at
            )
            return
        await self.response_times.record_response(
            decline["agent_id"], decline["request_id"], ResponseType.DECLINED, envelope.occurred_at
        )

    async def _on_booking_state_changed(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        target = payload.get("to")
        if target not in _WORK_RELEASED_STATES:
            return
        if payload.get("request_id"):
            await self.workload.decrement_workload(payload["agent_id"])
            if target == BookingState.COMPLETED.value:
                await self._safely("request_mark_completed", self.requests.mark_completed(payload["request_id"]))
        await self._safely("score_after_booking", self.scores.recalculate(payload["agent_id"], f"booking_{target.lower()}"))

    async def _on_request_state_changed(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        status = _REQUEST_DEAD_STATES.get(payload.get("to"))
        if status is None:
            return
        request_id = payload["request_id"]
        await self.matching.close_request(request_id, status, f"Travel request {payload['to']}")
        await self.response_times.expire_unanswered(request_id, envelope.occurred_at)

    async def _on_review_changed(self, envelope: EventEnvelope) -> None:
        agent_id = envelope.payload.get("agent_id")
        if agent_id:
            await self.scores.recalculate(agent_id, envelope.event_type)

    async def _on_score_updated(self, envelope: EventEnvelope) -> None:
        """Mirror trust figures into the attributes the matching engine ranks on."""
        payload = envelope.payload
        minutes = payload.get("average_response_time_minutes") or 0.0
        fields: dict[str, Any] = {
            "rating": round(payload.get("internal_score", 0.0), 2),
            "completed_bookings": payload.get("completed_bookings", 0),
        }
        if minutes:
            fields["average_response_time_hours"] = round(minutes / 60, 2)
        await self._safely(
            "matching_attributes_sync", self.matching.repository.upsert_agent(payload["agent_id"], **fields)
        )

    # ── Diagnostics ──────────────────────────────────────────────────

    def status(self, now: Optional[dt.datetime] = None) -> dict[str, Any]:
        now = now or utcnow()
        return {
            "time": now.isoformat(),
            "event_bus_backend": self._settings.event_bus_backend,
            "subscriptions": len(self._subscriptions),
            "scheduler_running": self.scheduler.running,
            "scheduled_tasks": [t.name for t in self.scheduler.list_tasks()],
            "matching_states": self.matching.active_state_count,
        }
