"""In-process async event bus with priority-ordered handlers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from tripcomposer.config import get_settings
from tripcomposer.events.types import (
    ActorType,
    EventEnvelope,
    EventMetadata,
    HandlerError,
    PublishResult,
)
from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[EventEnvelope], Awaitable[Any]]
EventForwarder = Callable[[EventEnvelope], Awaitable[None]]

WILDCARD = "*"
DEFAULT_PRIORITY = 100


class EventValidationError(ValueError):
    """Raised when an event lacks the metadata required for auditing."""

    def __init__(self, message: str, field: str) -> None:
        super().__init__(message)
        self.field = field


class EventBusDisposedError(RuntimeError):
    """Raised when the bus is used after dispose()."""


@dataclass
class _Registration:
    subscription_id: str
    event_type: str
    handler: EventHandler
    priority: int
    continue_on_error: bool


class EventBus:
    """Publish/subscribe hub used for cross-module notifications.

    Handlers for a given event type run sequentially in ascending priority
    order, followed by wildcard handlers merged into the same ordering. Each
    handler is bounded by a timeout. Optional forwarders (e.g. the Redis
    bridge) receive every event after local delivery, as background tasks
    so a slow forwarder never holds up the publisher.
    """

    def __init__(self, handler_timeout: Optional[float] = None) -> None:
        if handler_timeout is None:
            handler_timeout = get_settings().event_handler_timeout_seconds
        self._timeout = handler_timeout
        self._handlers: dict[str, list[_Registration]] = {}
        self._index: dict[str, str] = {}
        self._forwarders: list[EventForwarder] = []
        self._pending: set[asyncio.Task] = set()
        self._disposed = False

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        priority: int = DEFAULT_PRIORITY,
        continue_on_error: bool = True,
        subscription_id: Optional[str] = None,
    ) -> str:
        """Register a handler for one event type and return its subscription id."""
        self._ensure_active()
        sub_id = subscription_id or str(uuid4())
        registration = _Registration(sub_id, str(event_type), handler, priority, continue_on_error)
        bucket = self._handlers.setdefault(str(event_type), [])
        bucket.append(registration)
        bucket.sort(key=lambda r: r.priority)
        self._index[sub_id] = str(event_type)
        logger.debug("event_handler_subscribed", event_type=str(event_type), subscription_id=sub_id)
        return sub_id

    def subscribe_all(
        self,
        handler: EventHandler,
        priority: int = DEFAULT_PRIORITY,
        continue_on_error: bool = True,
    ) -> str:
        """Register a handler that receives every event."""
        return self.subscribe(WILDCARD, handler, priority, continue_on_error)

    def unsubscribe(self, subscription_id: str) -> bool:
        event_type = self._index.pop(subscription_id, None)
        if event_type is None:
            return False
        bucket = self._handlers.get(event_type, [])
        for i, registration in enumerate(bucket):
            if registration.subscription_id == subscription_id:
                del bucket[i]
                break
        if not bucket:
            self._handlers.pop(event_type, None)
        return True

    def add_forwarder(self, forwarder: EventForwarder) -> None:
        """Attach an outbound forwarder that sees every published event."""
        self._forwarders.append(forwarder)

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        """Count handlers that would receive ``event_type`` (all handlers if None)."""
        if event_type is None:
            return sum(len(b) for b in self._handlers.values())
        specific = len(self._handlers.get(str(event_type), []))
        return specific + len(self._handlers.get(WILDCARD, []))

    def has_subscribers(self, event_type: str) -> bool:
        return self.subscriber_count(event_type) > 0

    def clear(self) -> None:
        """Drop all subscriptions."""
        self._handlers.clear()
        self._index.clear()

    async def flush(self) -> None:
        """Wait for forwards still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def dispose(self) -> None:
        """Clear subscriptions and refuse further use."""
        await self.flush()
        self.clear()
        self._forwarders.clear()
        self._disposed = True
        logger.info("event_bus_disposed")

    # ── Publishing ───────────────────────────────────────────────────

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: EventMetadata,
        aggregate_type: str = "",
        aggregate_id: str = "",
    ) -> PublishResult:
        """Build an envelope and deliver it."""
        self._ensure_active()
        self._validate_metadata(metadata)
        envelope = EventEnvelope(
            event_type=str(event_type),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
            metadata=metadata,
        )
        return await self.publish_envelope(envelope)

    async def publish_envelope(self, envelope: EventEnvelope) -> PublishResult:
        """Deliver a prebuilt envelope to local handlers, then forwarders."""
        self._ensure_active()
        self._validate_metadata(envelope.metadata)

        registrations = self._handlers_for(envelope.event_type)
        result = PublishResult(event_id=envelope.event_id, handlers_invoked=len(registrations))

        for registration in registrations:
            try:
                await asyncio.wait_for(registration.handler(envelope), timeout=self._timeout)
                result.handlers_succeeded += 1
            except asyncio.TimeoutError:
                result.errors.append(HandlerError(
                    subscription_id=registration.subscription_id,
                    error=f"Handler timed out after {self._timeout}s",
                    timed_out=True,
                ))
                logger.warning(
                    "event_handler_timeout",
                    event_type=envelope.event_type,
                    subscription_id=registration.subscription_id,
                )
                if not registration.continue_on_error:
                    break
            except Exception as exc:
                result.errors.append(HandlerError(
                    subscription_id=registration.subscription_id,
                    error=str(exc),
                ))
                logger.error(
                    "event_handler_failed",
                    event_type=envelope.event_type,
                    subscription_id=registration.subscription_id,
                    error=str(exc),
                )
                if not registration.continue_on_error:
                    break

        for forwarder in self._forwarders:
            task = asyncio.create_task(self._forward(forwarder, envelope))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.debug(
            "event_published",
            event_type=envelope.event_type,
            event_id=envelope.event_id,
            invoked=result.handlers_invoked,
            succeeded=result.handlers_succeeded,
        )
        return result

    # ── Internals ────────────────────────────────────────────────────

    @staticmethod
    async def _forward(forwarder: EventForwarder, envelope: EventEnvelope) -> None:
        try:
            await forwarder(envelope)
        except Exception as exc:
            logger.error("event_forward_failed", event_type=envelope.event_type, error=str(exc))

    def _handlers_for(self, event_type: str) -> list[_Registration]:
        specific = self._handlers.get(event_type, [])
        wildcard = self._handlers.get(WILDCARD, [])
        return sorted([*specific, *wildcard], key=lambda r: r.priority)

    def _ensure_active(self) -> None:
        if self._disposed:
            raise EventBusDisposedError("Event bus has been disposed")

    @staticmethod
    def _validate_metadata(metadata: EventMetadata) -> None:
        if metadata is None:
            raise EventValidationError("Event metadata is required for audit compliance", "metadata")
        if not metadata.actor_id or not metadata.actor_id.strip():
            raise EventValidationError("Actor ID is required for audit compliance", "metadata.actor_id")
        if not metadata.source or not metadata.source.strip():
            raise EventValidationError("Source module is required for audit compliance", "metadata.source")
        if metadata.actor_type == ActorType.ADMIN and not (metadata.reason or "").strip():
            raise EventValidationError("Admin actions require a reason for audit compliance", "metadata.reason")


_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Return the process-wide event bus."""
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus


def set_event_bus(bus: Optional[EventBus]) -> None:
    """Replace the process-wide event bus (used at startup and in tests)."""
    global _bus
    _bus = bus
