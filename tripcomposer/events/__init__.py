"""Event bus used for cross-module notifications."""

from tripcomposer.events.bus import (
    EventBus,
    EventBusDisposedError,
    EventValidationError,
    get_event_bus,
    set_event_bus,
)
from tripcomposer.events.types import (
    ActorType,
    EventEnvelope,
    EventMetadata,
    EventType,
    HandlerError,
    PublishResult,
)

__all__ = [
    "ActorType",
    "EventBus",
    "EventBusDisposedError",
    "EventEnvelope",
    "EventMetadata",
    "EventType",
    "EventValidationError",
    "HandlerError",
    "PublishResult",
    "get_event_bus",
    "set_event_bus",
]
