"""Tests for the event bus and the Redis bridge."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from tripcomposer.events import (
    ActorType,
    EventBus,
    EventBusDisposedError,
    EventEnvelope,
    EventMetadata,
    EventType,
    EventValidationError,
)
from tripcomposer.events.redis_bridge import RedisEventBridge


def _meta(**overrides) -> EventMetadata:
    data = {"actor_id": "user-1", "actor_type": ActorType.USER, "source": "tests"}
    data.update(overrides)
    return EventMetadata(**data)


class TestEventBus:
    """Tests for publish/subscribe delivery."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_priority_order(self) -> None:
        bus = EventBus(handler_timeout=1)
        calls: list[str] = []

        def make(name):
            async def handler(envelope: EventEnvelope) -> None:
                calls.append(name)
            return handler

        bus.subscribe(EventType.DISPUTE_CREATED, make("late"), priority=200)
        bus.subscribe(EventType.DISPUTE_CREATED, make("early"), priority=10)
        bus.subscribe_all(make("wildcard"), priority=50)

        result = await bus.publish(EventType.DISPUTE_CREATED, {"dispute_id": "d1"}, _meta())
        assert calls == ["early", "wildcard", "late"]
        assert result.handlers_invoked == 3
        assert result.ok

    @pytest.mark.asyncio
    async def test_envelope_fields(self) -> None:
        bus = EventBus(handler_timeout=1)
        seen: list[EventEnvelope] = []

        async def handler(envelope: EventEnvelope) -> None:
            seen.append(envelope)

        bus.subscribe(EventType.REVIEW_SUBMITTED, handler)
        await bus.publish(
            EventType.REVIEW_SUBMITTED, {"review_id": "r1"}, _meta(), aggregate_type="Review", aggregate_id="r1"
        )
        envelope = seen[0]
        assert envelope.event_type == "ReviewSubmitted"
        assert envelope.aggregate_id == "r1"
        assert envelope.payload == {"review_id": "r1"}
        assert envelope.version == 1
        assert envelope.event_id

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus(handler_timeout=1)
        delivered: list[str] = []

        async def broken(envelope: EventEnvelope) -> None:
            raise RuntimeError("boom")

        async def healthy(envelope: EventEnvelope) -> None:
            delivered.append(envelope.event_id)

        bus.subscribe(EventType.BOOKING_STATE_CHANGED, broken, priority=1)
        bus.subscribe(EventType.BOOKING_STATE_CHANGED, healthy, priority=2)
        result = await bus.publish(EventType.BOOKING_STATE_CHANGED, {}, _meta())

        assert len(delivered) == 1
        assert result.handlers_succeeded == 1
        assert result.errors[0].error == "boom"

    @pytest.mark.asyncio
    async def test_continue_on_error_false_stops_chain(self) -> None:
        bus = EventBus(handler_timeout=1)
        delivered: list[str] = []

        async def broken(envelope: EventEnvelope) -> None:
            raise RuntimeError("boom")

        async def healthy(envelope: EventEnvelope) -> None:
            delivered.append("x")

        bus.subscribe(EventType.BOOKING_STATE_CHANGED, broken, priority=1, continue_on_error=False)
        bus.subscribe(EventType.BOOKING_STATE_CHANGED, healthy, priority=2)
        await bus.publish(EventType.BOOKING_STATE_CHANGED, {}, _meta())
        assert delivered == []

    @pytest.mark.asyncio
    async def test_handler_timeout_reported(self) -> None:
        bus = EventBus(handler_timeout=0.05)

        async def slow(envelope: EventEnvelope) -> None:
            await asyncio.sleep(1)

        bus.subscribe(EventType.AGENTS_MATCHED, slow)
        result = await bus.publish(EventType.AGENTS_MATCHED, {}, _meta())
        assert result.errors[0].timed_out

    @pytest.mark.asyncio
    async def test_admin_events_require_reason(self) -> None:
        bus = EventBus(handler_timeout=1)
        with pytest.raises(EventValidationError) as exc_info:
            await bus.publish(EventType.REVIEW_HIDDEN, {}, _meta(actor_type=ActorType.ADMIN))
        assert exc_info.value.field == "metadata.reason"

        result = await bus.publish(
            EventType.REVIEW_HIDDEN, {}, _meta(actor_type=ActorType.ADMIN, reason="Spam content")
        )
        assert result.ok

    @pytest.mark.asyncio
    async def test_blank_actor_rejected(self) -> None:
        bus = EventBus(handler_timeout=1)
        with pytest.raises(EventValidationError):
            await bus.publish(EventType.REQUEST_SUBMITTED, {}, _meta(actor_id="  "))

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = EventBus(handler_timeout=1)
        handler = AsyncMock()
        sub_id = bus.subscribe(EventType.REQUEST_CREATED, handler)
        assert bus.has_subscribers(EventType.REQUEST_CREATED)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)
        await bus.publish(EventType.REQUEST_CREATED, {}, _meta())
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_forwarder_failure_is_contained(self) -> None:
        bus = EventBus(handler_timeout=1)
        forwarded: list[str] = []

        async def broken(envelope: EventEnvelope) -> None:
            raise ConnectionError("redis down")

        async def ok(envelope: EventEnvelope) -> None:
            forwarded.append(envelope.event_type)

        bus.add_forwarder(broken)
        bus.add_forwarder(ok)
        result = await bus.publish(EventType.DISPUTE_RESOLVED, {}, _meta())
        assert result.ok
        await bus.flush()
        assert forwarded == ["DisputeResolved"]

    @pytest.mark.asyncio
    async def test_slow_forwarder_does_not_block_publish(self) -> None:
        bus = EventBus(handler_timeout=1)
        release = asyncio.Event()
        forwarded: list[str] = []

        async def slow(envelope: EventEnvelope) -> None:
            await release.wait()
            forwarded.append(envelope.event_id)

        bus.add_forwarder(slow)
        result = await bus.publish(EventType.REQUEST_CREATED, {}, _meta())
        assert forwarded == []

        release.set()
        await bus.flush()
        assert forwarded == [result.event_id]

    @pytest.mark.asyncio
    async def test_disposed_bus_refuses_use(self) -> None:
        bus = EventBus(handler_timeout=1)
        await bus.dispose()
        with pytest.raises(EventBusDisposedError):
            await bus.publish(EventType.DISPUTE_CREATED, {}, _meta())
        with pytest.raises(EventBusDisposedError):
            bus.subscribe(EventType.DISPUTE_CREATED, AsyncMock())


class TestRedisEventBridge:
    """Tests for forwarding envelopes to Redis."""

    @pytest.mark.asyncio
    async def test_publishes_json_on_prefixed_channel(self) -> None:
        client = AsyncMock()
        client.publish.return_value = 2
        bridge = RedisEventBridge(client=client, channel_prefix="tc.events")
        bus = EventBus(handler_timeout=1)
        bus.add_forwarder(bridge)

        await bus.publish(EventType.AGENT_SCORE_UPDATED, {"agent_id": "a1"}, _meta(), aggregate_id="a1")
        await bus.flush()

        channel, message = client.publish.call_args.args
        assert channel == "tc.events.AgentScoreUpdated"
        body = json.loads(message)
        assert body["payload"] == {"agent_id": "a1"}
        assert body["metadata"]["actor_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_close_releases_client(self) -> None:
        client = AsyncMock()
        bridge = RedisEventBridge(client=client)
        await bridge.close()
        client.aclose.assert_awaited_once()
        await bridge.close()
        client.aclose.assert_awaited_once()
