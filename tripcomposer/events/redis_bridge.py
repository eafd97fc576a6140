"""Forward bus events to Redis pub/sub channels for other services."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from tenacity import retry, stop_after_attempt, wait_exponential

from tripcomposer.config import get_settings
from tripcomposer.events.types import EventEnvelope
from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)


class RedisEventBridge:
    """Publishes each envelope as JSON on ``<prefix>.<event_type>``."""

    def __init__(self, client: Optional[Any] = None, channel_prefix: Optional[str] = None) -> None:
        settings = get_settings()
        self._client = client
        self._url = settings.redis_url
        self._prefix = channel_prefix or settings.event_bus_channel_prefix

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    def channel_for(self, event_type: str) -> str:
        return f"{self._prefix}.{event_type}"

    async def __call__(self, envelope: EventEnvelope) -> None:
        receivers = await self._publish(self.channel_for(envelope.event_type), envelope.model_dump_json())
        logger.debug("event_forwarded", event_type=envelope.event_type, receivers=receivers)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.2, max=2), reraise=True)
    async def _publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_bridge_closed")
