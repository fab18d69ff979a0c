# backend/services/redis_pub_sub.py
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from core.config import settings

logger = logging.getLogger(__name__)

PUSH_CHANNEL_PREFIX = "push:"

Deliver = Callable[[str, dict], Awaitable[Any]]


def create_redis_client(url: Optional[str] = None) -> redis.Redis:
    """
    Shared store client. Short timeouts and no retries: a slow or failed
    store call surfaces as a 500 instead of a duplicated side effect.
    """
    return redis.from_url(
        url or settings.redis_url(),
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        retry_on_timeout=False,
    )


class AsyncRedisPubSubService:
    """
    Push fan-out over Redis Pub/Sub.

    ``trigger`` publishes ``{"channel", "event", "data"}`` on
    ``push:{channel}``; every app instance runs ``listen`` on ``push:*`` and
    hands each event to its local WebSocket relay.
    """

    def __init__(self, client: redis.Redis):
        self.client = client
        self.pubsub = None

    async def connect(self):
        """Verify the connection to Redis."""
        await self.client.ping()
        logger.info("✓ Connected to Redis for push fan-out")

    async def publish(self, channel: str, message: dict):
        """Publish message to channel."""
        await self.client.publish(channel, json.dumps(message))
        logger.debug("📤 Published to Redis channel '%s'", channel)

    async def trigger(self, channel: str, event: str, data: dict) -> None:
        await self.publish(
            f"{PUSH_CHANNEL_PREFIX}{channel}",
            {"channel": channel, "event": event, "data": data},
        )

    async def listen(self, deliver: Deliver, pattern: str = f"{PUSH_CHANNEL_PREFIX}*"):
        """
        Listen to push channels and forward each event to ``deliver``.

        Runs until cancelled; start it as a background task on startup.
        """
        self.pubsub = self.client.pubsub()
        await self.pubsub.psubscribe(pattern)
        logger.info("✓ Subscribed to Redis pattern '%s'", pattern)

        async for message in self.pubsub.listen():
            if message["type"] not in ("message", "pmessage"):
                continue
            try:
                payload = json.loads(message["data"])
                channel = payload.get("channel")
                if channel:
                    await deliver(channel, payload)
                else:
                    logger.warning("Redis push without channel - ignoring")
            except Exception:
                logger.exception("Error processing Redis push message")

    async def close(self):
        """Close connections."""
        if self.pubsub:
            await self.pubsub.punsubscribe()
            await self.pubsub.aclose()
        await self.client.aclose()
        logger.info("Redis connection closed")
