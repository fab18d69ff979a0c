# backend/services/rate_limiter.py

from __future__ import annotations

import logging
import time
from typing import Callable

import redis.asyncio as redis

from core import keys
from core.config import settings
from core.errors import TooManyRequests

logger = logging.getLogger(__name__)

SENSITIVE_ACTIONS = frozenset(
    {
        "generateToken",
        "refreshToken",
        "authenticateWithPassword",
        "setPassword",
        "createUser",
    }
)

GENERIC_LIMIT_REASON = "Too many requests, please slow down"
SHORT_BURST_REASON = "You're sending messages too quickly. Please slow down."
LONG_BURST_REASON = "Too many messages in a short period. Please wait a moment."
MIN_INTERVAL_REASON = "Please wait a moment before sending another message."


class RateLimiter:
    """
    Fixed-window counters kept in Redis.

    Two independent guards:
        - ``check_action``: N attempts per window for sensitive actions,
          keyed by (action, identifier)
        - ``check_chat_burst``: short window + long window + minimum interval
          per (room, user), applied to public rooms only

    Counters use INCR and set their expiry on the first hit, so concurrent
    handlers never lose an increment. A Redis failure lets the request
    through: availability wins over perfect enforcement.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS,
        attempts: int = settings.RATE_LIMIT_ATTEMPTS,
        short_window_seconds: int = settings.CHAT_BURST_SHORT_WINDOW_SECONDS,
        short_limit: int = settings.CHAT_BURST_SHORT_LIMIT,
        long_window_seconds: int = settings.CHAT_BURST_LONG_WINDOW_SECONDS,
        long_limit: int = settings.CHAT_BURST_LONG_LIMIT,
        min_interval_seconds: int = settings.CHAT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.window_seconds = window_seconds
        self.attempts = attempts
        self.short_window_seconds = short_window_seconds
        self.short_limit = short_limit
        self.long_window_seconds = long_window_seconds
        self.long_limit = long_limit
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock

    async def _hit(self, key: str, window_seconds: int) -> int:
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count

    async def check_action(self, action: str, identifier: str) -> None:
        """Raise TooManyRequests once ``identifier`` exceeds the window for ``action``."""
        key = keys.rate_limit_key(action, identifier)
        try:
            count = await self._hit(key, self.window_seconds)
        except redis.RedisError:
            logger.exception("Rate limit check failed for %s:%s, allowing request", action, identifier)
            return

        if count > self.attempts:
            logger.info("Rate limit exceeded for %s by %s: %d attempts", action, identifier, count)
            raise TooManyRequests(GENERIC_LIMIT_REASON)

    async def check_chat_burst(self, room_id: str, username: str) -> None:
        """Burst guard for public rooms; each violated rule has its own reason."""
        try:
            short_count = await self._hit(keys.burst_key("s", room_id, username), self.short_window_seconds)
            if short_count > self.short_limit:
                logger.info(
                    "Burst limit hit (short) by %s in room %s: %d/%d",
                    username, room_id, short_count, self.short_limit,
                )
                raise TooManyRequests(SHORT_BURST_REASON)

            long_count = await self._hit(keys.burst_key("l", room_id, username), self.long_window_seconds)
            if long_count > self.long_limit:
                logger.info(
                    "Burst limit hit (long) by %s in room %s: %d/%d",
                    username, room_id, long_count, self.long_limit,
                )
                raise TooManyRequests(LONG_BURST_REASON)

            last_key = keys.burst_key("last", room_id, username)
            now_seconds = int(self.clock())
            last_sent = await self.client.get(last_key)
            if last_sent is not None:
                delta = now_seconds - int(last_sent)
                if delta < self.min_interval_seconds:
                    logger.info(
                        "Min-interval hit by %s in room %s: %ds < %ds",
                        username, room_id, delta, self.min_interval_seconds,
                    )
                    raise TooManyRequests(MIN_INTERVAL_REASON)
            await self.client.set(last_key, now_seconds, ex=self.long_window_seconds)
        except redis.RedisError:
            logger.exception("Chat burst rate-limit check failed for %s in room %s", username, room_id)
