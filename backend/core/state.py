# backend/core/state.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional

import redis.asyncio as redis

from services.broadcast import BroadcastCoordinator, BroadcastQueue, PushFanout
from services.connection_manager import ConnectionManager
from services.message_pipeline import MessagePipeline
from services.presence import PresenceTracker
from services.rate_limiter import RateLimiter
from services.room_directory import RoomDirectory
from services.token_authority import TokenAuthority
from services.user_directory import UserDirectory

# Global singletons for app state, wired by init() on startup
redis_client: Optional[redis.Redis] = None
fanout: Optional[PushFanout] = None
push_service = None  # backend-specific handle used for listen/shutdown

tokens: Optional[TokenAuthority] = None
presence: Optional[PresenceTracker] = None
limiter: Optional[RateLimiter] = None
users: Optional[UserDirectory] = None
rooms: Optional[RoomDirectory] = None
messages: Optional[MessagePipeline] = None
broadcaster: Optional[BroadcastCoordinator] = None
events: Optional[BroadcastQueue] = None

connection_manager = ConnectionManager()

# Metrics
message_counter: int = 0
app_start_time: datetime = datetime.now(timezone.utc)


def init(client: redis.Redis, push: PushFanout, clock: Callable[[], float] = time.time) -> None:
    """Build every chat service on top of one Redis client and one push backend."""
    global redis_client, fanout, tokens, presence, limiter, users, rooms, messages, broadcaster, events

    redis_client = client
    fanout = push

    events = BroadcastQueue()
    tokens = TokenAuthority(client, clock=clock)
    presence = PresenceTracker(client)
    limiter = RateLimiter(client, clock=clock)
    users = UserDirectory(client, tokens)
    rooms = RoomDirectory(client, presence, users, events)
    messages = MessagePipeline(client, rooms, users, presence, limiter, events)
    broadcaster = BroadcastCoordinator(rooms, users, push)
    events.coordinator = broadcaster
