# backend/services/presence.py

from __future__ import annotations

import logging
import time
from typing import Dict, List

import redis.asyncio as redis

from core import keys
from core.config import settings
from models.models import Room

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Tracks which users are currently online in which room.

    A presence record is a plain Redis key with a TTL; its existence is the
    only truth about "online". Nobody deletes stale presence: a crashed
    client simply ages out after ``ttl_seconds``. The ``userCount`` stored on
    each room is a cache that ``recompute_room_count`` repairs from these
    records after every mutation.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = settings.ROOM_PRESENCE_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def mark_present(self, room_id: str, username: str) -> None:
        await self.client.set(
            keys.presence_key(room_id, username),
            int(time.time() * 1000),
            ex=self.ttl_seconds,
        )

    async def refresh(self, room_id: str, username: str) -> bool:
        """Extend the TTL of an existing record. Never resurrects a missing one."""
        return bool(await self.client.expire(keys.presence_key(room_id, username), self.ttl_seconds))

    async def remove(self, room_id: str, username: str) -> bool:
        return bool(await self.client.delete(keys.presence_key(room_id, username)))

    async def list_active(self, room_id: str) -> List[str]:
        users = []
        async for key in self.client.scan_iter(match=keys.presence_pattern(room_id), count=100):
            users.append(keys.last_segment(key))
        return sorted(users)

    async def recompute_room_count(self, room_id: str) -> int:
        """
        Recount a room's active users and write the count back to the room.

        The rewrite runs under WATCH so a concurrent member change is never
        overwritten, and uses SET XX so a room deleted concurrently is never
        resurrected by a late recount.
        """
        user_count = len(await self.list_active(room_id))
        room_key = keys.room_key(room_id)

        async def _write_count(pipe) -> None:
            raw = await pipe.get(room_key)
            pipe.multi()
            if raw:
                room = Room.model_validate_json(raw)
                room.user_count = user_count
                pipe.set(room_key, room.to_json(), xx=True)

        await self.client.transaction(_write_count, room_key)
        return user_count

    async def clear_room(self, room_id: str) -> int:
        stale = [key async for key in self.client.scan_iter(match=keys.presence_pattern(room_id), count=100)]
        if stale:
            await self.client.delete(*stale)
        return len(stale)

    async def cleanup_all(self) -> int:
        """Recompute the cached count of every room. Returns the number of rooms touched."""
        rooms_updated = 0
        async for room_key in self.client.scan_iter(match=f"{keys.CHAT_ROOM_PREFIX}*", count=100):
            room_id = room_key[len(keys.CHAT_ROOM_PREFIX):]
            new_count = await self.recompute_room_count(room_id)
            logger.info("Updated room %s count to %d", room_id, new_count)
            rooms_updated += 1
        return rooms_updated

    async def reset_all(self) -> int:
        """Drop every presence record and zero every room count."""
        stale = [key async for key in self.client.scan_iter(match=keys.presence_pattern(), count=100)]
        if stale:
            await self.client.delete(*stale)
        await self.cleanup_all()
        return len(stale)

    async def snapshot(self) -> Dict[str, dict]:
        """Every presence key with its value and remaining TTL (admin debugging)."""
        data = {}
        async for key in self.client.scan_iter(match=keys.presence_pattern(), count=100):
            data[key] = {
                "value": await self.client.get(key),
                "ttl": await self.client.ttl(key),
            }
        return data
