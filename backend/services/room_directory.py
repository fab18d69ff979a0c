# backend/services/room_directory.py

from __future__ import annotations

import logging
import secrets
import time
from typing import List, Optional, Tuple

import redis.asyncio as redis

from core import keys
from core.config import settings
from core.errors import Forbidden, InvalidArgument, NotFound
from models.models import Room, RoomWithUsers
from services.broadcast import BroadcastQueue, RoomsChanged
from services.content_filter import assert_valid_room_id, assert_valid_username, is_profane
from services.presence import PresenceTracker
from services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


def generate_id() -> str:
    # 128-bit random identifier, hex encoded
    return secrets.token_hex(16)


# ============================================================================
# ROOM DIRECTORY
# ============================================================================
class RoomDirectory:
    """
    Room CRUD and membership rules, persisted in Redis.

    Rooms come in two flavours:
        - public:  created by the admin identity only, visible to everyone
        - private: created by any user for an explicit member list, visible
                   only to those members; collapses once fewer than two
                   members remain

    Storage Format (chat:room:{id}):
        {
            "id": "9f2c...",
            "name": "@alice, @bob",
            "type": "private",
            "createdAt": 1733000000000,
            "userCount": 2,
            "members": ["alice", "bob"]
        }

    ``userCount`` is only a cache; the PresenceTracker recomputes it after
    every membership change.
    """

    def __init__(
        self,
        client: redis.Redis,
        presence: PresenceTracker,
        users: UserDirectory,
        events: BroadcastQueue,
        admin_username: str = settings.ADMIN_USERNAME,
    ):
        self.client = client
        self.presence = presence
        self.users = users
        self.events = events
        self.admin_username = admin_username.lower()

    def is_admin(self, username: Optional[str]) -> bool:
        return bool(username) and username.lower() == self.admin_username

    async def _load(self, room_id: str) -> Optional[Room]:
        raw = await self.client.get(keys.room_key(room_id))
        return Room.model_validate_json(raw) if raw else None

    async def _save(self, room: Room) -> None:
        await self.client.set(keys.room_key(room.id), room.to_json())

    async def _delete(self, room: Room) -> None:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.delete(keys.room_key(room.id))
            pipe.delete(keys.messages_key(room.id))
            await pipe.execute()
        await self.presence.clear_room(room.id)

    async def load(self, room_id: str) -> Room:
        """Fetch a room as stored, without touching its cached count."""
        room = await self._load(assert_valid_room_id(room_id))
        if room is None:
            logger.info("Room not found: %s", room_id)
            raise NotFound("Room not found")
        return room

    async def exists(self, room_id: str) -> bool:
        return bool(await self.client.exists(keys.room_key(room_id)))

    async def create(
        self,
        type: str = "public",
        name: Optional[str] = None,
        members: Optional[List[str]] = None,
        requested_by: Optional[str] = None,
    ) -> Room:
        """
        Create a room.

        Public rooms need a clean name and the admin identity. Private rooms
        need at least one member; the requester is always added and the
        display name is derived from the sorted member list.

        Raises:
            InvalidArgument: bad type, missing name/members, profane name
            Forbidden: non-admin creating a public room
        """
        requester = (requested_by or "").lower()

        if type not in ("public", "private"):
            logger.info("Room creation failed: invalid room type %r", type)
            raise InvalidArgument("Invalid room type. Must be 'public' or 'private'")

        if type == "public":
            if not name or not name.strip():
                raise InvalidArgument("Room name is required for public rooms")
            if not self.is_admin(requester):
                logger.info("Unauthorized: user %s is not the admin", requester)
                raise Forbidden("Forbidden - Only admin can create public rooms")
            if is_profane(name):
                logger.info("Room creation failed: name contains inappropriate language: %s", name)
                raise InvalidArgument("Room name contains inappropriate language")

            room = Room(
                id=generate_id(),
                name=name.strip().lower().replace(" ", "-"),
                type="public",
                created_at=int(time.time() * 1000),
                user_count=0,
            )
            await self._save(room)
        else:
            if not members:
                raise InvalidArgument("At least one member is required for private rooms")

            normalized: List[str] = []
            for member in [*members, requester]:
                member = assert_valid_username(member)
                if member not in normalized:
                    normalized.append(member)

            room = Room(
                id=generate_id(),
                name=", ".join(f"@{m}" for m in sorted(normalized)),
                type="private",
                created_at=int(time.time() * 1000),
                user_count=len(normalized),
                members=normalized,
            )
            await self._save(room)
            for member in normalized:
                await self.presence.mark_present(room.id, member)

        logger.info("%s room created: %s (%s) by %s", room.type, room.id, room.name, requester)
        self.events.emit(RoomsChanged())
        return room

    async def get(self, room_id: str) -> Room:
        """Single room with a freshly recomputed ``userCount``."""
        room = await self.load(room_id)
        room.user_count = await self.presence.recompute_room_count(room.id)
        return room

    async def list_detailed(self) -> List[RoomWithUsers]:
        """Every room with its active users, counts computed from presence."""
        rooms: List[RoomWithUsers] = []
        async for key in self.client.scan_iter(match=f"{keys.CHAT_ROOM_PREFIX}*", count=100):
            raw = await self.client.get(key)
            if not raw:
                continue
            room = RoomWithUsers.model_validate_json(raw)
            room.users = await self.presence.list_active(room.id)
            room.user_count = len(room.users)
            rooms.append(room)
        return sorted(rooms, key=lambda r: r.created_at)

    async def list_visible(self, viewer: Optional[str] = None) -> List[RoomWithUsers]:
        return [room for room in await self.list_detailed() if room.visible_to(viewer)]

    async def join(self, room_id: str, username: str) -> Room:
        username = assert_valid_username(username)
        room = await self.load(room_id)

        if not await self.users.exists(username):
            logger.info("User not found: %s", username)
            raise NotFound("User not found")

        await self.presence.mark_present(room.id, username)
        room.user_count = await self.presence.recompute_room_count(room.id)
        await self.users.touch(username)
        logger.info("User %s joined room %s, new user count: %d", username, room.id, room.user_count)

        self.events.emit(RoomsChanged())
        return room

    async def leave(self, room_id: str, username: str) -> Optional[Room]:
        """
        Leave a room. Returns the room, or None when a private room collapsed.

        Leaving a room the user was never in is a no-op success.
        """
        username = assert_valid_username(username)
        room = await self.load(room_id)

        removed = await self.presence.remove(room.id, username)
        if room.is_private:
            return await self._leave_private(room, username, removed)
        if not removed:
            logger.info("User %s was not in room %s", username, room.id)
            return room

        previous_count = room.user_count
        room.user_count = await self.presence.recompute_room_count(room.id)
        logger.info("User %s left room %s, new active user count: %d", username, room.id, room.user_count)

        if room.user_count != previous_count:
            self.events.emit(RoomsChanged())
        else:
            logger.info("Skipping broadcast: user count (%d) did not change", room.user_count)

        return room

    async def _remove_member(self, room_id: str, username: str) -> Tuple[Optional[Room], List[str]]:
        """
        Drop ``username`` from a private room's member list under WATCH/MULTI.

        Returns ``(room, members_before)``. ``room`` is None when the room is
        gone, either already or because fewer than two members would remain
        and it was deleted here. Concurrent leavers retry on ``WatchError``,
        so every removal is applied to the latest member list.
        """
        room_key = keys.room_key(room_id)

        async def _apply(pipe) -> Tuple[Optional[Room], List[str]]:
            raw = await pipe.get(room_key)
            pipe.multi()
            if not raw:
                return None, []
            room = Room.model_validate_json(raw)
            members = list(room.members or [])
            if username not in members:
                return room, members

            room.members = [m for m in members if m != username]
            if len(room.members) < 2:
                pipe.delete(room_key)
                pipe.delete(keys.messages_key(room_id))
                return None, members
            pipe.set(room_key, room.to_json(), xx=True)
            return room, members

        return await self.client.transaction(_apply, room_key, value_from_callable=True)

    async def _leave_private(self, room: Room, username: str, removed: bool) -> Optional[Room]:
        updated, members = await self._remove_member(room.id, username)

        if updated is None:
            await self.presence.clear_room(room.id)
            if members:
                remaining = len(members) - 1
                logger.info(
                    "Deleting private room %s (%s)",
                    room.id,
                    "no members left" if not remaining else "only 1 member would remain",
                )
                self.events.emit(RoomsChanged(usernames=members))
            else:
                logger.info("Private room %s was already deleted", room.id)
            return None

        if username not in members and not removed:
            logger.info("User %s was not in room %s", username, room.id)
            return updated

        updated.user_count = await self.presence.recompute_room_count(updated.id)
        logger.info("User %s left room %s, new active user count: %d", username, updated.id, updated.user_count)
        self.events.emit(RoomsChanged())
        return updated

    async def switch(self, previous_room_id: Optional[str], next_room_id: Optional[str], username: str) -> None:
        """Move a user's presence from one room to another with a single broadcast."""
        username = assert_valid_username(username)
        if previous_room_id == next_room_id:
            return

        if previous_room_id:
            previous = await self.load(previous_room_id)
            await self.presence.remove(previous.id, username)
            await self.presence.recompute_room_count(previous.id)

        if next_room_id:
            nxt = await self.load(next_room_id)
            if not await self.users.exists(username):
                raise NotFound("User not found")
            await self.presence.mark_present(nxt.id, username)
            await self.presence.recompute_room_count(nxt.id)
            await self.users.touch(username)

        logger.info("User %s switched from %s to %s", username, previous_room_id, next_room_id)
        self.events.emit(RoomsChanged())

    async def delete(self, room_id: str, requested_by: Optional[str]) -> None:
        if not self.is_admin(requested_by):
            logger.info("Unauthorized: user %s is not the admin", requested_by)
            raise Forbidden("Forbidden - Only admin can delete rooms")

        room = await self.load(room_id)
        await self._delete(room)
        logger.info("Deleted room %s (%s)", room.id, room.name)

        if room.is_private:
            self.events.emit(RoomsChanged(usernames=list(room.members or [])))
        else:
            self.events.emit(RoomsChanged())
