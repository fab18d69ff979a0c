# backend/services/message_pipeline.py

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from core import keys
from core.config import settings
from core.errors import Conflict, Forbidden, InvalidArgument, NotFound
from models.models import Message
from services.broadcast import BroadcastQueue, MessageDeleted, MessagePosted, MessagesCleared
from services.content_filter import ROOM_ID_REGEX, assert_valid_room_id, assert_valid_username, sanitize_message
from services.presence import PresenceTracker
from services.rate_limiter import RateLimiter
from services.room_directory import RoomDirectory, generate_id
from services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class MessagePipeline:
    """
    Validates, sanitizes, de-duplicates and persists chat messages.

    Messages live in one Redis list per room, newest first, trimmed to
    ``retention`` entries. Reads only ever return the newest ``page_size``.
    """

    def __init__(
        self,
        client: redis.Redis,
        rooms: RoomDirectory,
        users: UserDirectory,
        presence: PresenceTracker,
        limiter: RateLimiter,
        events: BroadcastQueue,
        *,
        max_length: int = settings.MAX_MESSAGE_LENGTH,
        retention: int = settings.MESSAGE_RETENTION,
        page_size: int = settings.MESSAGE_PAGE_SIZE,
    ):
        self.client = client
        self.rooms = rooms
        self.users = users
        self.presence = presence
        self.limiter = limiter
        self.events = events
        self.max_length = max_length
        self.retention = retention
        self.page_size = page_size

    @staticmethod
    def _parse(raw: str) -> Optional[Message]:
        try:
            return Message.model_validate_json(raw)
        except ValidationError:
            logger.error("Failed to parse stored message: %r", raw[:200])
            return None

    async def _read(self, room_id: str, count: int) -> List[Message]:
        raw_messages = await self.client.lrange(keys.messages_key(room_id), 0, count - 1)
        return [m for m in (self._parse(raw) for raw in raw_messages) if m is not None]

    async def send(self, room_id: str, username: str, raw_content: str) -> Message:
        username = assert_valid_username(username)
        room_id = assert_valid_room_id(room_id)
        if not raw_content:
            raise InvalidArgument("Content is required")

        # The burst limiter only applies to public rooms, so it needs the room
        room = await self.rooms.load(room_id)
        if not room.is_private:
            await self.limiter.check_chat_burst(room_id, username)

        if not await self.rooms.exists(room_id):
            raise NotFound("Room not found")

        await self.users.ensure(username)

        if len(raw_content) > self.max_length:
            logger.info("Message too long from %s: length %d", username, len(raw_content))
            raise InvalidArgument(f"Message exceeds maximum length of {self.max_length} characters")

        content = sanitize_message(raw_content)

        latest = await self._read(room_id, 1)
        if latest and latest[0].username == username and latest[0].content == content:
            logger.info("Duplicate message prevented from %s in room %s", username, room_id)
            raise Conflict("Duplicate message detected")

        message = Message(
            id=generate_id(),
            room_id=room_id,
            username=username,
            content=content,
            timestamp=int(time.time() * 1000),
        )
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lpush(keys.messages_key(room_id), message.to_json())
            pipe.ltrim(keys.messages_key(room_id), 0, self.retention - 1)
            await pipe.execute()
        logger.info("Message %s saved in room %s from %s", message.id, room_id, username)

        await self.users.touch(username)
        await self.presence.refresh(room_id, username)
        await self.presence.recompute_room_count(room_id)

        members = list(room.members or []) if room.is_private else []
        self.events.emit(MessagePosted(room_id=room_id, message=message, members=members))
        return message

    async def list(self, room_id: str) -> List[Message]:
        room_id = assert_valid_room_id(room_id)
        if not await self.rooms.exists(room_id):
            logger.info("Room not found: %s", room_id)
            raise NotFound("Room not found")
        messages = await self._read(room_id, self.page_size)
        logger.info("Retrieved %d messages for room %s", len(messages), room_id)
        return messages

    async def list_bulk(self, room_ids: List[str]) -> dict:
        """
        Newest messages for several rooms at once.

        Unknown room ids are reported in ``invalidRoomIds`` instead of
        failing the whole request.
        """
        for room_id in room_ids:
            if not ROOM_ID_REGEX.match(room_id):
                raise InvalidArgument("Invalid room ID format")

        valid_room_ids: List[str] = []
        invalid_room_ids: List[str] = []
        for room_id in room_ids:
            (valid_room_ids if await self.rooms.exists(room_id) else invalid_room_ids).append(room_id)
        if invalid_room_ids:
            logger.info("Invalid room IDs: %s", ", ".join(invalid_room_ids))

        messages_map: Dict[str, list] = {}
        for room_id in valid_room_ids:
            messages_map[room_id] = [m.to_dict() for m in await self._read(room_id, self.page_size)]

        return {
            "messagesMap": messages_map,
            "validRoomIds": valid_room_ids,
            "invalidRoomIds": invalid_room_ids,
        }

    async def delete(self, room_id: str, message_id: str, requested_by: Optional[str]) -> None:
        if not self.rooms.is_admin(requested_by):
            logger.info("Unauthorized: user %s is not the admin", requested_by)
            raise Forbidden("Forbidden - Only admin can delete messages")

        room = await self.rooms.load(room_id)
        key = keys.messages_key(room.id)
        for raw in await self.client.lrange(key, 0, -1):
            message = self._parse(raw)
            if message is not None and message.id == message_id:
                await self.client.lrem(key, 1, raw)
                break
        else:
            raise NotFound("Message not found")

        logger.info("Deleted message %s from room %s", message_id, room.id)
        members = list(room.members or []) if room.is_private else []
        self.events.emit(MessageDeleted(room_id=room.id, message_id=message_id, members=members))

    async def clear_all(self, requested_by: Optional[str]) -> int:
        if not self.rooms.is_admin(requested_by):
            logger.info("Unauthorized: user %s is not the admin", requested_by)
            raise Forbidden("Forbidden - Only admin can clear messages")

        message_keys = [key async for key in self.client.scan_iter(match=f"{keys.CHAT_MESSAGES_PREFIX}*", count=100)]
        if message_keys:
            await self.client.delete(*message_keys)

        room_ids = [key[len(keys.CHAT_MESSAGES_PREFIX):] for key in message_keys]
        logger.info("Cleared messages in %d rooms", len(room_ids))
        self.events.emit(MessagesCleared(room_ids=room_ids))
        return len(room_ids)
