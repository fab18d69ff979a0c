# backend/services/broadcast.py

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Union

from models.models import Message, RoomWithUsers

if TYPE_CHECKING:
    from services.room_directory import RoomDirectory
    from services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

PUBLIC_CHANNEL = "chats-public"


def sanitize_for_channel(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_\-.]", "_", name)


def user_channel(username: str) -> str:
    return f"chats-{sanitize_for_channel(username)}"


def room_channel(room_id: str) -> str:
    return f"room-{room_id}"


class PushFanout(Protocol):
    """Anything that can push a JSON event onto a named channel."""

    async def trigger(self, channel: str, event: str, data: dict) -> None: ...


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

@dataclass
class RoomsChanged:
    """The visible room set changed. ``usernames`` narrows the push to those users."""

    usernames: Optional[List[str]] = None


@dataclass
class MessagePosted:
    room_id: str
    message: Message
    members: List[str] = field(default_factory=list)


@dataclass
class MessageDeleted:
    room_id: str
    message_id: str
    members: List[str] = field(default_factory=list)


@dataclass
class MessagesCleared:
    room_ids: List[str]


ChatEvent = Union[RoomsChanged, MessagePosted, MessageDeleted, MessagesCleared]


# ============================================================================
# COORDINATOR
# ============================================================================

class BroadcastCoordinator:
    """
    Decides which channels hear about a state change and pushes to them.

    Channels:
        chats-public     public rooms only, for anonymous listeners
        chats-{user}     that user's visible rooms + private-room fan-out
        room-{room_id}   live messages of one room

    The push layer is best-effort. Every failure is logged, counted and
    swallowed: clients can always re-fetch through the pull endpoints.
    """

    def __init__(self, rooms: "RoomDirectory", users: "UserDirectory", fanout: PushFanout):
        self.rooms = rooms
        self.users = users
        self.fanout = fanout
        self.failures = 0

    async def _trigger_all(self, pushes: Iterable[tuple]) -> None:
        pushes = list(pushes)
        results = await asyncio.gather(
            *(self.fanout.trigger(channel, event, data) for channel, event, data in pushes),
            return_exceptions=True,
        )
        for (channel, event, _), result in zip(pushes, results):
            if isinstance(result, Exception):
                self.failures += 1
                logger.error("Push of %s to %s failed: %s", event, channel, result)

    @staticmethod
    def _rooms_payload(rooms: List[RoomWithUsers], username: Optional[str]) -> dict:
        return {"rooms": [room.to_dict() for room in rooms if room.visible_to(username)]}

    async def broadcast_rooms_updated(self) -> None:
        """Push the filtered room list to the public channel and to every known user."""
        try:
            all_rooms = await self.rooms.list_detailed()
            usernames = await self.users.all_usernames()
        except Exception:
            self.failures += 1
            logger.exception("Failed to collect rooms for broadcast")
            return

        pushes = [(PUBLIC_CHANNEL, "rooms-updated", self._rooms_payload(all_rooms, None))]
        pushes.extend(
            (user_channel(name), "rooms-updated", self._rooms_payload(all_rooms, name)) for name in usernames
        )
        await self._trigger_all(pushes)
        logger.info("rooms-updated pushed to %d channels", len(pushes))

    async def broadcast_to_users(self, usernames: List[str]) -> None:
        """Narrow variant: only the named users' channels are recomputed."""
        if not usernames:
            return
        try:
            all_rooms = await self.rooms.list_detailed()
        except Exception:
            self.failures += 1
            logger.exception("Failed to collect rooms for targeted broadcast")
            return

        await self._trigger_all(
            (user_channel(name), "rooms-updated", self._rooms_payload(all_rooms, name)) for name in usernames
        )
        logger.info("rooms-updated pushed to %d affected users", len(usernames))

    async def publish_room_message(self, room_id: str, event: str, data: dict) -> None:
        await self._trigger_all([(room_channel(room_id), event, data)])

    async def fan_out_to_private_members(
        self, room_id: str, event: str, data: dict, members: Optional[List[str]] = None
    ) -> None:
        """
        Each private member's own channel doubles as a fallback subscription.

        ``members`` is looked up from the room when not given; public rooms
        have nobody to fan out to.
        """
        if members is None:
            try:
                room = await self.rooms.load(room_id)
            except Exception:
                self.failures += 1
                logger.exception("Failed to load room %s for private fan-out", room_id)
                return
            members = list(room.members or []) if room.is_private else []

        await self._trigger_all((user_channel(member), event, data) for member in members)

    async def publish_room_event(self, room_id: str, event: str, data: dict, members: List[str]) -> None:
        await asyncio.gather(
            self.publish_room_message(room_id, event, data),
            self.fan_out_to_private_members(room_id, event, data, members),
        )

    async def handle(self, event: ChatEvent) -> None:
        if isinstance(event, RoomsChanged):
            if event.usernames is None:
                await self.broadcast_rooms_updated()
            else:
                await self.broadcast_to_users(event.usernames)
        elif isinstance(event, MessagePosted):
            await self.publish_room_event(
                event.room_id,
                "room-message",
                {"roomId": event.room_id, "message": event.message.to_dict()},
                event.members,
            )
        elif isinstance(event, MessageDeleted):
            await self.publish_room_event(
                event.room_id,
                "message-deleted",
                {"roomId": event.room_id, "messageId": event.message_id},
                event.members,
            )
        elif isinstance(event, MessagesCleared):
            await self._trigger_all(
                (room_channel(room_id), "messages-cleared", {"roomId": room_id}) for room_id in event.room_ids
            )


# ============================================================================
# OUTBOUND QUEUE
# ============================================================================

class BroadcastQueue:
    """
    Decouples request handlers from the push layer.

    Handlers ``emit`` events and return immediately; a single background
    worker feeds them to the coordinator. Nothing is retried: an event whose
    push fails is logged and dropped.
    """

    def __init__(self, coordinator: Optional[BroadcastCoordinator] = None):
        self.coordinator = coordinator
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def emit(self, event: ChatEvent) -> None:
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _process(self, event: ChatEvent) -> None:
        if self.coordinator is None:
            return
        try:
            await self.coordinator.handle(event)
        except Exception:
            logger.exception("Broadcast of %s failed", type(event).__name__)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._process(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
            logger.info("Broadcast worker started")

    async def drain(self) -> None:
        """Process everything queued so far on the caller's task."""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._process(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.drain()
