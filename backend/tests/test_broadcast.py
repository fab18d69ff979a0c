import asyncio

import pytest

from services.broadcast import PUBLIC_CHANNEL, BroadcastQueue, RoomsChanged, sanitize_for_channel, user_channel
from services.connection_manager import ConnectionManager


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def test_channel_names_are_sanitized():
    assert sanitize_for_channel("a b@c.d-e_f") == "a_b_c.d-e_f"
    assert user_channel("alice") == "chats-alice"


@pytest.mark.asyncio
async def test_rooms_updated_is_filtered_per_viewer(chat, fanout, make_user):
    await make_user("alice")
    await make_user("carol")
    await make_user("dave")
    public = await chat.rooms.create("public", "lobby", requested_by="ryo")
    private = await chat.rooms.create("private", members=["carol"], requested_by="alice")

    await chat.broadcaster.broadcast_rooms_updated()

    def room_ids(channel):
        return {room["id"] for room in fanout.payload(channel, "rooms-updated")["rooms"]}

    assert room_ids(PUBLIC_CHANNEL) == {public.id}
    assert room_ids(user_channel("alice")) == {public.id, private.id}
    assert room_ids(user_channel("carol")) == {public.id, private.id}
    assert room_ids(user_channel("dave")) == {public.id}


@pytest.mark.asyncio
async def test_targeted_update_only_reaches_named_users(chat, fanout, make_user):
    await make_user("alice")
    await make_user("dave")

    await chat.broadcaster.broadcast_to_users(["alice"])

    assert fanout.channels_for("rooms-updated") == [user_channel("alice")]


@pytest.mark.asyncio
async def test_push_failures_are_swallowed_and_counted(chat, fanout, make_user):
    await make_user("alice")
    fanout.failing.add(PUBLIC_CHANNEL)

    await chat.broadcaster.broadcast_rooms_updated()

    assert chat.broadcaster.failures == 1
    assert fanout.channels_for("rooms-updated") == [user_channel("alice")]


@pytest.mark.asyncio
async def test_queue_defers_pushes_until_processed(chat, fanout):
    chat.events.emit(RoomsChanged())
    assert fanout.pushes == []
    assert chat.events.pending == 1

    await chat.events.drain()

    assert chat.events.pending == 0
    assert fanout.channels_for("rooms-updated") == [PUBLIC_CHANNEL]


@pytest.mark.asyncio
async def test_queue_worker(chat, fanout):
    queue = BroadcastQueue(chat.broadcaster)
    queue.start()
    queue.emit(RoomsChanged())

    await asyncio.wait_for(queue._queue.join(), timeout=1)
    await queue.stop()

    assert fanout.channels_for("rooms-updated") == [PUBLIC_CHANNEL]


@pytest.mark.asyncio
async def test_relay_delivers_to_subscribers_and_drops_dead_sockets():
    manager = ConnectionManager()
    alive, dead, other = FakeWebSocket(), FakeWebSocket(fail=True), FakeWebSocket()
    for ws in (alive, dead, other):
        await manager.connect(ws)
    manager.subscribe(alive, "room-abc")
    manager.subscribe(dead, "room-abc")
    manager.subscribe(other, PUBLIC_CHANNEL)

    event = {"channel": "room-abc", "event": "room-message", "data": {}}
    assert await manager.deliver("room-abc", event) == 1

    assert alive.sent == [event]
    assert other.sent == []
    assert dead not in manager.connection_channels
    assert manager.channels["room-abc"] == {alive}

    manager.unsubscribe(alive, "room-abc")
    assert "room-abc" not in manager.channels


@pytest.mark.asyncio
async def test_private_fan_out_looks_up_members(chat, fanout):
    private = await chat.rooms.create("private", members=["carol"], requested_by="alice")
    public = await chat.rooms.create("public", "lobby", requested_by="ryo")

    await chat.broadcaster.fan_out_to_private_members(private.id, "room-message", {})
    await chat.broadcaster.fan_out_to_private_members(public.id, "room-message", {})

    assert fanout.channels_for("room-message") == [user_channel("carol"), user_channel("alice")]
