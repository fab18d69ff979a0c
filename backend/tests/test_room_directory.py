import asyncio

import pytest

from core import keys
from core.errors import Forbidden, InvalidArgument, NotFound
from services.broadcast import RoomsChanged


def drain_events(chat):
    events = []
    while not chat.events._queue.empty():
        events.append(chat.events._queue.get_nowait())
        chat.events._queue.task_done()
    return events


@pytest.mark.asyncio
async def test_only_admin_creates_public_rooms(chat):
    with pytest.raises(Forbidden):
        await chat.rooms.create("public", "lobby", requested_by="alice")

    room = await chat.rooms.create("public", "Big Lobby", requested_by="RYO")

    assert room.name == "big-lobby"
    assert room.type == "public"
    assert len(room.id) == 32
    assert drain_events(chat) == [RoomsChanged()]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"type": "secret", "name": "lobby"},
        {"type": "public", "name": "  "},
        {"type": "public", "name": "shit talk"},
        {"type": "private", "members": []},
    ],
)
async def test_create_rejects_bad_input(chat, kwargs):
    with pytest.raises(InvalidArgument):
        await chat.rooms.create(requested_by="ryo", **kwargs)


@pytest.mark.asyncio
async def test_private_room_includes_requester(chat, redis_client):
    room = await chat.rooms.create("private", members=["Carol", "carol", "dave"], requested_by="alice")

    assert room.members == ["carol", "dave", "alice"]
    assert room.name == "@alice, @carol, @dave"
    assert room.user_count == 3
    assert await chat.presence.list_active(room.id) == ["alice", "carol", "dave"]


@pytest.mark.asyncio
async def test_private_rooms_visible_to_members_only(chat):
    public = await chat.rooms.create("public", "lobby", requested_by="ryo")
    private = await chat.rooms.create("private", members=["carol"], requested_by="alice")

    anonymous = [r.id for r in await chat.rooms.list_visible(None)]
    member = [r.id for r in await chat.rooms.list_visible("carol")]
    outsider = [r.id for r in await chat.rooms.list_visible("dave")]

    assert anonymous == [public.id]
    assert set(member) == {public.id, private.id}
    assert outsider == [public.id]


@pytest.mark.asyncio
async def test_join_requires_known_room_and_user(chat, make_user):
    room = await chat.rooms.create("public", "lobby", requested_by="ryo")

    with pytest.raises(NotFound):
        await chat.rooms.join(room.id, "ghost")
    with pytest.raises(NotFound):
        await chat.rooms.join("abc123", "ghost")
    with pytest.raises(InvalidArgument):
        await chat.rooms.join("not-a-room!", "alice")


@pytest.mark.asyncio
async def test_join_then_leave_updates_count(chat, make_user):
    await make_user("alice")
    room = await chat.rooms.create("public", "lobby", requested_by="ryo")
    drain_events(chat)

    joined = await chat.rooms.join(room.id, "alice")
    assert joined.user_count == 1
    assert drain_events(chat) == [RoomsChanged()]

    left = await chat.rooms.leave(room.id, "alice")
    assert left.user_count == 0
    assert drain_events(chat) == [RoomsChanged()]


@pytest.mark.asyncio
async def test_leave_when_absent_is_a_quiet_noop(chat, make_user):
    room = await chat.rooms.create("public", "lobby", requested_by="ryo")
    drain_events(chat)

    assert (await chat.rooms.leave(room.id, "alice")).id == room.id
    assert drain_events(chat) == []

    with pytest.raises(NotFound):
        await chat.rooms.leave("abc123", "alice")


@pytest.mark.asyncio
async def test_private_room_collapses_below_two_members(chat, redis_client):
    room = await chat.rooms.create("private", members=["carol"], requested_by="alice")
    await redis_client.lpush(keys.messages_key(room.id), "{}")
    drain_events(chat)

    assert await chat.rooms.leave(room.id, "alice") is None

    assert not await redis_client.exists(keys.room_key(room.id))
    assert not await redis_client.exists(keys.messages_key(room.id))
    assert await chat.presence.list_active(room.id) == []
    assert drain_events(chat) == [RoomsChanged(usernames=["carol", "alice"])]


@pytest.mark.asyncio
async def test_private_room_collapses_even_after_presence_expired(chat, redis_client):
    room = await chat.rooms.create("private", members=["carol"], requested_by="alice")
    await redis_client.delete(keys.presence_key(room.id, "alice"))

    assert await chat.rooms.leave(room.id, "alice") is None
    assert not await redis_client.exists(keys.room_key(room.id))


@pytest.mark.asyncio
async def test_private_room_with_three_members_survives_a_leave(chat):
    room = await chat.rooms.create("private", members=["carol", "dave"], requested_by="alice")

    left = await chat.rooms.leave(room.id, "dave")

    assert left.members == ["carol", "alice"]
    stored = await chat.rooms.load(room.id)
    assert stored.members == ["carol", "alice"]
    assert stored.user_count == 2


@pytest.mark.asyncio
async def test_simultaneous_leaves_still_collapse_the_room(chat, redis_client):
    room = await chat.rooms.create("private", members=["bob", "carol"], requested_by="alice")
    drain_events(chat)

    results = await asyncio.gather(chat.rooms.leave(room.id, "bob"), chat.rooms.leave(room.id, "carol"))

    assert results.count(None) == 1
    assert not await redis_client.exists(keys.room_key(room.id))
    assert await chat.presence.list_active(room.id) == []
    collapsed = [e for e in drain_events(chat) if e.usernames is not None]
    assert len(collapsed) == 1
    assert "alice" in collapsed[0].usernames


@pytest.mark.asyncio
async def test_switch_moves_presence(chat, make_user):
    await make_user("alice")
    first = await chat.rooms.create("public", "one", requested_by="ryo")
    second = await chat.rooms.create("public", "two", requested_by="ryo")
    await chat.rooms.join(first.id, "alice")
    drain_events(chat)

    await chat.rooms.switch(first.id, second.id, "alice")

    assert await chat.presence.list_active(first.id) == []
    assert await chat.presence.list_active(second.id) == ["alice"]
    assert (await chat.rooms.load(second.id)).user_count == 1
    assert drain_events(chat) == [RoomsChanged()]


@pytest.mark.asyncio
async def test_delete_room_is_admin_only(chat, redis_client):
    room = await chat.rooms.create("public", "lobby", requested_by="ryo")

    with pytest.raises(Forbidden):
        await chat.rooms.delete(room.id, "alice")

    await chat.rooms.delete(room.id, "ryo")
    assert not await chat.rooms.exists(room.id)

    with pytest.raises(NotFound):
        await chat.rooms.delete(room.id, "ryo")
