import pytest

from core import keys
from core.errors import Conflict, Forbidden, InvalidArgument, NotFound, TooManyRequests
from services.broadcast import room_channel, user_channel
from services.rate_limiter import SHORT_BURST_REASON


@pytest.fixture
def public_room(chat):
    async def _create(name: str = "lobby"):
        return await chat.rooms.create("public", name, requested_by="ryo")

    return _create


@pytest.mark.asyncio
async def test_send_stores_and_pushes(chat, fanout, public_room):
    room = await public_room()

    message = await chat.messages.send(room.id, "Alice", "hello world")

    assert message.username == "alice"
    assert message.room_id == room.id
    assert len(message.id) == 32
    assert await chat.users.exists("alice")
    assert [m.id for m in await chat.messages.list(room.id)] == [message.id]

    await chat.events.drain()
    payload = fanout.payload(room_channel(room.id), "room-message")
    assert payload["message"]["content"] == "hello world"
    assert payload["roomId"] == room.id


@pytest.mark.asyncio
async def test_private_messages_fan_out_to_members(chat, fanout):
    room = await chat.rooms.create("private", members=["carol"], requested_by="alice")

    await chat.messages.send(room.id, "alice", "psst")
    await chat.events.drain()

    assert set(fanout.channels_for("room-message")) == {
        room_channel(room.id),
        user_channel("carol"),
        user_channel("alice"),
    }


@pytest.mark.asyncio
async def test_content_is_escaped(chat, public_room):
    room = await public_room()

    message = await chat.messages.send(room.id, "alice", "<b>hi</b> & 'you'")

    assert message.content == "&lt;b&gt;hi&lt;/b&gt; &amp; &#x27;you&#x27;"


@pytest.mark.asyncio
async def test_profanity_is_censored_outside_urls(chat, public_room):
    room = await public_room()

    message = await chat.messages.send(room.id, "alice", "shit see https://example.com/shit")

    prose, _, url = message.content.partition(" see ")
    assert "shit" not in prose
    assert url == "https://example.com/shit"


@pytest.mark.asyncio
async def test_duplicate_of_newest_message_is_rejected(chat, clock, public_room):
    room = await public_room()
    await chat.messages.send(room.id, "alice", "same")
    clock.advance(3)

    with pytest.raises(Conflict):
        await chat.messages.send(room.id, "alice", "same")

    # Same text from someone else is fine
    await chat.messages.send(room.id, "carol", "same")


@pytest.mark.asyncio
async def test_length_limit_applies_to_raw_content(chat, public_room):
    room = await public_room()

    await chat.messages.send(room.id, "alice", "x" * chat.messages.max_length)

    with pytest.raises(InvalidArgument):
        await chat.messages.send(room.id, "carol", "x" * (chat.messages.max_length + 1))


@pytest.mark.asyncio
async def test_burst_limit_is_public_only(chat, clock, public_room):
    room = await public_room()
    for n in range(3):
        await chat.messages.send(room.id, "alice", f"message {n}")
        clock.advance(2.5)

    with pytest.raises(TooManyRequests) as excinfo:
        await chat.messages.send(room.id, "alice", "message 3")
    assert excinfo.value.message == SHORT_BURST_REASON

    private = await chat.rooms.create("private", members=["carol"], requested_by="alice")
    for n in range(5):
        await chat.messages.send(private.id, "alice", f"private {n}")


@pytest.mark.asyncio
async def test_send_validates_inputs(chat, public_room):
    room = await public_room()

    with pytest.raises(InvalidArgument):
        await chat.messages.send(room.id, "a", "hi")
    with pytest.raises(InvalidArgument):
        await chat.messages.send("bad id!", "alice", "hi")
    with pytest.raises(InvalidArgument):
        await chat.messages.send(room.id, "alice\n", "hi")
    with pytest.raises(InvalidArgument):
        await chat.messages.send(f"{room.id}\n", "alice", "hi")
    with pytest.raises(InvalidArgument):
        await chat.messages.send(room.id, "alice", "")
    with pytest.raises(NotFound):
        await chat.messages.send("abc123", "alice", "hi")


@pytest.mark.asyncio
async def test_retention_and_page_size(chat):
    room = await chat.rooms.create("private", members=["carol"], requested_by="alice")
    chat.messages.retention = 5
    chat.messages.page_size = 3

    for n in range(7):
        await chat.messages.send(room.id, "alice", f"message {n}")

    listed = await chat.messages.list(room.id)
    assert [m.content for m in listed] == ["message 6", "message 5", "message 4"]
    assert await chat.redis_client.llen(keys.messages_key(room.id)) == 5


@pytest.mark.asyncio
async def test_list_unknown_room(chat):
    with pytest.raises(NotFound):
        await chat.messages.list("abc123")


@pytest.mark.asyncio
async def test_bulk_reports_unknown_rooms(chat, public_room):
    room = await public_room()
    await chat.messages.send(room.id, "alice", "hi")

    result = await chat.messages.list_bulk([room.id, "abc123"])

    assert result["validRoomIds"] == [room.id]
    assert result["invalidRoomIds"] == ["abc123"]
    assert [m["content"] for m in result["messagesMap"][room.id]] == ["hi"]

    with pytest.raises(InvalidArgument):
        await chat.messages.list_bulk(["bad id!"])


@pytest.mark.asyncio
async def test_delete_message_is_admin_only(chat, fanout, public_room):
    room = await public_room()
    message = await chat.messages.send(room.id, "alice", "oops")

    with pytest.raises(Forbidden):
        await chat.messages.delete(room.id, message.id, "alice")

    await chat.messages.delete(room.id, message.id, "ryo")
    assert await chat.messages.list(room.id) == []

    with pytest.raises(NotFound):
        await chat.messages.delete(room.id, message.id, "ryo")

    await chat.events.drain()
    assert fanout.payload(room_channel(room.id), "message-deleted") == {"roomId": room.id, "messageId": message.id}


@pytest.mark.asyncio
async def test_clear_all(chat, fanout, public_room):
    first = await public_room("one")
    second = await public_room("two")
    await chat.messages.send(first.id, "alice", "a")
    await chat.messages.send(second.id, "alice", "b")

    with pytest.raises(Forbidden):
        await chat.messages.clear_all("alice")

    assert await chat.messages.clear_all("ryo") == 2
    assert await chat.messages.list(first.id) == []

    await chat.events.drain()
    assert set(fanout.channels_for("messages-cleared")) == {room_channel(first.id), room_channel(second.id)}
