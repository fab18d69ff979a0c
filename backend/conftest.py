# backend/conftest.py
"""Shared fixtures: an in-memory Redis, a recording push backend and a wired app state."""

from __future__ import annotations

from typing import List, Set, Tuple

import fakeredis
import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio

from core import state


class RecordingFanout:
    """Push backend double. Records every push; channels in ``failing`` raise."""

    def __init__(self) -> None:
        self.pushes: List[Tuple[str, str, dict]] = []
        self.failing: Set[str] = set()

    async def trigger(self, channel: str, event: str, data: dict) -> None:
        if channel in self.failing:
            raise ConnectionError(f"push to {channel} refused")
        self.pushes.append((channel, event, data))

    def channels_for(self, event: str) -> List[str]:
        return [channel for channel, name, _ in self.pushes if name == event]

    def payload(self, channel: str, event: str) -> dict:
        for pushed_channel, name, data in reversed(self.pushes):
            if pushed_channel == channel and name == event:
                return data
        raise AssertionError(f"no {event} pushed to {channel}")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fanout() -> RecordingFanout:
    return RecordingFanout()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True, server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def chat(redis_client, fanout, clock):
    """The ``core.state`` module wired against fakeredis and the recording fanout."""
    state.init(redis_client, fanout, clock=clock)
    state.users.bcrypt_rounds = 4
    state.message_counter = 0
    yield state
    await state.events.drain()


@pytest.fixture
def make_user(chat):
    """Create a user through the directory and return its first token."""

    async def _make(username: str, password: str | None = None) -> str:
        _, token, _ = await chat.users.create(username, password)
        return token

    return _make


@pytest.fixture
def auth_headers():
    def _headers(username: str, token: str) -> dict:
        return {"Authorization": f"Bearer {token}", "X-Username": username}

    return _headers


@pytest_asyncio.fixture
async def api(chat):
    from main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
