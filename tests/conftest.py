"""Global test configuration and fixtures for quota-sync.

Store-backed tests run against fakeredis with Lua support, which executes the
real scripts and MULTI/EXEC transactions in-process. Time is frozen so window
and refill arithmetic is deterministic: ``frozen_time`` drives both the
client-side clock handed to engines and the store's ``TIME``/expiry clock.
"""

from __future__ import annotations

from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest

from quotasync.testing import FrozenClock

# 2023-11-14T22:13:20Z, aligned on a 10 second boundary
START_MS = 1_700_000_000_000


class FrozenTime:
    """Shared clock for the engine and the fake store."""

    def __init__(self, start_ms: int) -> None:
        self.clock = FrozenClock(start_ms)

    @property
    def now_ms(self) -> int:
        return self.clock.now_ms

    def time(self) -> float:
        return self.clock.now_ms / 1000

    def advance(self, ms: int) -> None:
        self.clock.advance(ms)


@pytest.fixture
def frozen_time():
    """Freeze wall-clock time at START_MS for the engine and the fake store."""
    frozen = FrozenTime(START_MS)
    with patch("time.time", frozen.time):
        yield frozen


@pytest.fixture
async def redis_client():
    """Create an isolated fakeredis client.

    Returns:
        fakeredis.aioredis.FakeRedis instance with its own server.
    """
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()
