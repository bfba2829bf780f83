"""Tests for the testing helpers."""

from quotasync.engines import FixWindowEngine
from quotasync.testing import FrozenClock, reset_prefix


class TestFrozenClock:
    """Test the manual clock."""

    def test_advance_and_set(self):
        """Test that the clock only moves when told to."""
        clock = FrozenClock(1_000)
        assert clock() == 1_000
        assert clock.advance(500) == 1_500
        clock.set(10)
        assert clock() == 10


class TestResetPrefix:
    """Test clearing a namespace."""

    async def test_removes_only_prefix(self, redis_client, frozen_time):
        """Test that keys under other prefixes survive."""
        a = FixWindowEngine(redis_client, "a", clock=frozen_time.clock)
        b = FixWindowEngine(redis_client, "b", clock=frozen_time.clock)
        await a.hit("k1", 10_000, 5)
        await a.hit("k2", 10_000, 5)
        await b.hit("k1", 10_000, 5)

        assert await reset_prefix(redis_client, "a") == 2
        assert await a.get("k1", 10_000) == 0
        assert await b.get("k1", 10_000) == 1
