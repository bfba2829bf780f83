"""Tests for the sliding window engine.

The scripts read the store's TIME, which is frozen by ``frozen_time`` so the
window can be slid precisely.
"""

import pytest

from quotasync.engines import SlidingWindowEngine
from quotasync.keys import window_key


@pytest.fixture(name="engine")
def engine_fixture(redis_client, frozen_time):
    """Create a sliding window engine."""
    return SlidingWindowEngine(redis_client, prefix="test")


class TestSlidingWindowHit:
    """Test hit admission over a moving window."""

    async def test_allows_up_to_limit_then_denies(self, engine):
        """Test that the limit is enforced on the number of entries."""
        counts = [(await engine.hit("k", 10_000, 3)).count for _ in range(3)]
        assert counts == [1, 2, 3]

        denied = await engine.hit("k", 10_000, 3)
        assert denied.allowed is False
        assert 0 < denied.retry_after_ms <= 10_000

    async def test_denied_hits_are_not_recorded(self, engine):
        """Test that a denied hit adds no entry."""
        await engine.hit("k", 10_000, 1)
        await engine.hit("k", 10_000, 1)
        assert await engine.get("k", 10_000) == 1

    async def test_old_entries_slide_out(self, engine, frozen_time):
        """Test that entries older than the window stop counting."""
        await engine.hit("k", 10_000, 2)
        frozen_time.advance(6_000)
        await engine.hit("k", 10_000, 2)
        assert (await engine.hit("k", 10_000, 2)).allowed is False

        # First entry is now 10s old and is trimmed; the second still counts
        frozen_time.advance(4_000)
        result = await engine.hit("k", 10_000, 2)
        assert result.allowed is True
        assert result.count == 2

    async def test_increment_must_fit_entirely(self, engine):
        """Test that a multi-unit hit is denied when it would overflow."""
        assert (await engine.hit("k", 10_000, 5, increment=4)).count == 4
        assert (await engine.hit("k", 10_000, 5, increment=2)).allowed is False
        assert (await engine.hit("k", 10_000, 5, increment=1)).count == 5

    async def test_concurrent_hits_get_distinct_members(self, engine, redis_client):
        """Test that hits at the same instant are all stored."""
        for _ in range(4):
            await engine.hit("k", 10_000, 10)
        assert await redis_client.zcard(window_key("test", "k", 10_000)) == 4

    async def test_ttl_refreshed_to_window(self, engine, redis_client, frozen_time):
        """Test that every write resets the set's TTL to the window length."""
        key = window_key("test", "k", 10_000)
        await engine.hit("k", 10_000, 5)
        frozen_time.advance(3_000)
        await engine.hit("k", 10_000, 5)
        assert await redis_client.pttl(key) == 10_000

    async def test_window_lengths_do_not_share_state(self, engine):
        """Test that the same key with two window lengths uses two sets."""
        await engine.hit("k", 1_000, 1)
        assert (await engine.hit("k", 60_000, 1)).allowed is True


class TestSlidingWindowCounters:
    """Test inc/set/get."""

    async def test_inc_adds_entries(self, engine):
        """Test that inc adds N entries and returns the cardinality."""
        assert await engine.inc("k", 10_000, 3) == 3
        assert await engine.inc("k", 10_000) == 4

    async def test_set_on_fresh_key(self, engine):
        """Test that set on an empty window yields exactly the count."""
        assert await engine.set("k", 10_000, 5) == 5
        assert (await engine.hit("k", 10_000, 5)).allowed is False

    async def test_set_adds_to_existing_entries(self, engine):
        """Test that set keeps entries already in the window."""
        await engine.inc("k", 10_000, 2)
        assert await engine.set("k", 10_000, 3) == 5

    async def test_negative_count_rejected(self, engine):
        """Test that a negative count is refused."""
        with pytest.raises(ValueError):
            await engine.inc("k", 10_000, -1)

    async def test_get_does_not_trim(self, engine, frozen_time):
        """Test that get reports entries that aged out until the next write."""
        await engine.inc("k", 60_000, 2)
        frozen_time.advance(30_000)
        assert await engine.get("k", 60_000) == 2
