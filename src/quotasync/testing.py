"""Testing utilities for quota-sync.

Example:
    >>> from quotasync.testing import FrozenClock, reset_prefix
    >>>
    >>> clock = FrozenClock(1_700_000_000_000)
    >>> engine = FixWindowEngine(client, prefix="test", clock=clock)
    >>> await engine.hit("k", 1000, 1)
    >>> clock.advance(1000)  # next window
    >>>
    >>> # Remove every key under a prefix (destructive, tests only)
    >>> await reset_prefix(client, "test")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from quotasync.backends.routing import scan_batches
from quotasync.keys import escape_glob

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class FrozenClock:
    """Manually driven millisecond clock.

    Only affects engines that compute windows on the client; scripts reading
    the store's ``TIME`` are unaffected.
    """

    def __init__(self, now_ms: int = 0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        """Move the clock forward by ``ms`` and return the new time."""
        self.now_ms += ms
        return self.now_ms

    def set(self, now_ms: int) -> None:
        """Jump to ``now_ms``."""
        self.now_ms = now_ms


async def reset_prefix(client: Redis, prefix: str) -> int:
    """Delete every key under ``prefix``.

    WARNING: destructive, meant for test fixtures only.

    Args:
        client: Store connection
        prefix: Key namespace to clear

    Returns:
        Number of keys deleted
    """
    deleted = 0
    async for keys in scan_batches(client, f"{escape_glob(prefix)}:*"):
        if keys:
            deleted += int(await client.delete(*keys))
    logger.debug("Reset prefix '%s' (%d keys)", prefix, deleted)
    return deleted
