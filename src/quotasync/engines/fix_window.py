"""Fixed window counting engine.

Time is cut into consecutive windows of ``scale_ms`` milliseconds. Each window
has its own integer counter at ``{prefix}:{key}:{window_index}`` that expires
when the window ends. A hit increments the counter and is allowed while the
count stays within the limit.

A burst straddling a window boundary can admit up to twice the limit across
two consecutive windows (e.g. 100 hits at 11:59:59 and 100 more at 12:00:00).
Use the sliding window engine when that matters.
"""

from __future__ import annotations

import logging

from quotasync.core import Engine
from quotasync.keys import window_end_ms, window_index, window_key
from quotasync.schemas import HitResult

logger = logging.getLogger(__name__)

# =============================================================================
# LUA SCRIPTS
# =============================================================================

# Increment the window counter and pin its expiry to the window end. The expiry
# is only set when the key carries none, so later hits never extend a window.
# Returns: new count
INCR_SCRIPT = """
local key = KEYS[1]
local increment = tonumber(ARGV[1])
local expires_at = tonumber(ARGV[2])

local count = redis.call('INCRBY', key, increment)
if redis.call('PTTL', key) == -1 then
    redis.call('PEXPIREAT', key, expires_at)
end
return count
"""

# Overwrite the window counter. SET clears any TTL, so the expire-if-unset rule
# always pins it back to the window end.
# Returns: the count written
SET_SCRIPT = """
local key = KEYS[1]
local count = tonumber(ARGV[1])
local expires_at = tonumber(ARGV[2])

redis.call('SET', key, count)
if redis.call('PTTL', key) == -1 then
    redis.call('PEXPIREAT', key, expires_at)
end
return count
"""


class FixWindowEngine(Engine):
    """Fixed window counter backed by one Redis string per window.

    Example:
        >>> engine = FixWindowEngine(client, prefix="api")
        >>> # 10 requests per second
        >>> await engine.hit("user_123", 1000, 10)
        HitResult(allowed=True, value=1)
    """

    algorithm = "fix_window"

    def __init__(self, client, prefix=None, **kwargs) -> None:
        super().__init__(client, prefix, **kwargs)
        self._incr_script = client.register_script(INCR_SCRIPT)
        self._set_script = client.register_script(SET_SCRIPT)

    def _window(self, key: str, scale_ms: int) -> tuple[int, str, int]:
        """Return (now, storage key, window end) for the current window."""
        if scale_ms <= 0:
            raise ValueError(f"scale_ms must be > 0, got: {scale_ms}")
        now = self._clock()
        index = window_index(now, scale_ms)
        return now, window_key(self._prefix, key, index), window_end_ms(index, scale_ms)

    async def hit(
        self,
        key: str,
        scale: int,
        limit: int,
        increment: int = 1,
        *,
        timeout: float | None = None,
    ) -> HitResult:
        """Count a hit in the current window.

        Args:
            key: Caller key
            scale: Window length in milliseconds
            limit: Maximum count per window
            increment: Units this hit adds
            timeout: Per-call timeout in seconds

        Returns:
            Allow with the new count, or deny with milliseconds until the window ends
        """
        now, full_key, expires_at = self._window(key, scale)
        reply = await self._run(
            "hit",
            full_key,
            self._incr_script(keys=[full_key], args=[increment, expires_at]),
            timeout,
        )
        count = self._parse_int("fix_window.hit", reply)

        if count <= limit:
            return self._record(key, HitResult.allow(count))
        return self._record(key, HitResult.deny(expires_at - now))

    async def inc(self, key: str, scale: int, increment: int = 1, *, timeout=None) -> int:
        """Increment the current window's counter and return the new count."""
        _, full_key, expires_at = self._window(key, scale)
        reply = await self._run(
            "inc",
            full_key,
            self._incr_script(keys=[full_key], args=[increment, expires_at]),
            timeout,
        )
        return self._parse_int("fix_window.inc", reply)

    async def set(self, key: str, scale: int, count: int, *, timeout=None) -> int:
        """Overwrite the current window's counter and return ``count``."""
        _, full_key, expires_at = self._window(key, scale)
        reply = await self._run(
            "set",
            full_key,
            self._set_script(keys=[full_key], args=[count, expires_at]),
            timeout,
        )
        self._parse_int("fix_window.set", reply)
        return count

    async def get(self, key: str, scale: int | None = None, *, timeout=None) -> int:
        """Return the current window's count (0 if the window has no hits yet)."""
        if scale is None:
            raise ValueError("scale is required for fix_window")
        _, full_key, _ = self._window(key, scale)
        reply = await self._run("get", full_key, self._client.get(full_key), timeout)
        return self._parse_int("fix_window.get", reply, allow_none=True)
