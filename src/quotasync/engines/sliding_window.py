"""Sliding window counting engine.

Each hit is stored as one member of a sorted set scored by its arrival time
(milliseconds, read from the store's ``TIME``). Before counting, members older
than the window are trimmed, so the cardinality is the number of hits in the
last ``scale_ms`` milliseconds. Unlike the fixed window there is no 2x burst at
window boundaries; the price is one set member per hit.

The set lives at ``{prefix}:{key}:{scale_ms}`` and its TTL is refreshed to the
window length on every write, so idle keys disappear on their own.

Requires Redis 5.0+ (scripts that write after calling TIME).
"""

from __future__ import annotations

import logging
import uuid

from quotasync.core import Engine
from quotasync.keys import window_key
from quotasync.schemas import HitResult

logger = logging.getLogger(__name__)

# =============================================================================
# LUA SCRIPTS FOR SLIDING WINDOW
# =============================================================================

# Atomic trim, count and register.
# Members are "<tag>:<n>" where tag is unique per call, so concurrent hits in
# the same microsecond never collapse into one member.
# Returns: [allowed (0/1), count if allowed else ms until the set expires]
HIT_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local increment = tonumber(ARGV[3])
local tag = ARGV[4]

local time = redis.call('TIME')
local now = tonumber(time[1]) * 1000 + math.floor(tonumber(time[2]) / 1000)

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = tonumber(redis.call('ZCARD', key))

if count + increment <= limit then
    for i = 1, increment do
        redis.call('ZADD', key, now, tag .. ':' .. i)
    end
    redis.call('PEXPIRE', key, window)
    return {1, count + increment}
end

local ttl = tonumber(redis.call('PTTL', key))
if ttl < 0 then
    ttl = window
elseif ttl == 0 then
    ttl = 1
end
return {0, ttl}
"""

# Add N entries without a decision and refresh the TTL.
# Returns: cardinality after the insert
ADD_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local n = tonumber(ARGV[2])
local tag = ARGV[3]

local time = redis.call('TIME')
local now = tonumber(time[1]) * 1000 + math.floor(tonumber(time[2]) / 1000)

for i = 1, n do
    redis.call('ZADD', key, now, tag .. ':' .. i)
end
redis.call('PEXPIRE', key, window)
return redis.call('ZCARD', key)
"""


def _tag() -> str:
    """Return a member tag unique across processes."""
    return uuid.uuid4().hex


class SlidingWindowEngine(Engine):
    """Sliding window log backed by one Redis sorted set per key and window length.

    Example:
        >>> engine = SlidingWindowEngine(client, prefix="login")
        >>> # 5 attempts in any 5 minute period
        >>> result = await engine.hit(email_hash, 300_000, 5)
    """

    algorithm = "sliding_window"

    def __init__(self, client, prefix=None, **kwargs) -> None:
        super().__init__(client, prefix, **kwargs)
        self._hit_script = client.register_script(HIT_SCRIPT)
        self._add_script = client.register_script(ADD_SCRIPT)

    def _key(self, key: str, scale_ms: int) -> str:
        if scale_ms <= 0:
            raise ValueError(f"scale_ms must be > 0, got: {scale_ms}")
        return window_key(self._prefix, key, scale_ms)

    async def hit(
        self,
        key: str,
        scale: int,
        limit: int,
        increment: int = 1,
        *,
        timeout: float | None = None,
    ) -> HitResult:
        """Count a hit if the last ``scale`` milliseconds leave room for it.

        Args:
            key: Caller key
            scale: Window length in milliseconds
            limit: Maximum hits in any window
            increment: Entries this hit adds
            timeout: Per-call timeout in seconds

        Returns:
            Allow with the new cardinality, or deny with milliseconds until the set expires
        """
        full_key = self._key(key, scale)
        reply = await self._run(
            "hit",
            full_key,
            self._hit_script(keys=[full_key], args=[scale, limit, increment, _tag()]),
            timeout,
        )
        allowed, value = self._parse_pair("sliding_window.hit", reply)

        if allowed:
            return self._record(key, HitResult.allow(value))
        return self._record(key, HitResult.deny(value))

    async def inc(self, key: str, scale: int, increment: int = 1, *, timeout=None) -> int:
        """Add ``increment`` entries and return the new cardinality."""
        return await self._add("inc", key, scale, increment, timeout)

    async def set(self, key: str, scale: int, count: int, *, timeout=None) -> int:
        """Add ``count`` entries and return the new cardinality.

        Entries already in the window are kept; on a fresh key the result
        equals ``count``.
        """
        return await self._add("set", key, scale, count, timeout)

    async def _add(self, operation: str, key: str, scale: int, n: int, timeout) -> int:
        if n < 0:
            raise ValueError(f"{operation} count must be >= 0, got: {n}")
        full_key = self._key(key, scale)
        reply = await self._run(
            operation,
            full_key,
            self._add_script(keys=[full_key], args=[scale, n, _tag()]),
            timeout,
        )
        return self._parse_int(f"sliding_window.{operation}", reply)

    async def get(self, key: str, scale: int | None = None, *, timeout=None) -> int:
        """Return the set's cardinality.

        The set is not trimmed here, so entries that aged out since the last
        write are still counted until the next hit prunes them.
        """
        if scale is None:
            raise ValueError("scale is required for sliding_window")
        full_key = self._key(key, scale)
        reply = await self._run("get", full_key, self._client.zcard(full_key), timeout)
        return self._parse_int("sliding_window.get", reply, allow_none=True)
