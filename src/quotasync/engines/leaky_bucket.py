"""Leaky bucket engine.

The bucket fills with the cost of each admitted hit and drains ("leaks") at
``rate`` units per second. A hit is admitted while the drained level plus its
cost fits in ``capacity``. Draining is computed lazily from the time elapsed
since the last update, stored with the level in a hash at ``{prefix}:{key}``.

A fresh bucket starts empty. Compared to the token bucket this enforces a
steady long-term throughput of ``rate`` while still absorbing bursts up to
``capacity``.
"""

from __future__ import annotations

import logging

from quotasync.core import Engine
from quotasync.keys import bucket_key
from quotasync.schemas import HitResult

logger = logging.getLogger(__name__)

DENY_WAIT_MS = 1000
TTL_BUFFER_SECONDS = 60

# Returns: [allowed (0/1), level after the hit if allowed else ms to wait]
HIT_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local buffer = tonumber(ARGV[4])

local now = tonumber(redis.call('TIME')[1])

local bucket = redis.call('HMGET', key, 'level', 'last_update')
local level = tonumber(bucket[1]) or 0
local last_update = tonumber(bucket[2]) or now

local elapsed = math.max(0, now - last_update)
local new_level = math.max(0, level - elapsed * rate)

if new_level < capacity and new_level + cost <= capacity then
    new_level = new_level + cost
    redis.call('HSET', key, 'level', tostring(new_level), 'last_update', now)
    local time_to_empty = math.ceil(new_level / rate)
    redis.call('EXPIRE', key, time_to_empty + buffer)
    return {1, math.floor(new_level)}
end

return {0, math.ceil((new_level + cost - capacity) / rate * 1000)}
"""


class LeakyBucketEngine(Engine):
    """Leaky bucket backed by one Redis hash per key.

    Example:
        >>> engine = LeakyBucketEngine(client, prefix="jobs")
        >>> # drain 100/s, absorb bursts of 500
        >>> await engine.hit("tenant_7", 100, 500)
        HitResult(allowed=True, value=1)
    """

    algorithm = "leaky_bucket"

    def __init__(self, client, prefix=None, **kwargs) -> None:
        super().__init__(client, prefix, **kwargs)
        self._hit_script = client.register_script(HIT_SCRIPT)

    async def hit(
        self,
        key: str,
        scale: float,
        limit: int,
        increment: int = 1,
        *,
        timeout: float | None = None,
    ) -> HitResult:
        """Add ``increment`` to the bucket if it fits.

        Args:
            key: Caller key
            scale: Leak rate in units per second
            limit: Bucket capacity
            increment: Units this hit adds
            timeout: Per-call timeout in seconds

        Returns:
            Allow with the new level, or deny with ``DENY_WAIT_MS``
        """
        if scale <= 0:
            raise ValueError(f"rate must be > 0, got: {scale}")
        full_key = bucket_key(self._prefix, key)
        reply = await self._run(
            "hit",
            full_key,
            self._hit_script(
                keys=[full_key], args=[limit, scale, increment, TTL_BUFFER_SECONDS]
            ),
            timeout,
        )
        allowed, value = self._parse_pair("leaky_bucket.hit", reply)

        if allowed:
            return self._record(key, HitResult.allow(value))
        return self._record(key, HitResult.deny(DENY_WAIT_MS))

    async def get(self, key: str, scale: float | None = None, *, timeout=None) -> int:
        """Return the stored level, truncated to an integer (0 if absent)."""
        full_key = bucket_key(self._prefix, key)
        reply = await self._run("get", full_key, self._client.hget(full_key, "level"), timeout)
        return self._parse_int("leaky_bucket.get", reply, allow_none=True)
