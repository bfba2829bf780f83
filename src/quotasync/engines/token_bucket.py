"""Token bucket engine.

A bucket holds up to ``capacity`` tokens and refills at ``rate`` tokens per
second. Each hit consumes ``cost`` tokens; a hit that finds too few tokens is
denied. Refill is computed lazily from the time elapsed since the last update,
so there is no background timer: the state is a hash at ``{prefix}:{key}`` with
fields ``level`` and ``last_update`` (store clock, seconds).

A fresh bucket starts full, which lets callers burst up to ``capacity``.
"""

from __future__ import annotations

import logging

from quotasync.core import Engine
from quotasync.keys import bucket_key
from quotasync.schemas import HitResult

logger = logging.getLogger(__name__)

# Returned on deny instead of the script-computed time until enough tokens
# accumulate.
DENY_WAIT_MS = 1000

# Extra seconds added to the time-to-full TTL.
TTL_BUFFER_SECONDS = 60

# =============================================================================
# LUA SCRIPT FOR TOKEN BUCKET
# =============================================================================

# Returns: [allowed (0/1), level after the hit if allowed else ms to wait]
HIT_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local buffer = tonumber(ARGV[4])

local now = tonumber(redis.call('TIME')[1])

local bucket = redis.call('HMGET', key, 'level', 'last_update')
local level = tonumber(bucket[1]) or capacity
local last_update = tonumber(bucket[2]) or now

local elapsed = math.max(0, now - last_update)
local refill = math.floor(elapsed * rate)
local tokens = math.min(capacity, level + refill)

if tokens >= cost then
    local final_level = tokens - cost
    redis.call('HSET', key, 'level', final_level, 'last_update', now)
    local time_to_full = math.ceil((capacity - final_level) / rate)
    redis.call('EXPIRE', key, time_to_full + buffer)
    return {1, final_level}
end

local tokens_needed = cost - tokens
return {0, math.ceil(tokens_needed / rate * 1000)}
"""


class TokenBucketEngine(Engine):
    """Token bucket backed by one Redis hash per key.

    Example:
        >>> engine = TokenBucketEngine(client, prefix="api")
        >>> # refill 10 tokens/s, hold at most 100
        >>> await engine.hit("user_123", 10, 100)
        HitResult(allowed=True, value=99)
    """

    algorithm = "token_bucket"

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
        """Consume ``increment`` tokens if available.

        Args:
            key: Caller key
            scale: Refill rate in tokens per second
            limit: Bucket capacity
            increment: Tokens this hit costs
            timeout: Per-call timeout in seconds

        Returns:
            Allow with the remaining level, or deny with ``DENY_WAIT_MS``
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
        allowed, value = self._parse_pair("token_bucket.hit", reply)

        if allowed:
            return self._record(key, HitResult.allow(value))
        # The script's time-to-sufficiency is discarded in favour of the fixed wait.
        return self._record(key, HitResult.deny(DENY_WAIT_MS))

    async def get(self, key: str, scale: float | None = None, *, timeout=None) -> int:
        """Return the stored level (0 if the bucket does not exist).

        The stored level is the value after the last hit; refill since then
        is not applied.
        """
        full_key = bucket_key(self._prefix, key)
        reply = await self._run("get", full_key, self._client.hget(full_key, "level"), timeout)
        return self._parse_int("token_bucket.get", reply, allow_none=True)
