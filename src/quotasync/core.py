"""Core abstractions shared by the quota engines.

Every engine exposes the same call shape (``hit``/``inc``/``set``/``get``) over
a caller-supplied ``redis.asyncio`` client. Each operation is exactly one
round trip to the store: a Lua script or a MULTI/EXEC transaction. Engines
hold no locks, tasks or timers, and never retry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from quotasync.clock import Clock, now_ms
from quotasync.contrib.prometheus import metrics as prom
from quotasync.exceptions import ConfigValidationError, QuotaTimeoutError, ScriptReplyError
from quotasync.keys import default_prefix

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from quotasync.schemas import HitResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T], timeout: float | None, *, operation: str, key: str
) -> T:
    """Await ``awaitable``, converting an expired timeout into ``QuotaTimeoutError``.

    Args:
        awaitable: The store round trip
        timeout: Seconds to wait (None = no limit)
        operation: Operation name, for the error message
        key: Storage key, for the error message

    Raises:
        QuotaTimeoutError: If ``timeout`` expired first
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise QuotaTimeoutError(operation, key, timeout) from e


@dataclass
class EngineMetrics:
    """Observability metrics for one engine instance.

    Attributes:
        hits_allowed: Number of hits admitted
        hits_denied: Number of hits denied
        timeouts: Number of operations that exceeded their timeout
        script_errors: Number of malformed script or transaction replies
        last_hit_at: Timestamp of the last hit (allowed or denied)
    """

    hits_allowed: int = 0
    hits_denied: int = 0
    timeouts: int = 0
    script_errors: int = 0
    last_hit_at: float | None = None

    def record_hit(self, allowed: bool) -> None:
        """Record the outcome of a hit."""
        if allowed:
            self.hits_allowed += 1
        else:
            self.hits_denied += 1
        self.last_hit_at = time.time()

    def record_timeout(self) -> None:
        """Record a timeout."""
        self.timeouts += 1

    def record_script_error(self) -> None:
        """Record a malformed reply."""
        self.script_errors += 1

    @property
    def total_hits(self) -> int:
        """Return allowed plus denied hits."""
        return self.hits_allowed + self.hits_denied


class Engine(ABC):
    """Abstract base for quota counting engines.

    Concrete engines implement one algorithm each (fixed window, sliding
    window, token bucket, leaky bucket) against a Redis store. The store is the
    only holder of state, so any number of processes sharing a prefix enforce
    the same quota.

    Example:
        >>> from redis.asyncio import Redis
        >>> from quotasync.engines import FixWindowEngine
        >>>
        >>> engine = FixWindowEngine(Redis.from_url("redis://localhost:6379/0"), prefix="api")
        >>> result = await engine.hit("user:42", 60_000, 100)
        >>> if not result.allowed:
        ...     raise TooManyRequests(retry_after=result.retry_after)
    """

    #: Algorithm name used in logs and metrics labels.
    algorithm: str = "engine"

    def __init__(
        self,
        client: Redis,
        prefix: str | None = None,
        *,
        owner: object | None = None,
        timeout: float | None = None,
        clock: Clock = now_ms,
    ) -> None:
        """Initialize the engine.

        Args:
            client: Store connection (``redis.asyncio.Redis`` or compatible)
            prefix: Key namespace; derived from ``owner`` when None
            owner: Object whose qualified name becomes the default prefix
            timeout: Default per-call timeout in seconds (None = no timeout)
            clock: Millisecond clock used for client-side window computation

        Raises:
            ConfigValidationError: If prefix or timeout is invalid
        """
        if prefix is None:
            prefix = default_prefix(owner)

        if not isinstance(prefix, str) or not prefix:
            raise ConfigValidationError(
                "prefix must be a non-empty string",
                field="prefix",
                expected="str",
                received=repr(prefix),
            )

        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0
        ):
            raise ConfigValidationError(
                "timeout must be a positive number or None",
                field="timeout",
                expected="float > 0 | None",
                received=repr(timeout),
            )

        self._client = client
        self._prefix = prefix
        self._default_timeout = timeout
        self._clock = clock
        self._metrics = EngineMetrics()

    @abstractmethod
    async def hit(
        self,
        key: str,
        scale: int | float,
        limit: int,
        increment: int = 1,
        *,
        timeout: float | None = None,
    ) -> HitResult:
        """Record ``increment`` units against ``key`` and decide admission.

        Args:
            key: Caller key (user id, IP, ...)
            scale: Window length in ms for window engines, rate per second for buckets
            limit: Maximum count for window engines, capacity for buckets
            increment: Units this hit consumes
            timeout: Per-call timeout in seconds, overriding the engine default

        Returns:
            ``HitResult.allow(count)`` or ``HitResult.deny(retry_after_ms)``

        Raises:
            QuotaTimeoutError: If the round trip exceeded the timeout
            ScriptReplyError: If the store returned an unexpected reply
        """

    @abstractmethod
    async def get(self, key: str, scale: int | float | None = None, *, timeout=None) -> int:
        """Return the current count (or bucket level) for ``key`` without changing it."""

    async def inc(self, key: str, scale: int, increment: int = 1, *, timeout=None) -> int:
        """Add ``increment`` without a decision and return the new count.

        Raises:
            NotImplementedError: If the algorithm has no standalone counter
        """
        raise NotImplementedError(
            f"{self.__class__.__name__} does not support inc(). "
            "This operation is only available in: FixWindowEngine, SlidingWindowEngine"
        )

    async def set(self, key: str, scale: int, count: int, *, timeout=None) -> int:
        """Write ``count`` without a decision and return it.

        Raises:
            NotImplementedError: If the algorithm has no standalone counter
        """
        raise NotImplementedError(
            f"{self.__class__.__name__} does not support set(). "
            "This operation is only available in: FixWindowEngine, SlidingWindowEngine"
        )

    async def _run(
        self, operation: str, key: str, awaitable: Awaitable[T], timeout: float | None
    ) -> T:
        """Await one store round trip under the effective timeout.

        An expired timeout raises ``QuotaTimeoutError``; connectivity errors
        from redis-py propagate unchanged.
        """
        effective = timeout if timeout is not None else self._default_timeout
        started = time.perf_counter()
        try:
            return await with_timeout(awaitable, effective, operation=operation, key=key)
        except QuotaTimeoutError:
            self._metrics.record_timeout()
            prom.record_timeout(self.algorithm, operation)
            logger.warning(
                "%s %s on '%s' timed out after %ss",
                self.algorithm,
                operation,
                key,
                effective,
            )
            raise
        finally:
            prom.record_redis_operation(self.algorithm, operation, time.perf_counter() - started)

    def _parse_pair(self, script: str, reply: Any) -> tuple[int, int]:
        """Validate a ``{flag, value}`` script reply."""
        if not isinstance(reply, list | tuple) or len(reply) != 2:
            self._metrics.record_script_error()
            raise ScriptReplyError(script, reply)
        try:
            flag, value = int(reply[0]), int(reply[1])
        except (TypeError, ValueError) as e:
            self._metrics.record_script_error()
            raise ScriptReplyError(script, reply) from e
        if flag not in (0, 1):
            self._metrics.record_script_error()
            raise ScriptReplyError(script, reply)
        return flag, value

    def _parse_int(self, script: str, reply: Any, *, allow_none: bool = False) -> int:
        """Validate an integer reply.

        ``None`` (a missing key) reads as 0 only when ``allow_none`` is set;
        scripts that always return a number treat it as a bad reply.
        """
        if reply is None and allow_none:
            return 0
        if reply is None or isinstance(reply, bool):
            self._metrics.record_script_error()
            raise ScriptReplyError(script, reply)
        try:
            return int(float(reply)) if isinstance(reply, bytes | str) else int(reply)
        except (TypeError, ValueError) as e:
            self._metrics.record_script_error()
            raise ScriptReplyError(script, reply) from e

    def _record(self, key: str, result: HitResult) -> HitResult:
        """Update metrics and log the outcome of a hit."""
        self._metrics.record_hit(result.allowed)
        prom.record_hit(self.algorithm, result.allowed)
        if result.allowed:
            logger.debug("%s '%s': allowed (count=%d)", self.algorithm, key, result.value)
        else:
            logger.debug("%s '%s': denied (retry_after=%dms)", self.algorithm, key, result.value)
        return result

    def get_metrics(self) -> EngineMetrics:
        """Return engine observability metrics.

        Returns:
            Current snapshot of collected metrics
        """
        return self._metrics

    @property
    def prefix(self) -> str:
        """Return the key namespace."""
        return self._prefix

    @property
    def default_timeout(self) -> float | None:
        """Return the default per-call timeout in seconds."""
        return self._default_timeout

    @property
    def client(self) -> Redis:
        """Return the store connection."""
        return self._client
