"""
Configuration schemas, result types and records for quota engines.

This module defines the configuration structures using dataclasses for type safety
and clear documentation, plus the value types returned by engines and by the
bucket backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from quotasync.keys import DEFAULT_BUCKET_PREFIX


@dataclass
class RedisStoreConfig:
    """Configuration for a Redis store connection.

    Attributes:
        url: Redis connection URL (supports env var expansion via ${VAR})
             Format: redis://[:password@]host[:port][/database]
        engine: Store identifier (always "redis")
        db: Redis database number (0-15)
        password: Optional Redis password (can also be in URL)
        pool_max_size: Maximum number of connections in pool
        socket_timeout: Socket timeout in seconds for Redis operations
        socket_connect_timeout: Connection timeout in seconds
    """

    url: str
    engine: Literal["redis"] = "redis"
    db: int = 0
    password: str | None = None
    pool_max_size: int = 10
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0


@dataclass
class EngineConfig:
    """Configuration for one algorithm engine.

    Attributes:
        store: ID of the store the engine talks to
        algorithm: Counting algorithm backing the engine
        prefix: Key namespace (None = derived from the owner, else "quotasync")
        timeout: Default per-call timeout in seconds (None = wait indefinitely)
    """

    store: str
    algorithm: Literal["fix_window", "sliding_window", "token_bucket", "leaky_bucket"] = (
        "fix_window"
    )
    prefix: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        """Validate timeout."""
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")


@dataclass
class BucketBackendConfig:
    """Configuration for the legacy per-bucket backend.

    ``expiry_ms`` has no default on purpose: buckets without a TTL would
    accumulate forever, so a missing value is a startup failure.

    Attributes:
        store: ID of the store the backend connects to
        expiry_ms: Lifetime of bucket records and index sets, in milliseconds
        key_prefix: Namespace for record and index keys
        cluster: If True, bulk deletion walks every known cluster node
        max_redirects: Maximum MOVED/ASK redirects followed for one command
        delete_buckets_timeout_ms: Default timeout for delete_buckets()
        scan_count: COUNT hint passed to SCAN
    """

    store: str
    expiry_ms: int | None = None
    key_prefix: str = DEFAULT_BUCKET_PREFIX
    cluster: bool = False
    max_redirects: int = 5
    delete_buckets_timeout_ms: int | None = 5000
    scan_count: int = 1000

    def __post_init__(self) -> None:
        """Validate numeric fields."""
        if self.expiry_ms is not None and self.expiry_ms <= 0:
            raise ValueError(f"expiry_ms must be > 0, got {self.expiry_ms}")
        if self.max_redirects < 1:
            raise ValueError(f"max_redirects must be >= 1, got {self.max_redirects}")
        if self.scan_count <= 0:
            raise ValueError(f"scan_count must be > 0, got {self.scan_count}")


@dataclass
class QuotaSettings:
    """Everything loaded from a quota-sync TOML file.

    Attributes:
        stores: Store configurations by ID
        engines: Engine configurations by ID
        buckets: Legacy bucket backend configuration, if present
    """

    stores: dict[str, RedisStoreConfig] = field(default_factory=dict)
    engines: dict[str, EngineConfig] = field(default_factory=dict)
    buckets: BucketBackendConfig | None = None


# Registry mapping store engine names to their config classes
STORE_SCHEMAS: dict[str, type] = {
    "redis": RedisStoreConfig,
}


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True, slots=True)
class HitResult:
    """Outcome of a hit.

    A deny is a normal outcome, not an error, and always carries a
    retry-after hint.

    Attributes:
        allowed: Whether the hit was admitted.
        value: Count (or bucket level) when allowed, milliseconds to wait when denied.

    Example:
        >>> result = await engine.hit("user:42", 60_000, 100)
        >>> if result.allowed:
        ...     print(f"hit #{result.count}")
        >>> else:
        ...     print(f"retry in {result.retry_after_ms}ms")
    """

    allowed: bool
    value: int

    @classmethod
    def allow(cls, count: int) -> HitResult:
        """Build an allow result carrying the new count."""
        return cls(allowed=True, value=count)

    @classmethod
    def deny(cls, retry_after_ms: int) -> HitResult:
        """Build a deny result carrying the retry-after hint."""
        return cls(allowed=False, value=retry_after_ms)

    @property
    def count(self) -> int | None:
        """Count or level after the hit (None when denied)."""
        return self.value if self.allowed else None

    @property
    def retry_after_ms(self) -> int | None:
        """Milliseconds until a retry may succeed (None when allowed)."""
        return None if self.allowed else self.value

    @property
    def retry_after(self) -> int | None:
        """Whole seconds to wait, rounded up (for Retry-After headers)."""
        if self.allowed:
            return None
        return max(1, -(-self.value // 1000))


@dataclass(frozen=True, slots=True)
class BucketRecord:
    """A legacy bucket record as stored in Redis.

    Attributes:
        bucket: Bucket index (usually a time slot number)
        id: Identifier the bucket belongs to
        count: Hits recorded in the bucket
        created: Timestamp of the first hit
        updated: Timestamp of the latest hit
    """

    bucket: int
    id: str
    count: int
    created: int
    updated: int

    @property
    def key(self) -> tuple[int, str]:
        """Return the (bucket, id) pair identifying this record."""
        return (self.bucket, self.id)
