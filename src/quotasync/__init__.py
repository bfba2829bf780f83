"""quota-sync: Redis-backed quota counting shared across processes.

Every algorithm keeps its state exclusively in Redis and performs each
operation in one round trip (a Lua script or a MULTI/EXEC), so any number of
processes configured with the same prefix enforce the same quota.

Features:
- Fixed window, sliding window, token bucket and leaky bucket engines
- Uniform ``hit``/``inc``/``set``/``get`` call shape returning ``HitResult``
- Per-call timeouts surfaced as ``QuotaTimeoutError``
- Legacy per-bucket backend with bulk deletion, cluster-redirect aware
- TOML configuration with env var expansion
- Optional Prometheus metrics

Example:
    >>> from redis.asyncio import Redis
    >>> from quotasync import FixWindowEngine
    >>>
    >>> engine = FixWindowEngine(Redis.from_url("redis://localhost:6379/0"), prefix="api")
    >>> result = await engine.hit("user:42", 60_000, 100)
    >>> if not result.allowed:
    ...     print(f"retry in {result.retry_after}s")
"""

from quotasync.backends import BackendState, BucketBackend, NodeRouter
from quotasync.config import find_config, load_config
from quotasync.core import Engine, EngineMetrics
from quotasync.engines import (
    FixWindowEngine,
    LeakyBucketEngine,
    SlidingWindowEngine,
    TokenBucketEngine,
)
from quotasync.exceptions import (
    BackendStateError,
    ConfigValidationError,
    QuotaError,
    QuotaTimeoutError,
    RedirectLoopError,
    ScriptReplyError,
)
from quotasync.schemas import (
    BucketBackendConfig,
    BucketRecord,
    EngineConfig,
    HitResult,
    QuotaSettings,
    RedisStoreConfig,
)
from quotasync.store import connect, create_client

from quotasync import testing

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Core abstractions
    "Engine",
    "EngineMetrics",
    "HitResult",
    # Engines
    "FixWindowEngine",
    "SlidingWindowEngine",
    "TokenBucketEngine",
    "LeakyBucketEngine",
    # Bucket backend
    "BucketBackend",
    "BackendState",
    "BucketRecord",
    "NodeRouter",
    # Configuration
    "load_config",
    "find_config",
    "RedisStoreConfig",
    "EngineConfig",
    "BucketBackendConfig",
    "QuotaSettings",
    "create_client",
    "connect",
    # Identifier helpers
    # Testing utilities
    "testing",
    # Exceptions
    "QuotaError",
    "QuotaTimeoutError",
    "ScriptReplyError",
    "BackendStateError",
    "RedirectLoopError",
    "ConfigValidationError",
]
