"""Prometheus metrics definitions for quota-sync.

Metrics are created lazily by ``enable_metrics()``; until then every
``record_*`` function is a no-op, so the core never depends on
prometheus-client being installed.

Metrics:
    quotasync_hits_total: Counter of hits by engine and outcome (allowed/denied)
    quotasync_timeouts_total: Counter of operations that exceeded their timeout
    quotasync_redis_operation_duration_seconds: Histogram of store round trips
    quotasync_redirects_total: Counter of cluster redirects followed (moved/ask)
    quotasync_buckets_deleted_total: Counter of bucket records removed
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

try:
    from prometheus_client import Counter as _Counter
    from prometheus_client import Histogram as _Histogram

    _PROMETHEUS_CLASSES: dict[str, Any] | None = {
        "Counter": _Counter,
        "Histogram": _Histogram,
    }
except ImportError:
    _PROMETHEUS_CLASSES = None


NAMESPACE = "quotasync"

# Store round trips are typically well under 100ms
REDIS_LATENCY_BUCKETS = (
    0.0005,
    0.001,
    0.0025,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
)


class _MetricsState:
    """Holds the metric objects once they are created."""

    def __init__(self) -> None:
        self.initialized: bool = False
        self.hits_total: Counter | None = None
        self.timeouts_total: Counter | None = None
        self.redis_duration: Histogram | None = None
        self.redirects_total: Counter | None = None
        self.buckets_deleted: Counter | None = None


_state = _MetricsState()


def is_enabled() -> bool:
    """Return True once metrics have been initialized."""
    return _state.initialized


def _init_metrics() -> None:
    """Create the metrics in the default registry (idempotent)."""
    if _state.initialized:
        return

    if _PROMETHEUS_CLASSES is None:
        logger.debug("prometheus-client not installed, metrics disabled")
        return

    counter_cls = _PROMETHEUS_CLASSES["Counter"]
    histogram_cls = _PROMETHEUS_CLASSES["Histogram"]

    _state.hits_total = counter_cls(
        f"{NAMESPACE}_hits_total",
        "Quota hits by outcome",
        ["engine", "outcome"],
    )

    _state.timeouts_total = counter_cls(
        f"{NAMESPACE}_timeouts_total",
        "Store operations that exceeded their timeout",
        ["engine", "operation"],
    )

    _state.redis_duration = histogram_cls(
        f"{NAMESPACE}_redis_operation_duration_seconds",
        "Store round trip latency",
        ["engine", "operation"],
        buckets=REDIS_LATENCY_BUCKETS,
    )

    _state.redirects_total = counter_cls(
        f"{NAMESPACE}_redirects_total",
        "Cluster redirects followed",
        ["kind"],
    )

    _state.buckets_deleted = counter_cls(
        f"{NAMESPACE}_buckets_deleted_total",
        "Bucket records removed by delete_buckets",
    )

    _state.initialized = True
    logger.info("Prometheus metrics initialized for quota-sync")


def record_hit(engine: str, allowed: bool) -> None:
    """Record the outcome of a hit.

    Args:
        engine: Algorithm name (e.g., "fix_window", "token_bucket")
        allowed: Whether the hit was admitted
    """
    if not _state.initialized:
        return
    if _state.hits_total is not None:
        outcome = "allowed" if allowed else "denied"
        _state.hits_total.labels(engine=engine, outcome=outcome).inc()


def record_timeout(engine: str, operation: str) -> None:
    """Record an operation that timed out."""
    if not _state.initialized:
        return
    if _state.timeouts_total is not None:
        _state.timeouts_total.labels(engine=engine, operation=operation).inc()


def record_redis_operation(engine: str, operation: str, duration_seconds: float) -> None:
    """Record store round trip latency.

    Args:
        engine: Algorithm name
        operation: The operation ("hit", "inc", "set", "get")
        duration_seconds: Round trip duration in seconds
    """
    if not _state.initialized:
        return
    if _state.redis_duration is not None:
        _state.redis_duration.labels(engine=engine, operation=operation).observe(
            duration_seconds
        )


def record_redirect(kind: str) -> None:
    """Record a followed cluster redirect ("moved" or "ask")."""
    if not _state.initialized:
        return
    if _state.redirects_total is not None:
        _state.redirects_total.labels(kind=kind).inc()


def record_buckets_deleted(count: int) -> None:
    """Record bucket records removed by one delete_buckets call."""
    if not _state.initialized:
        return
    if _state.buckets_deleted is not None and count > 0:
        _state.buckets_deleted.inc(count)
