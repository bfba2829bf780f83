"""Engine implementations for quota counting.

All engines share the call shape defined by ``quotasync.core.Engine`` and keep
their state exclusively in Redis.

Available engines:
- FixWindow: one counter per fixed time window
- SlidingWindow: sorted-set log of hits over a moving window
- TokenBucket: capacity-bounded tokens refilled at a constant rate
- LeakyBucket: capacity-bounded level drained at a constant rate
"""

from __future__ import annotations

from quotasync.engines.fix_window import FixWindowEngine
from quotasync.engines.leaky_bucket import LeakyBucketEngine
from quotasync.engines.sliding_window import SlidingWindowEngine
from quotasync.engines.token_bucket import TokenBucketEngine

__all__ = [
    "FixWindowEngine",
    "SlidingWindowEngine",
    "TokenBucketEngine",
    "LeakyBucketEngine",
]
