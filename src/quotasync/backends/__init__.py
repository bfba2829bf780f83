"""Bucket-oriented backends.

- BucketBackend: per-bucket counters with created/updated timestamps and
  bulk deletion per identifier
- NodeRouter: redirect-following routing used for cluster deployments
"""

from __future__ import annotations

from quotasync.backends.buckets import BackendState, BucketBackend
from quotasync.backends.routing import NodeRouter, scan_batches, slot_of

__all__ = [
    "BackendState",
    "BucketBackend",
    "NodeRouter",
    "scan_batches",
    "slot_of",
]
