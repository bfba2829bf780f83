"""Storage key derivation.

Every engine maps (prefix, caller key, window) to one canonical Redis key
through this module, so two processes configured with the same prefix always
address the same counter.

Layouts:
- window algorithms: ``{prefix}:{key}:{window}``
- bucket algorithms: ``{prefix}:{key}``
- legacy buckets: ``{prefix}:{{id}}:{bucket}`` with index ``{prefix}:Buckets:{{id}}``

The legacy keys wrap the identifier in a Redis Cluster hash tag so a record and
its index set always hash to the same slot.
"""

from __future__ import annotations

import re

DEFAULT_PREFIX = "quotasync"
DEFAULT_BUCKET_PREFIX = "Hammer:Redis"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def default_prefix(owner: object | None = None) -> str:
    """Derive a key prefix from the object that owns an engine.

    Args:
        owner: A class, function, module name or None.

    Returns:
        The dotted module-qualified name of ``owner``, or ``DEFAULT_PREFIX``.

    Example:
        >>> class RateLimit: ...
        >>> default_prefix(RateLimit)
        'myapp.limits.RateLimit'
    """
    if owner is None:
        return DEFAULT_PREFIX
    if isinstance(owner, str):
        return owner
    qualname = getattr(owner, "__qualname__", None) or type(owner).__qualname__
    module = getattr(owner, "__module__", None)
    if module and module != "builtins":
        return f"{module}.{qualname}"
    return qualname


def window_index(now_ms: int, scale_ms: int) -> int:
    """Return the fixed window a millisecond timestamp falls into."""
    return now_ms // scale_ms


def window_end_ms(index: int, scale_ms: int) -> int:
    """Return the millisecond timestamp at which window ``index`` ends."""
    return (index + 1) * scale_ms


def window_key(prefix: str, key: str, window: int) -> str:
    """Return the storage key of one window counter or sliding log."""
    return f"{prefix}:{key}:{window}"


def bucket_key(prefix: str, key: str) -> str:
    """Return the storage key of a token or leaky bucket record."""
    return f"{prefix}:{key}"


def record_key(prefix: str, bucket: int, identifier: str) -> str:
    """Return the storage key of a legacy bucket record."""
    return f"{prefix}:{{{identifier}}}:{bucket}"


def index_key(prefix: str, identifier: str) -> str:
    """Return the key of the set enumerating an identifier's bucket records."""
    return f"{prefix}:Buckets:{{{identifier}}}"


def record_pattern(prefix: str, identifier: str) -> str:
    """Return a SCAN MATCH pattern selecting every record of ``identifier``.

    Glob metacharacters in the prefix and identifier are escaped so an
    identifier like ``user*`` only matches its own records.
    """
    return f"{escape_glob(prefix)}:{{{escape_glob(identifier)}}}:*"


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


__all__ = [
    "DEFAULT_PREFIX",
    "DEFAULT_BUCKET_PREFIX",
    "default_prefix",
    "window_index",
    "window_end_ms",
    "window_key",
    "bucket_key",
    "record_key",
    "index_key",
    "record_pattern",
    "escape_glob",
]
