"""Legacy per-bucket Redis backend.

Counts hits in buckets identified by ``(bucket index, identifier)``. Each
bucket is a hash with ``bucket``, ``id``, ``count``, ``created`` and
``updated`` fields, and every identifier has an index set listing its bucket
keys. Both carry a TTL of ``expiry_ms``, which has to be configured: there is
no default.

Lifecycle:
    IDLE --start()--> CONNECTED --first request--> SERVING --stop()--> STOPPED

Example:
    >>> backend = BucketBackend(
    ...     BucketBackendConfig(store="main", expiry_ms=2 * 60 * 60 * 1000),
    ...     RedisStoreConfig(url="redis://localhost:6379/0"),
    ... )
    >>> async with backend:
    ...     await backend.count_hit((1024, "user_1"), now=1_700_000_000_000)
    ...     record = await backend.get_bucket((1024, "user_1"))
    ...     deleted = await backend.delete_buckets("user_1")
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from quotasync.backends.routing import NodeFactory, NodeRouter, scan_batches, slot_of
from quotasync.contrib.prometheus import metrics as prom
from quotasync.core import with_timeout
from quotasync.exceptions import BackendStateError, ConfigValidationError, ScriptReplyError
from quotasync.keys import index_key, record_key, record_pattern
from quotasync.schemas import BucketBackendConfig, BucketRecord, RedisStoreConfig
from quotasync.store import connect

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_FIELDS = ("bucket", "id", "count", "created", "updated")


class BackendState(str, Enum):
    """Lifecycle states of ``BucketBackend``."""

    IDLE = "idle"
    CONNECTED = "connected"
    SERVING = "serving"
    STOPPED = "stopped"


class BucketBackend:
    """Stateful bucket counter holding one store connection.

    Single-node deployments delete an identifier's buckets with a SCAN loop
    on the one node. With ``cluster=True`` the backend scans every node it
    knows about, aggregates the matches and deletes them through a routing
    cache that follows ``MOVED``/``ASK`` redirects.
    """

    def __init__(
        self,
        config: BucketBackendConfig,
        store: RedisStoreConfig | None = None,
        *,
        client: Redis | None = None,
        node_factory: NodeFactory | None = None,
    ) -> None:
        """Initialize the backend (no I/O).

        Args:
            config: Backend configuration
            store: Store configuration used to connect on ``start()``
            client: Already created client to use instead of ``store``
            node_factory: Builds clients for redirect targets (cluster mode)

        Raises:
            ConfigValidationError: If neither ``store`` nor ``client`` is given
        """
        if store is None and client is None:
            raise ConfigValidationError(
                "BucketBackend needs a store configuration or a client",
                field="store",
                expected="RedisStoreConfig | Redis",
                received="None",
            )
        self._config = config
        self._store = store
        self._client = client
        self._owns_client = client is None
        self._node_factory = node_factory
        self._router: NodeRouter | None = None
        self._state = BackendState.IDLE

    @property
    def state(self) -> BackendState:
        """Return the lifecycle state."""
        return self._state

    @property
    def ttl_seconds(self) -> int:
        """Return the TTL applied to records and index sets."""
        return round(self._config.expiry_ms / 1000 + 1)

    async def start(self) -> None:
        """Connect to the store and start serving requests.

        Raises:
            ConfigValidationError: If ``expiry_ms`` is not configured
            redis.exceptions.ConnectionError: If the store is unreachable
        """
        if self._state in (BackendState.CONNECTED, BackendState.SERVING):
            return

        if self._config.expiry_ms is None:
            raise ConfigValidationError(
                "BucketBackend requires 'expiry_ms'; there is no default bucket lifetime",
                field="buckets.expiry_ms",
                expected="int > 0",
                received="missing",
            )

        if self._owns_client:
            self._client = await connect(self._store)
        else:
            try:
                await self._client.ping()
            except (OSError, TimeoutError, RedisError) as e:
                logger.error("Failed to start bucket backend: %s", e)
                raise

        self._router = NodeRouter(
            self._client,
            max_redirects=self._config.max_redirects,
            node_factory=self._node_factory,
        )
        self._state = BackendState.CONNECTED
        logger.info(
            "Bucket backend started (expiry=%dms, prefix=%s, cluster=%s)",
            self._config.expiry_ms,
            self._config.key_prefix,
            self._config.cluster,
        )

    async def stop(self) -> None:
        """Close connections and stop serving."""
        if self._router is not None:
            await self._router.aclose()
            self._router = None
        if self._owns_client and self._client is not None:
            try:
                await self._client.aclose()
            except (OSError, ConnectionError, RuntimeError) as e:
                logger.warning("Error closing bucket backend client: %s", e)
            finally:
                self._client = None
        self._state = BackendState.STOPPED
        logger.info("Bucket backend stopped")

    async def __aenter__(self) -> BucketBackend:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _serving(self) -> NodeRouter:
        if self._state not in (BackendState.CONNECTED, BackendState.SERVING):
            raise BackendStateError(self._state.value)
        self._state = BackendState.SERVING
        return self._router

    # ------------------------------------------------------------------
    # Counter CRUD
    # ------------------------------------------------------------------

    async def count_hit(
        self,
        key: tuple[int, str],
        now: int,
        increment: int = 1,
        *,
        timeout: float | None = None,
    ) -> int:
        """Record ``increment`` hits in the bucket identified by ``key``.

        The bucket is written in one MULTI/EXEC that sets all five fields,
        index membership and both TTLs, whether or not EXISTS saw it. A
        bucket that expires after the EXISTS check is therefore recreated
        whole, and readers never see ``count`` without ``created``/``updated``.
        ``created`` is only set when absent.

        Args:
            key: ``(bucket index, identifier)``
            now: Timestamp stored as ``created``/``updated``
            increment: Hits to add
            timeout: Per-call timeout in seconds

        Returns:
            The bucket's count after the hit
        """
        router = self._serving()
        bucket, identifier = key
        rkey = record_key(self._config.key_prefix, bucket, identifier)
        ikey = index_key(self._config.key_prefix, identifier)
        ttl = self.ttl_seconds

        async def run() -> int:
            exists = await router.execute(rkey, "EXISTS", rkey)

            def write(pipe) -> None:
                # Every field is (re)written so a bucket that expires between
                # EXISTS and EXEC is recreated whole. HINCRBY lets two racing
                # creators both count; HSETNX keeps the first ``created``.
                pipe.hincrby(rkey, "count", increment)
                pipe.hsetnx(rkey, "created", now)
                pipe.hset(rkey, mapping={"bucket": bucket, "id": identifier, "updated": now})
                pipe.sadd(ikey, rkey)
                pipe.expire(rkey, ttl)
                pipe.expire(ikey, ttl)

            replies = await router.transaction(rkey, write)
            if not int(exists):
                logger.debug("Created bucket %s", rkey)
            return self._count_from("count_hit", replies, 6)

        return await with_timeout(run(), timeout, operation="count_hit", key=rkey)

    @staticmethod
    def _count_from(transaction: str, replies: Any, expected: int) -> int:
        if not isinstance(replies, list | tuple) or len(replies) != expected:
            raise ScriptReplyError(transaction, replies)
        try:
            return int(replies[0])
        except (TypeError, ValueError) as e:
            raise ScriptReplyError(transaction, replies) from e

    async def get_bucket(
        self, key: tuple[int, str], *, timeout: float | None = None
    ) -> BucketRecord | None:
        """Read the bucket identified by ``key``.

        Returns:
            The record, or None if the bucket does not exist
        """
        router = self._serving()
        bucket, identifier = key
        rkey = record_key(self._config.key_prefix, bucket, identifier)

        reply = await with_timeout(
            router.execute(rkey, "HMGET", rkey, *_FIELDS),
            timeout,
            operation="get_bucket",
            key=rkey,
        )

        if not isinstance(reply, list | tuple) or len(reply) != len(_FIELDS):
            raise ScriptReplyError("get_bucket", reply)

        _, _, count, created, updated = reply
        if count is None:
            return None
        if created is None or updated is None:
            raise ScriptReplyError("get_bucket", reply)

        try:
            return BucketRecord(
                bucket=bucket,
                id=identifier,
                count=int(count),
                created=int(created),
                updated=int(updated),
            )
        except ValueError as e:
            raise ScriptReplyError("get_bucket", reply) from e

    # ------------------------------------------------------------------
    # Bulk deletion
    # ------------------------------------------------------------------

    async def delete_buckets(self, identifier: str, *, timeout: float | None = None) -> int:
        """Delete every bucket of ``identifier`` and its index set.

        Args:
            identifier: Identifier whose buckets are removed
            timeout: Seconds for the whole operation; defaults to
                ``delete_buckets_timeout_ms`` from the configuration

        Returns:
            Number of bucket records deleted (the index set is not counted)
        """
        router = self._serving()
        if timeout is None and self._config.delete_buckets_timeout_ms is not None:
            timeout = self._config.delete_buckets_timeout_ms / 1000

        pattern = record_pattern(self._config.key_prefix, identifier)
        ikey = index_key(self._config.key_prefix, identifier)

        if self._config.cluster:
            run = self._delete_across_nodes(router, pattern, ikey)
        else:
            run = self._delete_single_node(router, pattern, ikey)

        deleted = await with_timeout(run, timeout, operation="delete_buckets", key=pattern)
        prom.record_buckets_deleted(deleted)
        logger.info("Deleted %d buckets for '%s'", deleted, identifier)
        return deleted

    async def _delete_single_node(self, router: NodeRouter, pattern: str, ikey: str) -> int:
        client = router.client_for(ikey)
        deleted = 0
        steps = 0
        async for keys in scan_batches(client, pattern, self._config.scan_count):
            steps += 1
            if keys:
                deleted += int(await client.delete(*keys))
        await client.delete(ikey)
        logger.debug("Scanned %d steps for pattern %s", steps, pattern)
        return deleted

    async def _delete_across_nodes(self, router: NodeRouter, pattern: str, ikey: str) -> int:
        # Reading the index routes us to (and caches) the node owning the identifier.
        members = await router.execute(ikey, "SMEMBERS", ikey)
        found: set[bytes] = {m if isinstance(m, bytes) else str(m).encode() for m in members}
        indexed = len(found)

        for node in router.known_nodes():
            async for keys in scan_batches(node, pattern, self._config.scan_count):
                found.update(k if isinstance(k, bytes) else str(k).encode() for k in keys)

        if indexed and len(found) > indexed:
            logger.debug("Index for %s missed %d live keys", ikey, len(found) - indexed)

        by_slot: dict[int, list[bytes]] = defaultdict(list)
        for key in found:
            by_slot[slot_of(key)].append(key)

        deleted = 0
        for keys in by_slot.values():
            deleted += int(await router.execute(keys[0], "DEL", *keys))
        await router.execute(ikey, "DEL", ikey)
        return deleted
