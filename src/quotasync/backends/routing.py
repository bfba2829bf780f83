"""Redirect-following command routing for Redis Cluster nodes.

``NodeRouter`` wraps a seed client (any plain ``redis.asyncio.Redis``). Commands
go to the node cached for the key's hash slot, or to the seed when the slot has
not been seen yet. A ``MOVED`` reply teaches the router which node owns the
slot: it opens a connection to that node, caches it by address, remembers the
slot, and reissues the identical command there. An ``ASK`` reply is a one-off
redirect during slot migration: the command is reissued on the indicated node
after ``ASKING``, without updating the slot cache.

The topology is never enumerated up front; the known nodes are the seed plus
whatever redirects have revealed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from redis.asyncio import ConnectionPool, Redis
from redis.crc import key_slot
from redis.exceptions import AskError, MovedError, ResponseError

from quotasync.contrib.prometheus import metrics as prom
from quotasync.exceptions import RedirectLoopError

if TYPE_CHECKING:
    from redis.asyncio.client import Pipeline

logger = logging.getLogger(__name__)

NodeFactory = Callable[[str, int], Redis]

_REDIRECT = re.compile(r"\b(MOVED|ASK) (\d+ \S+:\d+)")


def _encode(key: str | bytes) -> bytes:
    return key if isinstance(key, bytes) else key.encode()


def slot_of(key: str | bytes) -> int:
    """Return the cluster hash slot of ``key`` (hash tags honoured)."""
    return key_slot(_encode(key))


def as_redirect(err: ResponseError) -> AskError | None:
    """Return ``err`` as a ``MovedError``/``AskError``, or None if it is no redirect.

    Standalone clients on redis-py < 6 surface ``-MOVED``/``-ASK`` replies as a
    plain ``ResponseError``, and pipelines prefix the message with the failing
    command, so the reply is recovered from the message text.
    """
    if isinstance(err, AskError):
        return err
    match = _REDIRECT.search(str(err))
    if match is None:
        return None
    kind, target = match.group(1), match.group(2)
    return MovedError(target) if kind == "MOVED" else AskError(target)


async def scan_batches(
    client: Redis, pattern: str, count: int = 1000
) -> AsyncIterator[list[bytes]]:
    """Iterate one node's keyspace with SCAN, one list of keys per step.

    An empty list means the step matched nothing but the scan is not done;
    large keyspaces commonly return several of those before matches appear.
    The iterator is exhausted only once the server returns cursor 0.

    Args:
        client: Connection to a single node
        pattern: MATCH pattern
        count: COUNT hint per step

    Yields:
        Keys matched in each step (possibly empty)
    """
    cursor = 0
    while True:
        cursor, keys = await client.scan(cursor, match=pattern, count=count)
        yield list(keys)
        if int(cursor) == 0:
            return


class NodeRouter:
    """Lazily populated routing cache that follows cluster redirects.

    Example:
        >>> router = NodeRouter(Redis.from_url("redis://node-a:7000"))
        >>> # Goes to node-a, gets MOVED to node-c, retries there and caches node-c
        >>> await router.execute("Hammer:Redis:{u1}:7", "HGETALL", "Hammer:Redis:{u1}:7")
        >>> # Same slot: sent straight to node-c
        >>> await router.execute("Hammer:Redis:{u1}:8", "EXISTS", "Hammer:Redis:{u1}:8")
    """

    def __init__(
        self,
        seed: Redis,
        *,
        max_redirects: int = 5,
        node_factory: NodeFactory | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            seed: Client for the node every unknown slot is first sent to
            max_redirects: Redirects followed for one command before giving up
            node_factory: Builds a client for ``(host, port)``; defaults to
                cloning the seed's connection settings
        """
        self._seed = seed
        self._max_redirects = max_redirects
        self._node_factory = node_factory or self._clone_seed
        self._nodes: dict[str, Redis] = {}
        self._slots: dict[int, str] = {}
        self._seed_addr = self._address_of(seed)

    @staticmethod
    def _address_of(client: Redis) -> str | None:
        pool = getattr(client, "connection_pool", None)
        kwargs = getattr(pool, "connection_kwargs", None)
        if not isinstance(kwargs, dict) or "host" not in kwargs:
            return None
        return f"{kwargs['host']}:{kwargs.get('port', 6379)}"

    def _clone_seed(self, host: str, port: int) -> Redis:
        """Open a client to ``host:port`` with the seed's connection settings."""
        seed_pool = self._seed.connection_pool
        kwargs = dict(seed_pool.connection_kwargs)
        kwargs.update(host=host, port=port)
        pool = ConnectionPool(
            connection_class=seed_pool.connection_class,
            max_connections=seed_pool.max_connections,
            **kwargs,
        )
        return Redis.from_pool(pool)

    def node(self, host: str, port: int) -> Redis:
        """Return the cached client for ``host:port``, opening it on first use."""
        address = f"{host}:{port}"
        if address == self._seed_addr:
            return self._seed
        client = self._nodes.get(address)
        if client is None:
            client = self._node_factory(host, port)
            self._nodes[address] = client
            logger.info("Opened connection to cluster node %s", address)
        return client

    def client_for(self, key: str | bytes) -> Redis:
        """Return the client currently believed to own ``key``."""
        address = self._slots.get(slot_of(key))
        if address is None:
            return self._seed
        if address == self._seed_addr:
            return self._seed
        return self._nodes[address]

    def known_nodes(self) -> list[Redis]:
        """Return the seed plus every node discovered through redirects."""
        return [self._seed, *self._nodes.values()]

    def _learn(self, err: MovedError) -> Redis:
        host, port = err.host, err.port
        client = self.node(host, port)
        self._slots[int(err.slot_id)] = f"{host}:{port}"
        return client

    async def execute(self, key: str | bytes, *args: Any) -> Any:
        """Run one command for ``key``, following redirects.

        Raises:
            RedirectLoopError: If more than ``max_redirects`` redirects occur
        """

        async def call(client: Redis, asking: bool) -> Any:
            if not asking:
                return await client.execute_command(*args)
            # ASKING only applies to the next command on the same connection.
            async with client.pipeline(transaction=False) as pipe:
                pipe.execute_command("ASKING")
                pipe.execute_command(*args)
                replies = await pipe.execute()
            return replies[1]

        return await self._follow(key, str(args[0]), call)

    async def transaction(self, key: str | bytes, build: Callable[[Pipeline], Any]) -> list:
        """Run a MULTI/EXEC built by ``build`` on the node owning ``key``.

        Every command queued by ``build`` must hash to the same slot as ``key``.
        """

        async def call(client: Redis, asking: bool) -> list:
            if not asking:
                async with client.pipeline(transaction=True) as pipe:
                    build(pipe)
                    return await pipe.execute()
            # ASKING has to precede MULTI, so the transaction is spelled out by hand.
            async with client.pipeline(transaction=False) as pipe:
                pipe.execute_command("ASKING")
                pipe.execute_command("MULTI")
                build(pipe)
                pipe.execute_command("EXEC")
                replies = await pipe.execute()
            return replies[-1]

        return await self._follow(key, "MULTI", call)

    async def _follow(self, key, command: str, call) -> Any:
        client = self.client_for(key)
        asking = False
        for attempt in range(self._max_redirects + 1):
            try:
                return await call(client, asking)
            except ResponseError as e:
                redirect = as_redirect(e)
                if redirect is None:
                    raise
                if attempt == self._max_redirects:
                    raise RedirectLoopError(command, attempt) from e
                if isinstance(redirect, MovedError):
                    logger.warning(
                        "%s for slot %s moved to %s:%s, following",
                        command,
                        redirect.slot_id,
                        redirect.host,
                        redirect.port,
                    )
                    prom.record_redirect("moved")
                    client = self._learn(redirect)
                    asking = False
                else:
                    logger.debug(
                        "%s for slot %s asked to %s:%s, following",
                        command,
                        redirect.slot_id,
                        redirect.host,
                        redirect.port,
                    )
                    prom.record_redirect("ask")
                    client = self.node(redirect.host, redirect.port)
                    asking = True
        raise RedirectLoopError(command, self._max_redirects)

    async def aclose(self) -> None:
        """Close every connection opened by the router (the seed is left open)."""
        for address, client in list(self._nodes.items()):
            try:
                await client.aclose()
            except (OSError, ConnectionError, RuntimeError) as e:
                logger.warning("Error closing connection to node %s: %s", address, e)
        self._nodes.clear()
        self._slots.clear()
