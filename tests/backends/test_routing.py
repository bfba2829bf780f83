"""Tests for redirect-following command routing.

Cluster nodes are MagicMock clients whose replies are scripted, including
MOVED and ASK errors as redis-py raises them. ``TestRawRedirects`` talks to
small RESP servers instead, so redirects arrive as real ``-MOVED``/``-ASK``
error replies and go through redis-py's own reply parsing.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.asyncio import Redis
from redis.exceptions import AskError, MovedError, ResponseError

from quotasync.backends.routing import NodeRouter, as_redirect, scan_batches, slot_of
from quotasync.exceptions import RedirectLoopError

pytestmark = pytest.mark.cluster

KEY = "Hammer:Redis:{u1}:7"


def _node(**methods) -> MagicMock:
    node = MagicMock()
    for name, mock in methods.items():
        setattr(node, name, mock)
    node.aclose = AsyncMock()
    return node


def _pipeline(node: MagicMock, replies: list) -> MagicMock:
    """Make ``node.pipeline()`` yield a pipe whose execute returns ``replies``."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=replies)
    node.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    node.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
    return pipe


class TestSlots:
    """Test hash slot computation."""

    def test_hash_tag_shared(self):
        """Test that a record and its index hash to the same slot."""
        assert slot_of("Hammer:Redis:{u1}:7") == slot_of("Hammer:Redis:Buckets:{u1}")

    def test_bytes_and_str_agree(self):
        """Test that str and bytes keys map to the same slot."""
        assert slot_of(KEY) == slot_of(KEY.encode())


class TestMoved:
    """Test MOVED handling."""

    async def test_moved_is_followed_and_cached(self):
        """Test that MOVED reissues the command and routes the slot there next time."""
        target = _node(execute_command=AsyncMock(return_value=b"v"))
        seed = _node(
            execute_command=AsyncMock(side_effect=MovedError(f"{slot_of(KEY)} 10.0.0.2:7001"))
        )
        opened = []

        def factory(host, port):
            opened.append((host, port))
            return target

        router = NodeRouter(seed, node_factory=factory)

        assert await router.execute(KEY, "GET", KEY) == b"v"
        assert await router.execute(KEY, "GET", KEY) == b"v"

        assert opened == [("10.0.0.2", 7001)]
        assert seed.execute_command.await_count == 1
        assert target.execute_command.await_count == 2
        assert router.client_for(KEY) is target
        assert router.known_nodes() == [seed, target]

    async def test_other_slots_still_go_to_seed(self):
        """Test that only the redirected slot is remapped."""
        target = _node(execute_command=AsyncMock(return_value=1))
        seed = _node(
            execute_command=AsyncMock(
                side_effect=[MovedError(f"{slot_of(KEY)} 10.0.0.2:7001"), 0]
            )
        )
        router = NodeRouter(seed, node_factory=lambda h, p: target)

        await router.execute(KEY, "EXISTS", KEY)
        assert await router.execute("other", "EXISTS", "other") == 0

    async def test_redirect_loop_gives_up(self):
        """Test that endless redirects raise RedirectLoopError."""
        moved = MovedError(f"{slot_of(KEY)} 10.0.0.2:7001")
        node = _node(execute_command=AsyncMock(side_effect=moved))
        router = NodeRouter(node, max_redirects=2, node_factory=lambda h, p: node)

        with pytest.raises(RedirectLoopError) as exc_info:
            await router.execute(KEY, "GET", KEY)

        assert exc_info.value.redirects == 2
        assert node.execute_command.await_count == 3

    async def test_moved_during_transaction(self):
        """Test that a MULTI/EXEC is rebuilt on the new owner."""
        seed = _node()
        seed_pipe = _pipeline(seed, [])
        seed_pipe.execute.side_effect = MovedError(f"{slot_of(KEY)} 10.0.0.2:7001")
        target = _node()
        target_pipe = _pipeline(target, [3, 1])

        built = []

        def build(pipe):
            built.append(pipe)
            pipe.hincrby(KEY, "count", 1)
            pipe.expire(KEY, 10)

        router = NodeRouter(seed, node_factory=lambda h, p: target)
        assert await router.transaction(KEY, build) == [3, 1]

        assert built == [seed_pipe, target_pipe]
        target.pipeline.assert_called_with(transaction=True)


class TestAsk:
    """Test ASK handling."""

    async def test_ask_sends_asking_without_caching(self):
        """Test that ASK retries once with ASKING and leaves the slot map alone."""
        target = _node()
        pipe = _pipeline(target, [b"OK", b"v"])
        seed = _node(
            execute_command=AsyncMock(
                side_effect=[AskError(f"{slot_of(KEY)} 10.0.0.3:7002"), b"w"]
            )
        )
        router = NodeRouter(seed, node_factory=lambda h, p: target)

        assert await router.execute(KEY, "GET", KEY) == b"v"
        target.pipeline.assert_called_with(transaction=False)
        assert [c.args for c in pipe.execute_command.call_args_list] == [
            ("ASKING",),
            ("GET", KEY),
        ]

        # Slot still belongs to the seed
        assert await router.execute(KEY, "GET", KEY) == b"w"
        assert router.client_for(KEY) is seed

    async def test_ask_during_transaction(self):
        """Test that ASKING precedes a hand-built MULTI/EXEC."""
        seed = _node()
        seed_pipe = _pipeline(seed, [])
        seed_pipe.execute.side_effect = AskError(f"{slot_of(KEY)} 10.0.0.3:7002")
        target = _node()
        target_pipe = _pipeline(target, [b"OK", b"OK", b"QUEUED", [5]])

        def build(pipe):
            pipe.hincrby(KEY, "count", 1)

        router = NodeRouter(seed, node_factory=lambda h, p: target)
        assert await router.transaction(KEY, build) == [5]

        commands = [c.args[0] for c in target_pipe.execute_command.call_args_list]
        assert commands == ["ASKING", "MULTI", "EXEC"]


class TestLifecycle:
    """Test node connection handling."""

    async def test_aclose_closes_discovered_nodes_only(self):
        """Test that the seed is left open and discovered nodes are closed."""
        target = _node(execute_command=AsyncMock(return_value=1))
        seed = _node(
            execute_command=AsyncMock(side_effect=MovedError(f"{slot_of(KEY)} 10.0.0.2:7001"))
        )
        router = NodeRouter(seed, node_factory=lambda h, p: target)
        await router.execute(KEY, "EXISTS", KEY)

        await router.aclose()

        target.aclose.assert_awaited_once()
        seed.aclose.assert_not_awaited()
        assert router.known_nodes() == [seed]


class TestScanBatches:
    """Test the SCAN iterator."""

    async def test_continues_through_empty_steps(self):
        """Test that the scan runs until cursor 0 regardless of empty steps."""
        client = _node(scan=AsyncMock(side_effect=[(5, []), (9, [b"k1"]), (3, []), (0, [])]))

        batches = [batch async for batch in scan_batches(client, "p:*", count=10)]

        assert batches == [[], [b"k1"], [], []]
        client.scan.assert_awaited_with(3, match="p:*", count=10)


class RespNode:
    """Single-node RESP2 server replying from a per-command table.

    Commands missing from the table get ``+OK``. Between MULTI and EXEC,
    non-error replies are queued and returned as the EXEC array unless the
    table overrides EXEC.
    """

    def __init__(self, replies: dict[bytes, bytes] | None = None) -> None:
        self.replies = replies or {}
        self.commands: list[list[bytes]] = []
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self) -> "RespNode":
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        self._server.close()
        for writer in self._writers:
            writer.close()
        await self._server.wait_closed()

    def sent(self) -> list[bytes]:
        """Command names received, connection handshake excluded."""
        return [args[0].upper() for args in self.commands if args[0].upper() not in (b"CLIENT", b"HELLO")]

    @staticmethod
    async def _read_command(reader: asyncio.StreamReader) -> list[bytes] | None:
        header = await reader.readline()
        if not header:
            return None
        args = []
        for _ in range(int(header[1:])):
            size = int((await reader.readline())[1:])
            args.append((await reader.readexactly(size + 2))[:-2])
        return args

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        queued: list[bytes] | None = None
        try:
            while (args := await self._read_command(reader)) is not None:
                self.commands.append(args)
                name = args[0].upper()
                if name == b"MULTI":
                    queued = []
                    reply = b"+OK\r\n"
                elif name == b"EXEC":
                    done = queued or []
                    reply = self.replies.get(name) or b"*%d\r\n%s" % (len(done), b"".join(done))
                    queued = None
                else:
                    reply = self.replies.get(name, b"+OK\r\n")
                    if queued is not None and not reply.startswith(b"-"):
                        queued.append(reply)
                        reply = b"+QUEUED\r\n"
                writer.write(reply)
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()


@pytest.fixture
async def nodes():
    """Start RESP nodes on demand and stop them after the test."""
    started: list[RespNode] = []

    async def start(replies: dict[bytes, bytes] | None = None) -> RespNode:
        node = await RespNode(replies).start()
        started.append(node)
        return node

    yield start
    for node in started:
        await node.stop()


def _redirect(kind: str, node: RespNode) -> bytes:
    return f"-{kind} {slot_of(KEY)} 127.0.0.1:{node.port}\r\n".encode()


class TestRedirectParsing:
    """Test recognising redirects carried in plain ResponseErrors."""

    def test_plain_moved_message(self):
        """Test that a bare MOVED message becomes a MovedError."""
        redirect = as_redirect(ResponseError("MOVED 3999 10.0.0.2:7001"))

        assert isinstance(redirect, MovedError)
        assert (redirect.slot_id, redirect.host, redirect.port) == (3999, "10.0.0.2", 7001)

    def test_plain_ask_message(self):
        """Test that a bare ASK message becomes an AskError, not a MovedError."""
        redirect = as_redirect(ResponseError("ASK 3999 10.0.0.3:7002"))

        assert isinstance(redirect, AskError)
        assert not isinstance(redirect, MovedError)
        assert redirect.port == 7002

    def test_pipeline_annotated_message(self):
        """Test that a redirect inside a pipeline error annotation is found."""
        err = ResponseError(
            "Command # 1 (HINCRBY k count 1) of pipeline caused error: MOVED 12 host-a:7003"
        )

        redirect = as_redirect(err)

        assert isinstance(redirect, MovedError)
        assert (redirect.slot_id, redirect.host, redirect.port) == (12, "host-a", 7003)

    def test_typed_errors_pass_through(self):
        """Test that errors redis-py already classified are returned as is."""
        moved = MovedError("5 10.0.0.2:7001")

        assert as_redirect(moved) is moved

    def test_other_errors_are_not_redirects(self):
        """Test that unrelated error replies are left alone."""
        assert as_redirect(ResponseError("WRONGTYPE Operation against a key")) is None

    async def test_non_redirect_error_propagates(self):
        """Test that a non-redirect ResponseError reaches the caller unchanged."""
        error = ResponseError("WRONGTYPE Operation against a key")
        seed = _node(execute_command=AsyncMock(side_effect=error))
        router = NodeRouter(seed)

        with pytest.raises(ResponseError) as exc_info:
            await router.execute(KEY, "HGETALL", KEY)

        assert exc_info.value is error
        assert seed.execute_command.await_count == 1


class TestRawRedirects:
    """Test redirects sent as real error replies by a node over a socket."""

    async def test_moved_reply_is_followed(self, nodes):
        """Test that a -MOVED reply reroutes the command to the named node."""
        target = await nodes({b"GET": b"$1\r\nv\r\n"})
        seed = await nodes({b"GET": _redirect("MOVED", target)})
        client = Redis(host="127.0.0.1", port=seed.port)
        router = NodeRouter(client)

        try:
            assert await router.execute(KEY, "GET", KEY) == b"v"
            assert await router.execute(KEY, "GET", KEY) == b"v"
            assert router.client_for(KEY) is not client
        finally:
            await router.aclose()
            await client.aclose()

        assert seed.sent() == [b"GET"]
        assert target.sent() == [b"GET", b"GET"]

    async def test_ask_reply_sends_asking(self, nodes):
        """Test that a -ASK reply retries with ASKING and keeps the slot on the seed."""
        target = await nodes({b"GET": b"$1\r\nv\r\n"})
        seed = await nodes({b"GET": _redirect("ASK", target)})
        client = Redis(host="127.0.0.1", port=seed.port)
        router = NodeRouter(client)

        try:
            assert await router.execute(KEY, "GET", KEY) == b"v"
            assert router.client_for(KEY) is client
        finally:
            await router.aclose()
            await client.aclose()

        assert target.sent() == [b"ASKING", b"GET"]

    async def test_moved_reply_inside_transaction(self, nodes):
        """Test that a -MOVED queued reply aborts and replays the transaction."""
        target = await nodes({b"HINCRBY": b":3\r\n", b"EXPIRE": b":1\r\n"})
        seed = await nodes(
            {
                b"HINCRBY": _redirect("MOVED", target),
                b"EXEC": b"-EXECABORT Transaction discarded because of previous errors.\r\n",
            }
        )
        client = Redis(host="127.0.0.1", port=seed.port)
        router = NodeRouter(client)

        def build(pipe):
            pipe.hincrby(KEY, "count", 1)
            pipe.expire(KEY, 10)

        try:
            assert await router.transaction(KEY, build) == [3, True]
        finally:
            await router.aclose()
            await client.aclose()

        assert target.sent() == [b"MULTI", b"HINCRBY", b"EXPIRE", b"EXEC"]

    async def test_endless_moved_replies_give_up(self, nodes):
        """Test that a node redirecting to itself ends in RedirectLoopError."""
        seed = await nodes()
        seed.replies[b"GET"] = _redirect("MOVED", seed)
        client = Redis(host="127.0.0.1", port=seed.port)
        router = NodeRouter(client, max_redirects=2)

        try:
            with pytest.raises(RedirectLoopError):
                await router.execute(KEY, "GET", KEY)
        finally:
            await router.aclose()
            await client.aclose()

        assert seed.sent() == [b"GET", b"GET", b"GET"]
