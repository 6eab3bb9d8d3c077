"""
Shared fixtures: an in-process EPMD + Erlang node that answers ``rex`` calls,
and a sink that keeps what it is given.
"""

import asyncio
import struct
from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio

from riakprobe.domain.metrics import MetricSample
from riakprobe.erlang.dist import (
    DFLAG_PUBLISHED,
    LINK,
    LOCAL_FLAGS,
    PASS_THROUGH,
    SEND,
    gen_digest,
)
from riakprobe.erlang.etf import SMALL_TUPLE_EXT, VERSION, Atom, binary_to_term, term_to_binary
from riakprobe.sinks import MetricSink, SinkType

NODE_FLAGS = LOCAL_FLAGS | DFLAG_PUBLISHED
SERVER_CHALLENGE = 0x1234ABCD

BADRPC_UNDEF = (Atom("badrpc"), (Atom("EXIT"), Atom("undef")))


def riak_replies(node: str) -> Dict[Tuple[str, str], Any]:
    """Replies shaped like what a healthy Riak node answers."""
    return {
        ("riak_core_status", "ring_status"): (
            Atom(node),
            True,
            [],
            [],
            [],
        ),
        ("riak_core_status", "ringready"): (Atom("ok"), [Atom(node)]),
        ("riak_core_node_watcher", "services"): [Atom("riak_kv"), Atom("riak_pipe")],
        ("net_adm", "ping"): Atom("pong"),
    }


class CollectingSink(MetricSink):
    def __init__(self):
        super().__init__()
        self.samples: List[MetricSample] = []

    @property
    def sink_type(self) -> SinkType:
        return SinkType.LOG

    def submit(self, sample: MetricSample) -> None:
        self.submitted += 1
        self.samples.append(sample)

    def by_family(self, family: str) -> List[MetricSample]:
        return [s for s in self.samples if s.family == family]


def _frame16(body: bytes) -> bytes:
    return struct.pack(">H", len(body)) + body


def _frame32(body: bytes) -> bytes:
    return struct.pack(">I", len(body)) + body


async def _read16(reader: asyncio.StreamReader) -> bytes:
    (length,) = struct.unpack(">H", await reader.readexactly(2))
    return await reader.readexactly(length)


class FakeRiakNode:
    """Accepting side of the distribution protocol, enough for rpc:call."""

    def __init__(self, alive: str = "riak", cookie: str = "riak"):
        self.alive = alive
        self.node_name = f"{alive}@127.0.0.1"
        self.cookie = cookie
        self.registered = True
        self.status = "ok"
        self.new_challenge = False
        self.send_noise = False
        self.flags = NODE_FLAGS
        self.replies: Dict[Tuple[str, str], Any] = riak_replies(self.node_name)
        # Reply bodies written as is, after the rex atom and without a version byte.
        self.raw_replies: Dict[Tuple[str, str], bytes] = {}
        self.calls: List[Tuple[str, str, list]] = []
        self.peer_names: List[str] = []
        self.complements: List[bytes] = []
        self.messages: List[bytes] = []
        self.epmd_port = 0
        self.node_port = 0
        self._servers: List[asyncio.AbstractServer] = []

    async def start(self) -> "FakeRiakNode":
        node = await asyncio.start_server(self._serve_node, "127.0.0.1", 0)
        epmd = await asyncio.start_server(self._serve_epmd, "127.0.0.1", 0)
        self._servers = [node, epmd]
        self.node_port = node.sockets[0].getsockname()[1]
        self.epmd_port = epmd.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        for server in self._servers:
            server.close()
        for server in self._servers:
            await server.wait_closed()

    async def _serve_epmd(self, reader, writer):
        try:
            request = await _read16(reader)
            assert request[:1] == b"z"
            if not self.registered:
                writer.write(b"w\x01")
            else:
                name = self.alive.encode()
                writer.write(
                    b"w\x00"
                    + struct.pack(">HBBHHH", self.node_port, 77, 0, 6, 5, len(name))
                    + name
                    + b"\x00\x00"
                )
            await writer.drain()
        finally:
            writer.close()

    async def _accept(self, reader, writer) -> bool:
        hello = await _read16(reader)
        assert hello[:1] == b"n"
        self.peer_names.append(hello[7:].decode())
        writer.write(_frame16(b"s" + self.status.encode()))
        if self.status not in ("ok", "ok_simultaneous"):
            await writer.drain()
            return False

        name = self.node_name.encode()
        if self.new_challenge:
            body = b"N" + struct.pack(">QIIH", self.flags, SERVER_CHALLENGE, 7, len(name)) + name
        else:
            body = b"n" + struct.pack(">HII", 5, self.flags & 0xFFFFFFFF, SERVER_CHALLENGE) + name
        writer.write(_frame16(body))
        await writer.drain()

        reply = await _read16(reader)
        if reply[:1] == b"c":
            self.complements.append(reply)
            reply = await _read16(reader)
        if reply[:1] != b"r" or reply[5:] != gen_digest(SERVER_CHALLENGE, self.cookie):
            return False
        (their_challenge,) = struct.unpack(">I", reply[1:5])
        writer.write(_frame16(b"a" + gen_digest(their_challenge, self.cookie)))
        await writer.drain()
        return True

    def _answer(self, module: str, function: str, args: list) -> Any:
        reply = self.replies.get((module, function), BADRPC_UNDEF)
        if callable(reply):
            return reply(args)
        return reply

    async def _serve_node(self, reader, writer):
        try:
            if not await self._accept(reader, writer):
                return
            while True:
                (length,) = struct.unpack(">I", await reader.readexactly(4))
                if length == 0:
                    continue
                packet = await reader.readexactly(length)
                assert packet[0] == PASS_THROUGH
                control, rest = binary_to_term(packet[1:])
                self.messages.append(rest)
                message, _ = binary_to_term(rest)
                sender, (_call, module, function, args, _user) = message
                self.calls.append((str(module), str(function), list(args)))

                if self.send_noise:
                    writer.write(b"\x00\x00\x00\x00")
                    writer.write(_frame32(bytes([PASS_THROUGH]) + term_to_binary((LINK, sender, sender))))
                    writer.write(_frame32(
                        bytes([PASS_THROUGH])
                        + term_to_binary((SEND, Atom(""), sender))
                        + term_to_binary((Atom("io_request"), 1))
                    ))
                answer = self._answer(str(module), str(function), list(args))
                raw = self.raw_replies.get((str(module), str(function)))
                if raw is not None:
                    body = bytes([VERSION, SMALL_TUPLE_EXT, 2]) + term_to_binary(Atom("rex"))[1:] + raw
                else:
                    body = term_to_binary((Atom("rex"), answer))
                writer.write(_frame32(
                    bytes([PASS_THROUGH]) + term_to_binary((SEND, Atom(""), sender)) + body
                ))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def fake_node():
    node = await FakeRiakNode().start()
    yield node
    await node.stop()


@pytest.fixture
def sink():
    return CollectingSink()
