# This file is part of riak-probe.
#
# riak-probe is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# riak-probe is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with riak-probe. If not, see <https://www.gnu.org/licenses/>.

"""
Erlang distribution protocol: connection setup and message framing.

Only the initiating side is implemented. The handshake sends the version 5
``send_name`` and accepts both challenge forms, so old Riak releases
(R16) and current OTP nodes are reachable alike.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import struct
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from riakprobe.core.exceptions import DecodeError, RpcCallError, RpcConnectError

from .epmd import EPMD_PORT, lookup_node, split_node_name
from .etf import Atom, Pid, TermEncoder, binary_to_term

logger = logging.getLogger(__name__)

DFLAG_PUBLISHED = 0x1
DFLAG_EXTENDED_REFERENCES = 0x4
DFLAG_DIST_MONITOR = 0x8
DFLAG_FUN_TAGS = 0x10
DFLAG_NEW_FUN_TAGS = 0x80
DFLAG_EXTENDED_PIDS_PORTS = 0x100
DFLAG_EXPORT_PTR_TAG = 0x200
DFLAG_BIT_BINARIES = 0x400
DFLAG_NEW_FLOATS = 0x800
DFLAG_SMALL_ATOM_TAGS = 0x4000
DFLAG_UTF8_ATOMS = 0x10000
DFLAG_MAP_TAG = 0x20000
DFLAG_BIG_CREATION = 0x40000
DFLAG_HANDSHAKE_23 = 0x1000000
DFLAG_UNLINK_ID = 0x2000000
DFLAG_V4_NC = 1 << 34

LOCAL_FLAGS = (
    DFLAG_EXTENDED_REFERENCES
    | DFLAG_FUN_TAGS
    | DFLAG_NEW_FUN_TAGS
    | DFLAG_EXTENDED_PIDS_PORTS
    | DFLAG_EXPORT_PTR_TAG
    | DFLAG_BIT_BINARIES
    | DFLAG_NEW_FLOATS
    | DFLAG_SMALL_ATOM_TAGS
    | DFLAG_UTF8_ATOMS
    | DFLAG_MAP_TAG
    | DFLAG_BIG_CREATION
    | DFLAG_HANDSHAKE_23
    | DFLAG_UNLINK_ID
    | DFLAG_V4_NC
)

DIST_VERSION = 5
PASS_THROUGH = 112

# Control message operations.
LINK = 1
SEND = 2
EXIT = 3
UNLINK = 4
NODE_LINK = 5
REG_SEND = 6
GROUP_LEADER = 7
EXIT2 = 8
SEND_TT = 12
REG_SEND_TT = 16
SEND_SENDER = 22
SEND_SENDER_TT = 23

_OPS_WITH_PAYLOAD = frozenset({SEND, REG_SEND, SEND_TT, REG_SEND_TT, SEND_SENDER, SEND_SENDER_TT})

_ACCEPTED_STATUS = ("ok", "ok_simultaneous")


def gen_digest(challenge: int, cookie: str) -> bytes:
    return hashlib.md5(cookie.encode("utf-8") + str(challenge).encode("ascii")).digest()


def encoder_for(peer_flags: int) -> TermEncoder:
    """Term encoder restricted to what the peer advertised."""
    return TermEncoder(
        utf8_atoms=bool(peer_flags & DFLAG_UTF8_ATOMS),
        big_creation=bool(peer_flags & DFLAG_BIG_CREATION),
        small_atoms=bool(peer_flags & DFLAG_SMALL_ATOM_TAGS),
    )


def _frame16(body: bytes) -> bytes:
    return struct.pack(">H", len(body)) + body


@dataclass
class Challenge:
    name: str
    flags: int
    challenge: int
    creation: Optional[int] = None

    @property
    def new_format(self) -> bool:
        return self.creation is not None


def parse_challenge(body: bytes) -> Challenge:
    try:
        if body[:1] == b"n":
            _version, flags, challenge = struct.unpack(">HII", body[1:11])
            return Challenge(name=body[11:].decode("utf-8"), flags=flags, challenge=challenge)
        if body[:1] == b"N":
            flags, challenge, creation, name_len = struct.unpack(">QIIH", body[1:19])
            name = body[19:19 + name_len].decode("utf-8")
            return Challenge(name=name, flags=flags, challenge=challenge, creation=creation)
    except (struct.error, UnicodeDecodeError) as exc:
        raise RpcConnectError("malformed challenge", cause=exc)
    raise RpcConnectError("unexpected handshake message", {"tag": body[:1]})


@dataclass
class DistConnection:
    """An established connection to one remote node."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    local_node: str
    peer_node: str
    peer_flags: int = 0
    creation: int = 0
    timeout_sec: float = 5.0
    _pid_serial: int = field(default=0, repr=False)

    @classmethod
    async def open(
        cls,
        local_node: str,
        peer_node: str,
        cookie: str,
        *,
        epmd_port: int = EPMD_PORT,
        timeout_sec: float = 5.0,
    ) -> "DistConnection":
        alive, host = split_node_name(peer_node)
        info = await lookup_node(host, alive, port=epmd_port, timeout_sec=timeout_sec)
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, info.port), timeout_sec)
        except (OSError, asyncio.TimeoutError) as exc:
            raise RpcConnectError("cannot connect to node", {"node": peer_node, "port": info.port}, cause=exc)
        conn = cls(reader, writer, local_node, peer_node, timeout_sec=timeout_sec)
        try:
            await conn._handshake(cookie)
        except BaseException:
            await conn.close()
            raise
        logger.debug("connected to %s (flags=%#x)", peer_node, conn.peer_flags)
        return conn

    async def _read_exactly(self, size: int) -> bytes:
        return await asyncio.wait_for(self.reader.readexactly(size), self.timeout_sec)

    async def _recv_handshake(self) -> bytes:
        try:
            (length,) = struct.unpack(">H", await self._read_exactly(2))
            return await self._read_exactly(length)
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as exc:
            raise RpcConnectError("handshake interrupted", {"node": self.peer_node}, cause=exc)

    async def _send_handshake(self, body: bytes) -> None:
        try:
            self.writer.write(_frame16(body))
            await asyncio.wait_for(self.writer.drain(), self.timeout_sec)
        except (OSError, asyncio.TimeoutError) as exc:
            raise RpcConnectError("handshake interrupted", {"node": self.peer_node}, cause=exc)

    async def _handshake(self, cookie: str) -> None:
        low_flags = LOCAL_FLAGS & 0xFFFFFFFF
        await self._send_handshake(
            b"n" + struct.pack(">HI", DIST_VERSION, low_flags) + self.local_node.encode("utf-8")
        )

        status = await self._recv_handshake()
        if status[:1] != b"s":
            raise RpcConnectError("expected handshake status", {"node": self.peer_node, "tag": status[:1]})
        status_text = status[1:].decode("ascii", errors="replace")
        if status_text not in _ACCEPTED_STATUS:
            raise RpcConnectError("node refused connection", {"node": self.peer_node, "status": status_text})

        challenge = parse_challenge(await self._recv_handshake())
        self.peer_flags = challenge.flags
        if challenge.new_format:
            self.creation = secrets.randbelow(0xFFFFFFF0) + 4
            await self._send_handshake(b"c" + struct.pack(">II", LOCAL_FLAGS >> 32, self.creation))

        own_challenge = secrets.randbits(32)
        await self._send_handshake(b"r" + struct.pack(">I", own_challenge) + gen_digest(challenge.challenge, cookie))

        ack = await self._recv_handshake()
        if ack[:1] != b"a" or len(ack) != 17:
            raise RpcConnectError("expected challenge ack", {"node": self.peer_node})
        if ack[1:] != gen_digest(own_challenge, cookie):
            raise RpcConnectError("cookie rejected by peer", {"node": self.peer_node})

    def make_pid(self) -> Pid:
        self._pid_serial += 1
        return Pid(Atom(self.local_node), self._pid_serial, 0, self.creation)

    async def send(self, control: Tuple[Any, ...], message: Any) -> None:
        encoder = encoder_for(self.peer_flags)
        payload = bytes([PASS_THROUGH]) + encoder.encode(control) + encoder.encode(message)
        try:
            self.writer.write(struct.pack(">I", len(payload)) + payload)
            await asyncio.wait_for(self.writer.drain(), self.timeout_sec)
        except (OSError, asyncio.TimeoutError) as exc:
            raise RpcCallError("send failed", {"node": self.peer_node}, cause=exc)

    async def send_reg(self, sender: Pid, name: str, message: Any) -> None:
        await self.send((REG_SEND, sender, Atom(""), Atom(name)), message)

    async def recv(self) -> Tuple[Any, bytes]:
        """Return the next ``(control, encoded_message)``, answering ticks."""
        while True:
            try:
                (length,) = struct.unpack(">I", await self._read_exactly(4))
                if length == 0:
                    self.writer.write(b"\x00\x00\x00\x00")
                    continue
                packet = await self._read_exactly(length)
            except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as exc:
                raise RpcCallError("receive failed", {"node": self.peer_node}, cause=exc)
            if packet[0] != PASS_THROUGH:
                raise DecodeError("unsupported distribution header", {"tag": packet[0]})
            control, rest = binary_to_term(packet[1:])
            if not isinstance(control, tuple) or not control:
                raise DecodeError("malformed control message", {"node": self.peer_node})
            if control[0] not in _OPS_WITH_PAYLOAD:
                logger.debug("ignoring control message %r from %s", control[0], self.peer_node)
                continue
            return control, rest

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass
