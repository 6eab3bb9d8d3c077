from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import Tuple

from riakprobe.core.exceptions import RpcConnectError

EPMD_PORT = 4369

PORT_PLEASE2_REQ = 122
PORT2_RESP = 119


@dataclass
class NodeInfo:
    name: str
    port: int
    node_type: int
    protocol: int
    highest_version: int
    lowest_version: int


def split_node_name(node: str) -> Tuple[str, str]:
    """'riak@127.0.0.1' -> ('riak', '127.0.0.1')"""
    alive, sep, host = node.partition("@")
    if not sep or not alive or not host:
        raise RpcConnectError("node name must look like alive@host", {"node": node})
    return alive, host


def encode_port_please(alive: str) -> bytes:
    body = bytes([PORT_PLEASE2_REQ]) + alive.encode("utf-8")
    return struct.pack(">H", len(body)) + body


def decode_port_response(data: bytes, alive: str) -> NodeInfo:
    if len(data) < 2 or data[0] != PORT2_RESP:
        raise RpcConnectError("unexpected EPMD response", {"node": alive, "bytes": data[:16].hex()})
    if data[1] != 0:
        raise RpcConnectError("node is not registered with EPMD", {"node": alive, "result": data[1]})
    if len(data) < 14:
        raise RpcConnectError("short EPMD response", {"node": alive, "length": len(data)})
    port, node_type, protocol, highest, lowest, name_len = struct.unpack(">HBBHHH", data[2:12])
    name = data[12:12 + name_len].decode("utf-8", errors="replace")
    return NodeInfo(
        name=name,
        port=port,
        node_type=node_type,
        protocol=protocol,
        highest_version=highest,
        lowest_version=lowest,
    )


async def lookup_node(host: str, alive: str, *, port: int = EPMD_PORT, timeout_sec: float = 5.0) -> NodeInfo:
    """Ask the EPMD daemon on ``host`` which port ``alive`` listens on."""
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout_sec)
    except (OSError, asyncio.TimeoutError) as exc:
        raise RpcConnectError("cannot reach EPMD", {"host": host, "port": port}, cause=exc)
    try:
        writer.write(encode_port_please(alive))
        await writer.drain()
        # EPMD closes the socket after answering.
        data = await asyncio.wait_for(reader.read(), timeout_sec)
    except (OSError, asyncio.TimeoutError) as exc:
        raise RpcConnectError("EPMD lookup failed", {"host": host, "node": alive}, cause=exc)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
    return decode_port_response(data, alive)
