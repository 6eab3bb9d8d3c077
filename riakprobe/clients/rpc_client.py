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

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from riakprobe.core.exceptions import DecodeError, RpcCallError, RpcConnectError
from riakprobe.domain.probes import ProbeSpec
from riakprobe.erlang.dist import DistConnection
from riakprobe.erlang.epmd import EPMD_PORT
from riakprobe.erlang.etf import VERSION, Atom, TermDecoder, TUPLE_TAGS, ATOM_TAGS

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_NODE = "riak_probe@127.0.0.1"
REX = "rex"


def build_args(argument: str) -> List[Atom]:
    return [Atom(argument)] if argument else []


def split_rex_reply(message: bytes) -> bytes | None:
    """Return the encoded ``Reply`` of a ``{rex, Reply}`` message, else None.

    ``Reply`` is the last element, so it runs to the end of the message and is
    handed on undecoded; judging its contents is left to the evaluator.
    """
    decoder = TermDecoder(message)
    decoder.decode_version()
    tag, arity = decoder.peek_type()
    if tag not in TUPLE_TAGS or arity != 2:
        return None
    decoder.decode_tuple_header()
    if decoder.peek_type()[0] not in ATOM_TAGS or decoder.decode_atom() != REX:
        return None
    return bytes([VERSION]) + decoder.remaining


def is_badrpc(reply: bytes) -> bool:
    decoder = TermDecoder(reply)
    try:
        decoder.decode_version()
        tag, arity = decoder.peek_type()
        if tag not in TUPLE_TAGS or arity != 2:
            return False
        decoder.decode_tuple_header()
        return decoder.peek_type()[0] in ATOM_TAGS and decoder.decode_atom() == "badrpc"
    except DecodeError:
        # Malformed replies are judged by the evaluator.
        return False


@dataclass
class RpcClient:
    local_node: str = DEFAULT_LOCAL_NODE
    timeout_sec: float = 5.0
    epmd_port: int = EPMD_PORT

    async def call(self, spec: ProbeSpec) -> bytes:
        """Run ``spec.module:spec.function(Args)`` on ``spec.node`` through ``rex``.

        A fresh connection is opened for every call and always closed before
        returning. The result is the encoded reply term, version byte included.
        """
        try:
            conn = await DistConnection.open(
                self.local_node,
                spec.node,
                spec.cookie,
                epmd_port=self.epmd_port,
                timeout_sec=self.timeout_sec,
            )
        except RpcConnectError:
            raise
        except Exception as e:
            raise RpcConnectError("failed to connect to node", {"node": spec.node}, cause=e)

        try:
            me = conn.make_pid()
            request = (
                Atom("call"),
                Atom(spec.module),
                Atom(spec.function),
                build_args(spec.argument),
                Atom("user"),
            )
            await conn.send_reg(me, REX, (me, request))
            while True:
                _control, message = await conn.recv()
                reply = split_rex_reply(message)
                if reply is not None:
                    break
                logger.debug("skipping unrelated message from %s", spec.node)
        except Exception as e:
            raise RpcCallError(
                "RPC call failed",
                {"node": spec.node, "mfa": f"{spec.module}:{spec.function}"},
                cause=e,
            )
        finally:
            await conn.close()

        if is_badrpc(reply):
            raise RpcCallError("remote call returned badrpc", {"node": spec.node, "function": spec.function})
        return reply
