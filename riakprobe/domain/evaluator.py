from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Tuple

from riakprobe.core.exceptions import DecodeError
from riakprobe.erlang.etf import ATOM_TAGS, LIST_TAGS, TUPLE_TAGS, Atom, ImproperList, TermDecoder

logger = logging.getLogger(__name__)


class ProbeResult(IntEnum):
    MATCHED = 1
    NOT_MATCHED = -1


class ReplyShape(Enum):
    LIST = "list"
    TUPLE = "tuple"
    ATOM = "atom"


@dataclass(frozen=True)
class Reply:
    shape: ReplyShape
    elements: Tuple[Any, ...]

    @property
    def arity(self) -> int:
        return len(self.elements)

    def element(self, position: int) -> Any:
        if not 0 <= position < len(self.elements):
            raise DecodeError(
                "read past end of reply",
                {"shape": self.shape.value, "arity": self.arity, "position": position},
            )
        return self.elements[position]


def decode_reply(encoded: bytes) -> Reply:
    """Decide the reply shape from its header, then decode the elements."""
    decoder = TermDecoder(encoded)
    decoder.decode_version()
    tag, _ = decoder.peek_type()
    if tag in LIST_TAGS:
        term = decoder.decode_term()
        if isinstance(term, ImproperList):
            return Reply(ReplyShape.LIST, tuple(term.elements))
        return Reply(ReplyShape.LIST, tuple(term))
    if tag in TUPLE_TAGS:
        return Reply(ReplyShape.TUPLE, decoder.decode_term())
    if tag in ATOM_TAGS:
        return Reply(ReplyShape.ATOM, (decoder.decode_atom(),))
    raise DecodeError("reply is neither a list, a tuple nor an atom", {"tag": tag})


def scan(reply: Reply, match_window: int, expected_atom: str) -> ProbeResult:
    count = reply.arity if match_window == 0 else match_window
    for position in range(count):
        element = reply.element(position)
        if isinstance(element, Atom) and element == expected_atom:
            return ProbeResult.MATCHED
    return ProbeResult.NOT_MATCHED


def evaluate(encoded_reply: bytes, match_window: int, expected_atom: str) -> ProbeResult:
    """Check whether ``expected_atom`` shows up in the first ``match_window``
    positions of the reply (all positions when the window is 0).

    An empty ``expected_atom`` skips the match test: a list, tuple or atom
    reply counts as a match once its first ``match_window`` positions exist.
    Decode problems, including a window longer than the reply, yield
    NOT_MATCHED.
    """
    try:
        reply = decode_reply(encoded_reply)
        if not expected_atom:
            for position in range(match_window):
                reply.element(position)
            return ProbeResult.MATCHED
        return scan(reply, match_window, expected_atom)
    except DecodeError as e:
        logger.debug("reply did not decode: %s", e)
        return ProbeResult.NOT_MATCHED
