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
Erlang external term format, the subset a distribution RPC client needs.

Decoding maps terms onto Python values:

* atoms -> ``Atom`` (a ``str`` subclass, so ``Atom("ok") == "ok"``)
* tuples -> ``tuple``, proper lists -> ``list``, improper lists -> ``ImproperList``
* ``STRING_EXT`` -> ``list`` of ints (it is a list on the Erlang side)
* integers/bignums -> ``int``, floats -> ``float``, binaries -> ``bytes``
* maps -> ``dict``, pids/ports/refs -> ``Pid``/``Port``/``Reference``

``TermDecoder`` also works incrementally, in the manner of erl_interface's
``ei_get_type``/``ei_decode_*_header``, which the reply evaluator relies on.
"""

from __future__ import annotations

import struct
import zlib
from typing import Any, List, NamedTuple, Tuple

from riakprobe.core.exceptions import DecodeError

VERSION = 131

NEW_FLOAT_EXT = 70
BIT_BINARY_EXT = 77
COMPRESSED = 80
NEW_PID_EXT = 88
NEW_PORT_EXT = 89
NEWER_REFERENCE_EXT = 90
SMALL_INTEGER_EXT = 97
INTEGER_EXT = 98
FLOAT_EXT = 99
ATOM_EXT = 100
REFERENCE_EXT = 101
PORT_EXT = 102
PID_EXT = 103
SMALL_TUPLE_EXT = 104
LARGE_TUPLE_EXT = 105
NIL_EXT = 106
STRING_EXT = 107
LIST_EXT = 108
BINARY_EXT = 109
SMALL_BIG_EXT = 110
LARGE_BIG_EXT = 111
EXPORT_EXT = 113
NEW_REFERENCE_EXT = 114
SMALL_ATOM_EXT = 115
MAP_EXT = 116
ATOM_UTF8_EXT = 118
SMALL_ATOM_UTF8_EXT = 119
V4_PORT_EXT = 120

MAX_DEPTH = 100

ATOM_TAGS = frozenset({ATOM_EXT, SMALL_ATOM_EXT, ATOM_UTF8_EXT, SMALL_ATOM_UTF8_EXT})
LIST_TAGS = frozenset({LIST_EXT, NIL_EXT, STRING_EXT})
TUPLE_TAGS = frozenset({SMALL_TUPLE_EXT, LARGE_TUPLE_EXT})


class Atom(str):
    def __repr__(self) -> str:
        return f"Atom({str.__repr__(self)})"


class Pid(NamedTuple):
    node: Atom
    id: int
    serial: int
    creation: int


class Port(NamedTuple):
    node: Atom
    id: int
    creation: int


class Reference(NamedTuple):
    node: Atom
    creation: int
    ids: Tuple[int, ...]


class ImproperList(NamedTuple):
    elements: List[Any]
    tail: Any


class TermDecoder:
    """Cursor over an encoded term buffer."""

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    @property
    def remaining(self) -> bytes:
        return self.data[self.offset:]

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if size < 0 or end > len(self.data):
            raise DecodeError(
                "unexpected end of term data",
                {"offset": self.offset, "wanted": size, "length": len(self.data)},
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def _unpack(self, fmt: str) -> Tuple[Any, ...]:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))

    def _u8(self) -> int:
        return self._unpack(">B")[0]

    def _u16(self) -> int:
        return self._unpack(">H")[0]

    def _u32(self) -> int:
        return self._unpack(">I")[0]

    def decode_version(self) -> None:
        version = self._u8()
        if version != VERSION:
            raise DecodeError("bad external term version", {"version": version})

    def peek_type(self) -> Tuple[int, int]:
        """Return ``(tag, size)`` of the next term without consuming it."""
        start = self.offset
        try:
            tag = self._u8()
            if tag in (SMALL_TUPLE_EXT, SMALL_ATOM_EXT, SMALL_ATOM_UTF8_EXT, SMALL_BIG_EXT):
                size = self._u8()
            elif tag in (LARGE_TUPLE_EXT, LIST_EXT, BINARY_EXT, LARGE_BIG_EXT, MAP_EXT):
                size = self._u32()
            elif tag in (ATOM_EXT, ATOM_UTF8_EXT, STRING_EXT):
                size = self._u16()
            else:
                size = 0
        finally:
            self.offset = start
        return tag, size

    def decode_tuple_header(self) -> int:
        tag = self._u8()
        if tag == SMALL_TUPLE_EXT:
            return self._u8()
        if tag == LARGE_TUPLE_EXT:
            return self._u32()
        raise DecodeError("expected a tuple", {"tag": tag})

    def decode_list_header(self) -> int:
        tag = self._u8()
        if tag == NIL_EXT:
            return 0
        if tag == LIST_EXT:
            return self._u32()
        raise DecodeError("expected a list", {"tag": tag})

    def _text(self, size: int, encoding: str) -> Atom:
        raw = self._take(size)
        try:
            return Atom(raw.decode(encoding))
        except UnicodeDecodeError as exc:
            raise DecodeError("atom text is not valid " + encoding, {"raw": raw}, cause=exc)

    def decode_atom(self) -> Atom:
        tag = self._u8()
        if tag == ATOM_EXT:
            return self._text(self._u16(), "latin-1")
        if tag == SMALL_ATOM_EXT:
            return self._text(self._u8(), "latin-1")
        if tag == ATOM_UTF8_EXT:
            return self._text(self._u16(), "utf-8")
        if tag == SMALL_ATOM_UTF8_EXT:
            return self._text(self._u8(), "utf-8")
        raise DecodeError("expected an atom", {"tag": tag})

    def decode_term(self) -> Any:
        """Decode the next term; every malformed input surfaces as DecodeError."""
        start = self.offset
        try:
            return self._decode(0)
        except (TypeError, ValueError, struct.error, RecursionError) as exc:
            raise DecodeError("malformed term", {"offset": start}, cause=exc)

    def _decode(self, depth: int) -> Any:
        if depth > MAX_DEPTH:
            raise DecodeError("term nested too deeply", {"offset": self.offset, "limit": MAX_DEPTH})
        tag, _ = self.peek_type()
        if tag in ATOM_TAGS:
            return self.decode_atom()
        if tag in TUPLE_TAGS:
            arity = self.decode_tuple_header()
            return tuple(self._decode(depth + 1) for _ in range(arity))
        if tag == LIST_EXT:
            count = self.decode_list_header()
            elements = [self._decode(depth + 1) for _ in range(count)]
            tail = self._decode(depth + 1)
            if tail == []:
                return elements
            return ImproperList(elements, tail)
        self._u8()
        if tag == NIL_EXT:
            return []
        if tag == STRING_EXT:
            return list(self._take(self._u16()))
        if tag == SMALL_INTEGER_EXT:
            return self._u8()
        if tag == INTEGER_EXT:
            return self._unpack(">i")[0]
        if tag in (SMALL_BIG_EXT, LARGE_BIG_EXT):
            size = self._u8() if tag == SMALL_BIG_EXT else self._u32()
            sign = self._u8()
            value = int.from_bytes(self._take(size), "little")
            return -value if sign else value
        if tag == NEW_FLOAT_EXT:
            return self._unpack(">d")[0]
        if tag == FLOAT_EXT:
            raw = self._take(31).split(b"\x00", 1)[0]
            try:
                return float(raw)
            except ValueError as exc:
                raise DecodeError("bad float", {"raw": raw}, cause=exc)
        if tag == BINARY_EXT:
            return self._take(self._u32())
        if tag == BIT_BINARY_EXT:
            size = self._u32()
            self._u8()
            return self._take(size)
        if tag == MAP_EXT:
            arity = self._u32()
            result = {}
            for _ in range(arity):
                key = self._decode(depth + 1)
                result[_hashable(key)] = self._decode(depth + 1)
            return result
        if tag == PID_EXT:
            node = self.decode_atom()
            ident, serial = self._unpack(">II")
            return Pid(node, ident, serial, self._u8())
        if tag == NEW_PID_EXT:
            node = self.decode_atom()
            ident, serial, creation = self._unpack(">III")
            return Pid(node, ident, serial, creation)
        if tag == PORT_EXT:
            node = self.decode_atom()
            ident = self._u32()
            return Port(node, ident, self._u8())
        if tag == NEW_PORT_EXT:
            node = self.decode_atom()
            ident, creation = self._unpack(">II")
            return Port(node, ident, creation)
        if tag == V4_PORT_EXT:
            node = self.decode_atom()
            ident, creation = self._unpack(">QI")
            return Port(node, ident, creation)
        if tag == REFERENCE_EXT:
            node = self.decode_atom()
            ident = self._u32()
            return Reference(node, self._u8(), (ident,))
        if tag in (NEW_REFERENCE_EXT, NEWER_REFERENCE_EXT):
            count = self._u16()
            node = self.decode_atom()
            creation = self._u8() if tag == NEW_REFERENCE_EXT else self._u32()
            ids = self._unpack(f">{count}I")
            return Reference(node, creation, tuple(ids))
        if tag == EXPORT_EXT:
            return tuple(self._decode(depth + 1) for _ in range(3))
        raise DecodeError("unsupported term tag", {"tag": tag, "offset": self.offset - 1})


def _hashable(value: Any) -> Any:
    # Map keys may hold lists or maps at any depth.
    if isinstance(value, ImproperList):
        return (tuple(_hashable(v) for v in value.elements), _hashable(value.tail))
    if isinstance(value, list) or type(value) is tuple:
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple((_hashable(k), _hashable(v)) for k, v in value.items())
    return value


def binary_to_term(data: bytes) -> Tuple[Any, bytes]:
    """Decode one versioned term; return it with the unconsumed tail."""
    decoder = TermDecoder(data)
    decoder.decode_version()
    tag, _ = decoder.peek_type()
    if tag == COMPRESSED:
        decoder._u8()
        size = decoder._u32()
        try:
            inflater = zlib.decompressobj()
            payload = inflater.decompress(decoder.remaining)
        except zlib.error as exc:
            raise DecodeError("bad compressed term", cause=exc)
        if len(payload) != size:
            raise DecodeError("compressed term size mismatch", {"expected": size, "got": len(payload)})
        inner = TermDecoder(payload)
        return inner.decode_term(), inflater.unused_data
    term = decoder.decode_term()
    return term, decoder.remaining


class TermEncoder:
    """Encodes terms for one peer.

    Nodes that lack big creations get the short pid, port and reference
    forms with an 8-bit creation; nodes that lack UTF-8 atoms get latin-1
    atoms. The defaults suit any OTP 23+ node.
    """

    def __init__(self, utf8_atoms: bool = True, big_creation: bool = True, small_atoms: bool = True):
        self.utf8_atoms = utf8_atoms
        self.big_creation = big_creation
        self.small_atoms = small_atoms

    def encode(self, term: Any) -> bytes:
        out = bytearray([VERSION])
        self._encode(term, out)
        return bytes(out)

    def _atom(self, name: str, out: bytearray) -> None:
        if self.utf8_atoms:
            raw = name.encode("utf-8")
            small, large = SMALL_ATOM_UTF8_EXT, ATOM_UTF8_EXT
        else:
            raw = name.encode("latin-1")
            small, large = SMALL_ATOM_EXT, ATOM_EXT
        if len(raw) < 256 and (self.utf8_atoms or self.small_atoms):
            out += struct.pack(">BB", small, len(raw))
        elif len(raw) < 65536:
            out += struct.pack(">BH", large, len(raw))
        else:
            raise ValueError("atom too long")
        out += raw

    def _encode(self, term: Any, out: bytearray) -> None:
        if isinstance(term, Atom):
            self._atom(term, out)
        elif term is True or term is False:
            self._atom("true" if term else "false", out)
        elif term is None:
            self._atom("undefined", out)
        elif isinstance(term, int):
            if 0 <= term < 256:
                out += struct.pack(">BB", SMALL_INTEGER_EXT, term)
            elif -(2 ** 31) <= term < 2 ** 31:
                out += struct.pack(">Bi", INTEGER_EXT, term)
            else:
                magnitude = abs(term)
                raw = magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "little")
                if len(raw) < 256:
                    out += struct.pack(">BBB", SMALL_BIG_EXT, len(raw), 1 if term < 0 else 0)
                else:
                    out += struct.pack(">BIB", LARGE_BIG_EXT, len(raw), 1 if term < 0 else 0)
                out += raw
        elif isinstance(term, float):
            out += struct.pack(">Bd", NEW_FLOAT_EXT, term)
        elif isinstance(term, (bytes, bytearray)):
            out += struct.pack(">BI", BINARY_EXT, len(term))
            out += term
        elif isinstance(term, Pid):
            out += struct.pack(">B", NEW_PID_EXT if self.big_creation else PID_EXT)
            self._atom(term.node, out)
            if self.big_creation:
                out += struct.pack(">III", term.id, term.serial, term.creation)
            else:
                out += struct.pack(">IIB", term.id, term.serial, term.creation & 0x3)
        elif isinstance(term, Port):
            out += struct.pack(">B", NEW_PORT_EXT if self.big_creation else PORT_EXT)
            self._atom(term.node, out)
            if self.big_creation:
                out += struct.pack(">II", term.id, term.creation)
            else:
                out += struct.pack(">IB", term.id, term.creation & 0x3)
        elif isinstance(term, Reference):
            tag = NEWER_REFERENCE_EXT if self.big_creation else NEW_REFERENCE_EXT
            out += struct.pack(">BH", tag, len(term.ids))
            self._atom(term.node, out)
            if self.big_creation:
                out += struct.pack(">I", term.creation)
            else:
                out += struct.pack(">B", term.creation & 0x3)
            out += struct.pack(f">{len(term.ids)}I", *term.ids)
        elif isinstance(term, ImproperList):
            out += struct.pack(">BI", LIST_EXT, len(term.elements))
            for element in term.elements:
                self._encode(element, out)
            self._encode(term.tail, out)
        elif isinstance(term, tuple):
            if len(term) < 256:
                out += struct.pack(">BB", SMALL_TUPLE_EXT, len(term))
            else:
                out += struct.pack(">BI", LARGE_TUPLE_EXT, len(term))
            for element in term:
                self._encode(element, out)
        elif isinstance(term, list):
            if term:
                out += struct.pack(">BI", LIST_EXT, len(term))
                for element in term:
                    self._encode(element, out)
            out += struct.pack(">B", NIL_EXT)
        elif isinstance(term, dict):
            out += struct.pack(">BI", MAP_EXT, len(term))
            for key, value in term.items():
                self._encode(key, out)
                self._encode(value, out)
        elif isinstance(term, str):
            raise TypeError("plain str is ambiguous in Erlang terms; use Atom or bytes")
        else:
            raise TypeError(f"cannot encode {type(term).__name__} as an Erlang term")


def term_to_binary(term: Any) -> bytes:
    return TermEncoder().encode(term)
