from __future__ import annotations

import re
from typing import List, Optional, Tuple

from .metrics import MetricSample, Whitelist

DEFAULT_BUFFER_BYTES = 16384
MAX_LINES = 160

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1

_LINE_SPLIT = re.compile(r"[\r\n]+")
_FIELD_SPLIT = re.compile(r"[ \t]+")
_LEADING_INT = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")


class FetchBuffer:
    """Bounded byte buffer for one HTTP response body.

    Bytes that do not fit are dropped silently; ``truncated`` tells whether
    that happened. No byte is held back for a terminator, so a buffer keeps
    exactly ``capacity`` body bytes (16384 by default, one more than a
    NUL-terminated C buffer of the same size).
    """

    def __init__(self, capacity: int = DEFAULT_BUFFER_BYTES):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data = bytearray()
        self.truncated = False

    def __len__(self) -> int:
        return len(self._data)

    @property
    def remaining(self) -> int:
        return self.capacity - len(self._data)

    @property
    def full(self) -> bool:
        return self.remaining == 0

    def append(self, chunk: bytes) -> int:
        take = min(len(chunk), self.remaining)
        if take < len(chunk):
            self.truncated = True
        if take:
            self._data += chunk[:take]
        return take

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def reset(self) -> None:
        self._data.clear()
        self.truncated = False


def split_lines(text: str, max_lines: int = MAX_LINES) -> List[str]:
    lines = [line for line in _LINE_SPLIT.split(text) if line]
    return lines[:max_lines]


def split_fields(line: str) -> Optional[Tuple[str, str]]:
    # Only the first two tokens matter, anything after them is ignored.
    tokens = [token for token in _FIELD_SPLIT.split(line) if token]
    if len(tokens) < 2:
        return None
    return tokens[0], tokens[1]


def normalize_key(token: str) -> str:
    # '"node_gets":' -> 'node_gets'
    return token[1:][:-2]


def normalize_value(token: str) -> str:
    # '42,' -> '42'
    return token[:-1]


def atoll(text: str) -> int:
    match = _LEADING_INT.match(text)
    if match is None:
        return 0
    value = int(match.group(1))
    return max(_INT64_MIN, min(_INT64_MAX, value))


def parse_stats(body: bytes, whitelist: Whitelist, max_lines: int = MAX_LINES) -> List[MetricSample]:
    """Turn a Riak stats dump into gauges for the whitelisted names.

    Lines look like ``"node_gets": 42,``. Malformed lines are never an error:
    short lines are skipped and odd punctuation just yields a mangled name
    (which then misses the whitelist) or a zero value.
    """
    samples: List[MetricSample] = []
    text = body.decode("latin-1")
    for line in split_lines(text, max_lines):
        fields = split_fields(line)
        if fields is None:
            continue
        key = normalize_key(fields[0])
        if key not in whitelist:
            continue
        value = atoll(normalize_value(fields[1]))
        samples.append(MetricSample(family=whitelist.family, instance=key, value=value))
    return samples
