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
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

# httpx logs every stats request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def resolve_level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or "INFO").strip().upper()
    return getattr(logging, name) if name in LOG_LEVELS else logging.INFO


def setup_logging(level: Union[str, int, None] = None) -> logging.Logger:
    """Point the root logger at ``level`` and return the ``riakprobe`` logger.

    The handler is installed on the first call only; later calls just move the
    level, so the configured ``LOG_LEVEL`` wins over an early default. HTTP
    client request lines stay at WARNING unless DEBUG is asked for.
    """
    numeric = resolve_level(level)
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(numeric)
    else:
        logging.basicConfig(level=numeric, format=LOG_FORMAT)

    chatty_level = numeric if numeric <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
    return logging.getLogger("riakprobe")
