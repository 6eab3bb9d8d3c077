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

import errno
import fcntl
import os
from contextlib import contextmanager
from typing import Iterator

from riakprobe.core.exceptions import RiakProbeError


def _read_holder(fd: int) -> str:
    os.lseek(fd, 0, os.SEEK_SET)
    return os.read(fd, 32).decode("ascii", errors="replace").strip() or "unknown"


@contextmanager
def pidfile_lock(path: str) -> Iterator[int]:
    """Hold an advisory lock on ``path`` while the block runs; yields our pid.

    The file is opened without truncating it, so a refused start can name
    the pid of the running instance. Two instances sampling one node would
    double every sample.
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno not in (errno.EACCES, errno.EAGAIN):
                raise
            raise RiakProbeError(
                "Another riak-probe instance is already running",
                {"lock_file": path, "pid": _read_holder(fd)},
                cause=exc,
            ) from exc

        pid = os.getpid()
        os.ftruncate(fd, 0)
        os.pwrite(fd, str(pid).encode("ascii"), 0)
        try:
            yield pid
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
    finally:
        os.close(fd)
