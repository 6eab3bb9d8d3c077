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

from typing import Any, Dict, Optional


class RiakProbeError(Exception):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, cause: Optional[Exception] = None):
        super().__init__(message)
        self.context = context or {}
        self.cause = cause

    def __str__(self) -> str:
        msg = super().__str__()
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg += f" (context: {ctx_str})"
        if self.cause:
            msg += f" (caused by: {self.cause})"
        return msg


class ConfigurationError(RiakProbeError):
    pass


class ValidationError(RiakProbeError):
    pass


class TransportError(RiakProbeError):
    """HTTP stats fetch failed, or no URL was configured."""


class RpcError(RiakProbeError):
    pass


class RpcConnectError(RpcError):
    """EPMD lookup, socket connect or distribution handshake failed."""


class RpcCallError(RpcError):
    """The remote call itself failed or answered {badrpc, Reason}."""


class DecodeError(RpcError):
    """Malformed or short external term data."""
