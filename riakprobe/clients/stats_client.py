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

from dataclasses import dataclass
from typing import Optional

import httpx

from riakprobe.core.exceptions import TransportError
from riakprobe.domain.stats_parser import DEFAULT_BUFFER_BYTES, FetchBuffer
from riakprobe.version import user_agent

MAX_REDIRECTS = 50


@dataclass
class StatsClient:
    timeout_sec: float = 5.0
    buffer_bytes: int = DEFAULT_BUFFER_BYTES
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_sec,
            headers={"Accept": "text/plain", "User-Agent": user_agent()},
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            transport=self.transport,
        )

    async def fetch(self, url: Optional[str]) -> bytes:
        """GET ``url`` and return at most ``buffer_bytes`` of its body."""
        if not url:
            raise TransportError("stats URL is not configured")
        try:
            client = self._build_client()
        except Exception as e:
            raise TransportError("failed to initialise HTTP client", {"url": url}, cause=e)

        buffer = FetchBuffer(self.buffer_bytes)
        try:
            async with client:
                async with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    async for chunk in resp.aiter_bytes():
                        buffer.append(chunk)
                        if buffer.full:
                            break
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError("stats fetch failed", {"url": url}, cause=e)
        return buffer.getvalue()
