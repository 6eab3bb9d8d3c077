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
from typing import Any, Dict, Optional

from riakprobe.clients.rpc_client import RpcClient
from riakprobe.clients.stats_client import StatsClient
from riakprobe.core.logging import setup_logging
from riakprobe.domain.config import Config
from riakprobe.services.probe_service import ProbeService
from riakprobe.sinks import MetricSink, create_sink
from riakprobe.version import get_version


@dataclass
class AppContext:
    cfg: Config
    sink: MetricSink
    clients: Dict[str, Any]
    version: str


class App:
    def __init__(self, cfg: Config, sink: Optional[MetricSink] = None):
        self.cfg = cfg
        self.log = setup_logging(cfg.log_level)
        self.version = get_version()
        self.log.info("riak-probe version: %s", self.version)

        if sink is None:
            sink = create_sink(cfg.sink, port=cfg.metrics_port, host=cfg.metrics_host)

        self.ctx = AppContext(cfg=cfg, sink=sink, clients={}, version=self.version)
        self.ctx.clients["stats"] = StatsClient(
            timeout_sec=cfg.http_timeout_sec, buffer_bytes=cfg.stats_buffer_bytes
        )
        self.ctx.clients["rpc"] = RpcClient(
            local_node=cfg.local_node, timeout_sec=cfg.rpc_timeout_sec, epmd_port=cfg.epmd_port
        )

        self.service = ProbeService(
            cfg=cfg,
            stats_client=self.ctx.clients["stats"],
            rpc_client=self.ctx.clients["rpc"],
            sink=sink,
        )

    async def run_once(self) -> int:
        async with self.ctx.sink:
            emitted = await self.service.run_tick()
        self.log.info("Single tick emitted %d samples", emitted)
        return emitted

    async def run(self):
        sink = self.ctx.sink
        if not await sink.start():
            self.log.warning("Sink %s failed to start; samples are only counted", sink.sink_type.value)
        self.log.info("Probing %s every %ss", self.cfg.riak_node, self.cfg.sample_interval_sec)
        try:
            await self.service.run_loop()
        finally:
            await sink.stop()
            self.log.info("Stopped after %d samples", sink.submitted)
