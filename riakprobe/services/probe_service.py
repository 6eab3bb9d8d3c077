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

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from riakprobe.clients.rpc_client import RpcClient
from riakprobe.clients.stats_client import StatsClient
from riakprobe.core.exceptions import RpcError, TransportError
from riakprobe.domain.config import Config
from riakprobe.domain.evaluator import evaluate
from riakprobe.domain.metrics import CLUSTER_PROBE, NODE_STATS, REPL_STATS, WHITELISTS, MetricSample
from riakprobe.domain.probes import ProbeSpec, default_probes
from riakprobe.domain.stats_parser import parse_stats
from riakprobe.sinks import MetricSink


@dataclass
class ProbeService:
    cfg: Config
    stats_client: StatsClient
    rpc_client: RpcClient
    sink: MetricSink
    probes: List[ProbeSpec] = field(default_factory=list)
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("riakprobe.probe"))

    def __post_init__(self):
        if not self.probes:
            self.probes = default_probes(self.cfg.riak_node, self.cfg.riak_cookie)
        if self.cfg.check_repl:
            self.log.info("CheckRepl=%s is reserved and has no effect", self.cfg.check_repl)

    async def _collect_stats(self, family: str, url: Optional[str]) -> int:
        try:
            body = await self.stats_client.fetch(url)
        except TransportError as e:
            self.log.warning("%s fetch failed: %s", family, e)
            return 0
        samples = parse_stats(body, WHITELISTS[family])
        for sample in samples:
            self.sink.submit(sample)
        self.log.debug("%s: %d samples from %d bytes", family, len(samples), len(body))
        return len(samples)

    async def _run_probe(self, spec: ProbeSpec) -> int:
        try:
            reply = await self.rpc_client.call(spec)
        except RpcError as e:
            self.log.error("probe %s:%s failed: %s", spec.module, spec.function, e)
            return 0
        result = evaluate(reply, spec.match_window, spec.expected_atom)
        self.sink.submit(MetricSample(CLUSTER_PROBE, spec.function, int(result)))
        return 1

    async def run_tick(self) -> int:
        """Sample both stats endpoints and run every probe once.

        Steps run one after another and a failing step never stops the ones
        after it. Returns how many samples reached the sink.
        """
        emitted = 0
        emitted += await self._collect_stats(NODE_STATS, self.cfg.stats_url)
        emitted += await self._collect_stats(REPL_STATS, self.cfg.repl_url)
        for spec in self.probes:
            emitted += await self._run_probe(spec)
        return emitted

    async def run_loop(self):
        while True:
            try:
                emitted = await self.run_tick()
                self.log.debug("tick done, %d samples", emitted)
            except Exception:
                self.log.warning("probe tick error", exc_info=True)
            await asyncio.sleep(self.cfg.sample_interval_sec)
