"""
Prometheus sink: every sample becomes a labelled gauge on a scrape endpoint
"""

import socket
from typing import Any, Dict, Optional

import httpx
from prometheus_client import CollectorRegistry, Gauge, generate_latest, start_http_server

from riakprobe.domain.metrics import MetricSample

from .base import MetricSink, SinkType

METRIC_NAME = "riak_probe_value"


class PrometheusSink(MetricSink):

    def __init__(self, port: int = 9198, host: str = "0.0.0.0", hostname: Optional[str] = None):
        super().__init__()
        self.port = port
        self.host = host
        self.hostname = hostname or socket.gethostname()
        self.registry = CollectorRegistry()
        self.gauge = Gauge(
            METRIC_NAME,
            "Latest Riak stats gauge or control-plane probe result (1 matched, -1 not matched)",
            ["host", "family", "instance"],
            registry=self.registry,
        )
        self._server = None
        self._thread = None

    @property
    def sink_type(self) -> SinkType:
        return SinkType.PROMETHEUS

    @property
    def metrics_url(self) -> str:
        return f"http://127.0.0.1:{self.port}/metrics"

    def submit(self, sample: MetricSample) -> None:
        self.submitted += 1
        self.gauge.labels(self.hostname, sample.family, sample.instance).set(sample.value)

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    async def start(self) -> bool:
        if self.is_running:
            self.logger.warning("Prometheus sink already running")
            return True
        try:
            result = start_http_server(self.port, addr=self.host, registry=self.registry)
        except OSError as e:
            self.logger.error(f"Failed to expose metrics on {self.host}:{self.port}: {e}")
            return False
        # Recent prometheus_client versions hand back the server so it can be shut down.
        if isinstance(result, tuple):
            self._server, self._thread = result
        self.is_running = True
        self.logger.info(f"Metrics exposed on {self.host}:{self.port}")
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            return True
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._thread = None
        self.is_running = False
        self.logger.info("Prometheus sink stopped")
        return True

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({"port": self.port, "host": self.host, "metrics_url": self.metrics_url})
        return status

    async def health_check(self) -> bool:
        """Check that the scrape endpoint answers"""
        if not self.is_running:
            return False
        try:
            async with httpx.AsyncClient(timeout=2) as client:
                response = await client.get(self.metrics_url)
                return response.status_code == 200 and METRIC_NAME in response.text
        except httpx.HTTPError:
            return False
