"""
Metric sinks
Where samples go once a stats line or a probe has produced them

Usage:
    from riakprobe.sinks import create_sink, SinkType

    sink = create_sink(SinkType.PROMETHEUS, port=9198)
    await sink.start()
    sink.submit(sample)
    await sink.stop()
"""

from typing import Optional, Union

from .base import MetricSink, SinkType
from .log_sink import LogSink
from .prometheus import PrometheusSink


def create_sink(
    sink_type: Optional[Union[SinkType, str]] = None,
    port: int = 9198,
    host: str = "0.0.0.0",
) -> MetricSink:
    """
    Create a sink instance

    Args:
        sink_type: SinkType or its string value (default: prometheus)
        port: Port for the Prometheus scrape endpoint
        host: Address to bind the scrape endpoint to

    Returns:
        MetricSink instance
    """
    if sink_type is None:
        sink_type = SinkType.PROMETHEUS
    elif isinstance(sink_type, str):
        sink_type = SinkType.from_string(sink_type)

    if sink_type == SinkType.PROMETHEUS:
        return PrometheusSink(port=port, host=host)
    if sink_type == SinkType.LOG:
        return LogSink()
    raise ValueError(f"Unknown sink type: {sink_type}")


__all__ = [
    "MetricSink",
    "SinkType",
    "LogSink",
    "PrometheusSink",
    "create_sink",
]
