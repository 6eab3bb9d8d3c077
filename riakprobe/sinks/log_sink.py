"""
Sink that writes samples to the log, for dry runs and `--once`
"""

import logging

from riakprobe.domain.metrics import MetricSample

from .base import MetricSink, SinkType


class LogSink(MetricSink):

    def __init__(self, level: int = logging.INFO):
        super().__init__()
        self.level = level

    @property
    def sink_type(self) -> SinkType:
        return SinkType.LOG

    def submit(self, sample: MetricSample) -> None:
        self.submitted += 1
        self.logger.log(self.level, "%s/%s = %s", sample.family, sample.instance or "-", sample.value)
