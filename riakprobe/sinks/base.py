"""
Base class and types for metric sinks
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any
import logging

from riakprobe.domain.metrics import MetricSample

logger = logging.getLogger(__name__)


class SinkType(Enum):
    """Available sink types"""
    PROMETHEUS = "prometheus"
    LOG = "log"

    @classmethod
    def from_string(cls, value: str) -> 'SinkType':
        """Create from string value"""
        value = value.lower().strip()
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Invalid sink type: {value}")


class MetricSink(ABC):
    """Receives every sample the probe emits"""

    def __init__(self):
        self.is_running = False
        self.submitted = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def submit(self, sample: MetricSample) -> None:
        """Accept one sample; no response is expected"""
        pass

    @property
    @abstractmethod
    def sink_type(self) -> SinkType:
        pass

    async def start(self) -> bool:
        self.is_running = True
        return True

    async def stop(self) -> bool:
        self.is_running = False
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "type": self.sink_type.value,
            "running": self.is_running,
            "submitted": self.submitted,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(running={self.is_running}, submitted={self.submitted})"
