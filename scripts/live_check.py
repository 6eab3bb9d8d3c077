import os
import asyncio

from riakprobe.core.app import App
from riakprobe.domain.config import load_config
from riakprobe.domain.metrics import MetricSample
from riakprobe.sinks import MetricSink, SinkType


class PrintSink(MetricSink):
    @property
    def sink_type(self) -> SinkType:
        return SinkType.LOG

    def submit(self, sample: MetricSample) -> None:
        self.submitted += 1
        print(f"{sample.family:<18} {sample.instance:<32} {sample.value}")


async def main():
    cfg = load_config()
    emitted = await App(cfg, sink=PrintSink()).run_once()
    print('LIVE_CHECK_OK' if emitted else 'LIVE_CHECK_EMPTY', emitted)


if __name__ == '__main__':
    os.environ.setdefault('ENV_FILE', '.env')
    asyncio.run(main())
