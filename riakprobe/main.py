from __future__ import annotations

import argparse
import asyncio

from riakprobe.core.app import App
from riakprobe.core.logging import setup_logging
from riakprobe.core.singleton import pidfile_lock
from riakprobe.domain.config import load_config
from riakprobe.sinks import LogSink


def main(argv=None):
    parser = argparse.ArgumentParser(prog="riak-probe", description="Sample Riak node health")
    parser.add_argument("--once", action="store_true", help="run a single tick, log the samples and exit")
    args = parser.parse_args(argv)

    cfg = load_config()
    setup_logging(cfg.log_level)
    with pidfile_lock(cfg.lock_file):
        if args.once:
            asyncio.run(App(cfg, sink=LogSink()).run_once())
        else:
            try:
                asyncio.run(App(cfg).run())
            except KeyboardInterrupt:
                pass


if __name__ == "__main__":
    main()
