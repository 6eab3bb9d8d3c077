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

import os
from dataclasses import dataclass
from typing import Optional

from riakprobe.core.exceptions import ConfigurationError, ValidationError
from riakprobe.core.logging import LOG_LEVELS
from riakprobe.domain.probes import DEFAULT_COOKIE, DEFAULT_NODE
from riakprobe.domain.stats_parser import DEFAULT_BUFFER_BYTES
from riakprobe.sinks import SinkType


def _load_dotenv(path: str) -> dict:
    data: dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip().strip("'\"")
                data[k] = v
    except FileNotFoundError:
        pass
    return data


def _get(env: dict, name: str, default: Optional[str] = None) -> Optional[str]:
    # Support lowercase and uppercase keys
    return os.environ.get(name) or os.environ.get(name.upper()) or env.get(name) or env.get(name.upper()) or default


def _get_int(env: dict, name: str, default: int) -> int:
    val = _get(env, name)
    if val is None:
        return default
    try:
        return int(val)
    except Exception:
        return default


def _get_float(env: dict, name: str, default: float) -> float:
    val = _get(env, name)
    if val is None:
        return default
    try:
        return float(val)
    except Exception:
        return default


@dataclass
class Config:
    stats_url: Optional[str] = None
    repl_url: Optional[str] = None
    check_repl: Optional[str] = None  # reserved, stored only

    riak_node: str = DEFAULT_NODE
    riak_cookie: str = DEFAULT_COOKIE
    local_node: str = "riak_probe@127.0.0.1"
    epmd_port: int = 4369

    sample_interval_sec: float = 10
    http_timeout_sec: float = 5
    rpc_timeout_sec: float = 5
    stats_buffer_bytes: int = DEFAULT_BUFFER_BYTES

    sink: str = SinkType.PROMETHEUS.value
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 9198

    lock_file: str = "data/riak-probe.pid"
    log_level: str = "INFO"

    def __post_init__(self):
        self._validate()

    def _validate(self):
        errors = []

        if self.sample_interval_sec <= 0:
            errors.append("sample_interval_sec must be positive")

        if self.http_timeout_sec <= 0:
            errors.append("http_timeout_sec must be positive")

        if self.rpc_timeout_sec <= 0:
            errors.append("rpc_timeout_sec must be positive")

        if self.stats_buffer_bytes <= 0:
            errors.append("stats_buffer_bytes must be positive")

        if not 0 < self.epmd_port < 65536:
            errors.append("epmd_port must be a TCP port")

        if not 0 <= self.metrics_port < 65536:
            errors.append("metrics_port must be a TCP port")

        for field_name in ("riak_node", "local_node"):
            alive, sep, host = getattr(self, field_name).partition("@")
            if not (alive and sep and host):
                errors.append(f"{field_name} must look like name@host")

        if not self.riak_cookie:
            errors.append("riak_cookie is required")

        try:
            SinkType.from_string(self.sink)
        except ValueError:
            errors.append(f"sink must be one of: {', '.join(t.value for t in SinkType)}")

        if str(self.log_level).strip().upper() not in LOG_LEVELS:
            errors.append(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

        if errors:
            raise ValidationError("Configuration validation failed", {"errors": errors})


# collectd option names of the original plugin
OPTION_KEYS = {
    "statsurl": "stats_url",
    "replurl": "repl_url",
    "checkrepl": "check_repl",
}


def apply_option(cfg: Config, key: str, value: str) -> None:
    """Set a collectd-style option (`StatsURL`, `ReplURL`, `CheckRepl`)."""
    attr = OPTION_KEYS.get(key.strip().lower())
    if attr is None:
        raise ConfigurationError("Unknown configuration key", {"key": key})
    setattr(cfg, attr, value)


def load_config() -> Config:
    try:
        envfile = os.environ.get("ENV_FILE", ".env")
        env = _load_dotenv(envfile)

        cfg = Config(
            stats_url=_get(env, "STATS_URL"),
            repl_url=_get(env, "REPL_URL"),
            check_repl=_get(env, "CHECK_REPL"),
            riak_node=_get(env, "RIAK_NODE", DEFAULT_NODE),
            riak_cookie=_get(env, "RIAK_COOKIE", DEFAULT_COOKIE),
            local_node=_get(env, "LOCAL_NODE", "riak_probe@127.0.0.1"),
            epmd_port=_get_int(env, "EPMD_PORT", 4369),
            sample_interval_sec=_get_float(env, "SAMPLE_INTERVAL_SEC", 10),
            http_timeout_sec=_get_float(env, "HTTP_TIMEOUT_SEC", 5),
            rpc_timeout_sec=_get_float(env, "RPC_TIMEOUT_SEC", 5),
            stats_buffer_bytes=_get_int(env, "STATS_BUFFER_BYTES", DEFAULT_BUFFER_BYTES),
            sink=_get(env, "SINK", SinkType.PROMETHEUS.value),
            metrics_host=_get(env, "METRICS_HOST", "0.0.0.0"),
            metrics_port=_get_int(env, "METRICS_PORT", 9198),
            lock_file=_get(env, "LOCK_FILE", "data/riak-probe.pid"),
            log_level=_get(env, "LOG_LEVEL", "INFO"),
        )

        # The dotenv file may also carry the plugin's own option names.
        for key, value in env.items():
            if key.lower() in OPTION_KEYS:
                apply_option(cfg, key, value)

        return cfg
    except Exception as e:
        if isinstance(e, (ConfigurationError, ValidationError)):
            raise
        raise ConfigurationError("Failed to load configuration", cause=e)
