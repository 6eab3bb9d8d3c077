from __future__ import annotations

from dataclasses import dataclass
from typing import List

DEFAULT_NODE = "riak@127.0.0.1"
DEFAULT_COOKIE = "riak"


@dataclass(frozen=True)
class ProbeSpec:
    node: str
    cookie: str
    module: str
    function: str
    argument: str = ""
    match_window: int = 1  # 0 scans every element of the reply
    expected_atom: str = ""

    def __post_init__(self):
        if self.match_window < 0:
            raise ValueError("match_window must not be negative")


def default_probes(node: str = DEFAULT_NODE, cookie: str = DEFAULT_COOKIE) -> List[ProbeSpec]:
    """The four control-plane checks run against ``node`` on every tick."""
    return [
        # No atom to find in ring_status; its first three fields must be present.
        ProbeSpec(node, cookie, "riak_core_status", "ring_status", "", 3, ""),
        ProbeSpec(node, cookie, "riak_core_status", "ringready", "", 1, "ok"),
        ProbeSpec(node, cookie, "riak_core_node_watcher", "services", "", 1, "riak_kv"),
        ProbeSpec(node, cookie, "net_adm", "ping", node, 1, "pong"),
    ]
