from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple, Union

NODE_STATS = "node-stats"
REPL_STATS = "replication-stats"
CLUSTER_PROBE = "cluster-probe"


@dataclass(frozen=True)
class MetricSample:
    family: str
    instance: str
    value: Union[int, float]


NODE_STATS_METRICS: Tuple[str, ...] = (
    "node_gets",
    "node_gets_total",
    "node_puts",
    "node_puts_total",
    "vnode_gets",
    "vnode_gets_total",
    "vnode_puts",
    "vnode_puts_total",
    "read_repairs",
    "read_repairs_total",
    "coord_redirs_total",
    "node_get_fsm_time_mean",
    "node_get_fsm_time_median",
    "node_get_fsm_time_95",
    "node_get_fsm_time_100",
    "node_put_fsm_time_mean",
    "node_put_fsm_time_median",
    "node_put_fsm_time_95",
    "node_put_fsm_time_100",
    "node_get_fsm_objsize_mean",
    "node_get_fsm_objsize_median",
    "node_get_fsm_objsize_95",
    "node_get_fsm_objsize_100",
    "node_get_fsm_siblings_mean",
    "node_get_fsm_siblings_median",
    "node_get_fsm_siblings_95",
    "node_get_fsm_siblings_100",
    "memory_processes_used",
    "sys_process_count",
    "pbc_connects",
    "pbc_active",
)

REPL_STATS_METRICS: Tuple[str, ...] = (
    "queue_length",
    "queue_byte_size",
    "queue_percentage",
    "dropped_count",
    "local_leader_message_queue_len",
    "local_leader_heap_size",
)


@dataclass(frozen=True)
class Whitelist:
    """Ordered metric names for one endpoint family, with set lookup."""

    family: str
    names: Tuple[str, ...]
    lookup: FrozenSet[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "lookup", frozenset(self.names))

    def __contains__(self, name: object) -> bool:
        return name in self.lookup

    def __len__(self) -> int:
        return len(self.names)


WHITELISTS: Dict[str, Whitelist] = {
    NODE_STATS: Whitelist(NODE_STATS, NODE_STATS_METRICS),
    REPL_STATS: Whitelist(REPL_STATS, REPL_STATS_METRICS),
}
