from __future__ import annotations

import time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from redis_operator.core.models import MemberConfig

SLOT_COUNT = 16384

SlotRange = Tuple[int, int]


class NodeRole(str, Enum):
    """Role of a member in the cluster."""

    LEADER = "leader"
    REPLICA = "replica"


class NodeHealth(str, Enum):
    """Health marker of a member as seen by the operator."""

    OK = "OK"
    UNREACHABLE = "Unreachable"
    UNKNOWN = "Unknown"


def count_slots(ranges: List[SlotRange]) -> int:
    return sum(end - start + 1 for start, end in ranges)


def expand_slots(ranges: List[SlotRange]) -> List[int]:
    slots: List[int] = []
    for start, end in ranges:
        slots.extend(range(start, end + 1))
    return slots


def compress_slots(slots: List[int]) -> List[SlotRange]:
    """Collapse slot numbers into sorted inclusive ranges."""
    ranges: List[SlotRange] = []
    for slot in sorted(set(slots)):
        if ranges and ranges[-1][1] == slot - 1:
            ranges[-1] = (ranges[-1][0], slot)
        else:
            ranges.append((slot, slot))
    return ranges


def split_slot_space(parts: int) -> List[SlotRange]:
    """Split the full slot space into `parts` contiguous ranges of near-equal size."""
    if parts < 1:
        raise ValueError("parts must be >= 1")
    base, extra = divmod(SLOT_COUNT, parts)
    ranges: List[SlotRange] = []
    start = 0
    for index in range(parts):
        size = base + (1 if index < extra else 0)
        ranges.append((start, start + size - 1))
        start += size
    return ranges


class BlueprintEntry(BaseModel):
    """Intended state of one logical node; the cluster's memory across ticks."""

    model_config = ConfigDict(extra="forbid")

    name: str
    role: NodeRole
    parent: Optional[str] = None
    health: NodeHealth = NodeHealth.UNKNOWN
    missed_probes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def parent_matches_role(self) -> "BlueprintEntry":
        if self.role == NodeRole.REPLICA and not self.parent:
            raise ValueError(f"Replica '{self.name}' must name its parent leader")
        if self.role == NodeRole.LEADER and self.parent:
            raise ValueError(f"Leader '{self.name}' cannot have a parent")
        return self


class ClusterNodeView(BaseModel):
    """One row of a node's cluster membership table."""

    node_id: str
    address: str
    role: NodeRole
    leader_id: Optional[str] = None
    slots: List[SlotRange] = Field(default_factory=list)
    failed: bool = False
    myself: bool = False


class NodeTopology(BaseModel):
    """A node's answer to a topology query: itself plus the peers it knows."""

    myself: ClusterNodeView
    peers: List[ClusterNodeView] = Field(default_factory=list)

    @property
    def node_id(self) -> str:
        return self.myself.node_id

    @property
    def role(self) -> NodeRole:
        return self.myself.role

    @property
    def slot_count(self) -> int:
        return count_slots(self.myself.slots)

    def all_nodes(self) -> List[ClusterNodeView]:
        return [self.myself, *self.peers]

    def find(self, node_id: str) -> Optional[ClusterNodeView]:
        for view in self.all_nodes():
            if view.node_id == node_id:
                return view
        return None


class TopologyNode(BaseModel):
    """Observed facts about one logical node for a single tick."""

    name: str
    health: NodeHealth
    address: Optional[str] = None
    node_id: Optional[str] = None
    role: Optional[NodeRole] = None
    leader_id: Optional[str] = None
    slots: List[SlotRange] = Field(default_factory=list)
    peers: List[str] = Field(default_factory=list)
    config: Optional[MemberConfig] = None
    error: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return self.health == NodeHealth.OK

    @property
    def slot_count(self) -> int:
        return count_slots(self.slots)


class TopologySnapshot(BaseModel):
    """Point-in-time view of the live cluster, rebuilt every tick."""

    nodes: Dict[str, TopologyNode] = Field(default_factory=dict)
    unexpected: List[str] = Field(default_factory=list)
    taken_at: float = Field(default_factory=time.time)

    def get(self, name: str) -> Optional[TopologyNode]:
        return self.nodes.get(name)

    def is_ok(self, name: str) -> bool:
        node = self.nodes.get(name)
        return node is not None and node.is_ok

    def healthy(self) -> List[TopologyNode]:
        return [node for node in self.nodes.values() if node.is_ok]

    def healthy_leaders(self) -> List[TopologyNode]:
        return [node for node in self.healthy() if node.role == NodeRole.LEADER]

    def node_by_id(self, node_id: str) -> Optional[TopologyNode]:
        for node in self.nodes.values():
            if node.node_id == node_id:
                return node
        return None
