from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from redis_operator.core.models import ClusterDeclaration
from redis_operator.core.topology import (
    SLOT_COUNT,
    BlueprintEntry,
    ClusterNodeView,
    NodeRole,
    SlotRange,
    TopologyNode,
    TopologySnapshot,
    compress_slots,
)


class ScaleKind(str, Enum):
    """Direction of a required scale operation."""

    NONE = "None"
    SCALE_UP = "ScaleUp"
    SCALE_DOWN = "ScaleDown"


class ScaleDecision(BaseModel):
    """Derived scale decision; never stored."""

    model_config = ConfigDict(frozen=True)

    kind: ScaleKind = ScaleKind.NONE
    delta: int = Field(default=0, ge=0)

    @property
    def required(self) -> bool:
        return self.kind != ScaleKind.NONE


class SlotCoverage(BaseModel):
    """Gaps and doubly-owned slots across a set of leaders."""

    gaps: List[SlotRange] = Field(default_factory=list)
    overlaps: List[SlotRange] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.gaps and not self.overlaps


def slot_coverage(leaders: Iterable[Union[TopologyNode, ClusterNodeView]]) -> SlotCoverage:
    """Check that the leaders' slot ranges cover the full slot space exactly once."""
    owners = [0] * SLOT_COUNT
    for leader in leaders:
        for start, end in leader.slots:
            for slot in range(max(start, 0), min(end, SLOT_COUNT - 1) + 1):
                owners[slot] += 1

    gaps = [slot for slot, count in enumerate(owners) if count == 0]
    overlaps = [slot for slot, count in enumerate(owners) if count > 1]
    return SlotCoverage(gaps=compress_slots(gaps), overlaps=compress_slots(overlaps))


def completeness_problems(
    declaration: ClusterDeclaration,
    snapshot: TopologySnapshot,
    blueprint: List[BlueprintEntry],
) -> List[str]:
    """List every reason the cluster is not complete; empty means complete."""
    problems: List[str] = []
    entries: Dict[str, BlueprintEntry] = {entry.name: entry for entry in blueprint}

    for entry in blueprint:
        node = snapshot.get(entry.name)
        if node is None or not node.is_ok:
            health = "missing" if node is None else node.health.value
            problems.append(f"{entry.name} is {health}")
            continue
        if node.role != entry.role:
            reported = node.role.value if node.role else "unknown"
            problems.append(f"{entry.name} reports role {reported} but should be {entry.role.value}")

    for entry in blueprint:
        if entry.role != NodeRole.LEADER:
            continue
        leader = snapshot.get(entry.name)
        if leader is None or not leader.is_ok or leader.node_id is None:
            continue
        attached = [
            node
            for node in snapshot.healthy()
            if node.role == NodeRole.REPLICA and node.leader_id == leader.node_id
        ]
        if len(attached) != declaration.replicas_per_leader:
            problems.append(
                f"{entry.name} has {len(attached)} healthy replicas, expected {declaration.replicas_per_leader}"
            )

    for entry in blueprint:
        if entry.role != NodeRole.REPLICA:
            continue
        parent_entry = entries.get(entry.parent or "")
        if parent_entry is None or parent_entry.role != NodeRole.LEADER:
            problems.append(f"{entry.name} has no leader entry '{entry.parent}' in the blueprint")
            continue
        replica = snapshot.get(entry.name)
        parent = snapshot.get(parent_entry.name)
        if replica is None or parent is None or not replica.is_ok or not parent.is_ok:
            continue
        if replica.role == NodeRole.REPLICA and replica.leader_id != parent.node_id:
            problems.append(f"{entry.name} does not replicate {parent_entry.name}")

    coverage = slot_coverage(snapshot.healthy_leaders())
    if coverage.gaps:
        problems.append(f"slots without owner: {_format_ranges(coverage.gaps)}")
    if coverage.overlaps:
        problems.append(f"slots with several owners: {_format_ranges(coverage.overlaps)}")

    return problems


def is_complete(
    declaration: ClusterDeclaration,
    snapshot: TopologySnapshot,
    blueprint: List[BlueprintEntry],
) -> bool:
    return not completeness_problems(declaration, snapshot, blueprint)


def stale_members(declaration: ClusterDeclaration, snapshot: TopologySnapshot) -> List[str]:
    """Names of healthy members whose running configuration differs from the declaration."""
    desired = declaration.desired_member_config()
    return [node.name for node in snapshot.healthy() if node.config != desired]


def is_up_to_date(declaration: ClusterDeclaration, snapshot: TopologySnapshot) -> bool:
    return not stale_members(declaration, snapshot)


def observed_leader_count(snapshot: TopologySnapshot) -> int:
    return len({node.node_id or node.name for node in snapshot.healthy_leaders()})


def scale_required(declaration: ClusterDeclaration, snapshot: TopologySnapshot) -> ScaleDecision:
    """Compare declared leader count with distinct healthy leaders observed."""
    observed = observed_leader_count(snapshot)
    declared = declaration.leader_count
    if observed < declared:
        return ScaleDecision(kind=ScaleKind.SCALE_UP, delta=declared - observed)
    if observed > declared:
        return ScaleDecision(kind=ScaleKind.SCALE_DOWN, delta=observed - declared)
    return ScaleDecision()


def lost_nodes(
    blueprint: List[BlueprintEntry],
    snapshot: TopologySnapshot,
    threshold: int = 2,
) -> Set[str]:
    """
    Blueprint entries not OK in this snapshot that have missed at least `threshold`
    consecutive probes (the current tick included).
    """
    return {
        entry.name
        for entry in blueprint
        if not snapshot.is_ok(entry.name) and entry.missed_probes >= threshold
    }


def _format_ranges(ranges: List[Tuple[int, int]]) -> str:
    shown = ", ".join(f"{start}-{end}" if start != end else str(start) for start, end in ranges[:5])
    if len(ranges) > 5:
        shown += f" (+{len(ranges) - 5} more)"
    return shown
