"""
In-memory simulation of managed Redis members and the cluster bus they form.

`SimulatedPlatform` plays both the process lifecycle provider (through
`SimulatedMemberProvider`, one per instance) and the cluster administration
client. Gossip is instantaneous: a join makes every member of the joined cluster
know the new node at once. A leader that dies with slots hands them to its first
live replica, the way a real cluster fails over automatically.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from redis_operator.core.models import AdminCommandResult, ClusterDeclaration, ClusterResource, MemberConfig
from redis_operator.core.naming import format_address
from redis_operator.core.topology import (
    SLOT_COUNT,
    ClusterNodeView,
    NodeHealth,
    NodeRole,
    NodeTopology,
    SlotRange,
    compress_slots,
    expand_slots,
)
from redis_operator.providers.protocols import MemberHandle
from redis_operator.utils.diagnostics import (
    ConflictError,
    DeclarationNotFoundError,
    TopologyInconsistencyError,
    TransientError,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedNode:
    instance: str
    name: str
    role_label: NodeRole
    address: str
    node_id: str
    config: MemberConfig
    alive: bool = True
    deleted: bool = False
    leader_id: Optional[str] = None
    slots: Set[int] = field(default_factory=set)
    known: Set[str] = field(default_factory=set)

    @property
    def is_leader(self) -> bool:
        return self.leader_id is None

    def handle(self) -> MemberHandle:
        return MemberHandle(
            name=self.name,
            role=self.role_label,
            address=self.address,
            config=self.config,
            phase="Running" if self.alive else "Failed",
        )


class SimulatedPlatform:
    def __init__(self, port: int = 6379, auto_failover: bool = True) -> None:
        self.port = port
        self.auto_failover = auto_failover
        self.faults: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.RLock()
        self._sequence = 0
        self._members: Dict[Tuple[str, str], SimulatedNode] = {}
        self._by_address: Dict[str, SimulatedNode] = {}
        self._by_id: Dict[str, SimulatedNode] = {}

    def members(self, instance: str) -> "SimulatedMemberProvider":
        return SimulatedMemberProvider(self, instance)

    # Test and demo controls

    def node(self, instance: str, name: str) -> Optional[SimulatedNode]:
        with self._lock:
            return self._members.get((instance, name))

    def nodes(self, instance: str) -> List[SimulatedNode]:
        with self._lock:
            return [node for (owner, _), node in sorted(self._members.items()) if owner == instance]

    def kill(self, instance: str, name: str) -> None:
        """Crash the process behind `name`; its pod (and address) stays."""
        with self._lock:
            node = self._require_member(instance, name)
            node.alive = False
            self._after_failure(node)

    def revive(self, instance: str, name: str) -> None:
        with self._lock:
            self._require_member(instance, name).alive = True

    def inject_fault(self, command: str) -> None:
        self.faults.add(command)

    def clear_faults(self) -> None:
        self.faults.clear()

    def count_calls(self, command: str) -> int:
        return sum(1 for called, _ in self.calls if called == command)

    # Process lifecycle

    def create_member(self, instance: str, name: str, role: NodeRole, declaration: ClusterDeclaration) -> MemberHandle:
        with self._lock:
            self._check_fault("create_member", name)
            if (instance, name) in self._members:
                raise ConflictError("member already exists", node=name)
            self._sequence += 1
            host = f"10.0.{self._sequence // 250}.{self._sequence % 250 + 1}"
            node = SimulatedNode(
                instance=instance,
                name=name,
                role_label=role,
                address=format_address(host, self.port),
                node_id=secrets.token_hex(20),
                config=declaration.desired_member_config(),
            )
            self._members[(instance, name)] = node
            self._by_address[node.address] = node
            self._by_id[node.node_id] = node
            self.calls.append(("create_member", name))
            return node.handle()

    def delete_member(self, instance: str, name: str) -> None:
        with self._lock:
            node = self._members.pop((instance, name), None)
            if node is None:
                return
            self._by_address.pop(node.address, None)
            node.alive = False
            node.deleted = True
            self.calls.append(("delete_member", name))
            self._after_failure(node)

    def list_members(self, instance: str) -> List[MemberHandle]:
        with self._lock:
            self._check_fault("list_members", instance)
            return [node.handle() for node in self.nodes(instance)]

    def probe_health(self, instance: str, handle: MemberHandle) -> NodeHealth:
        with self._lock:
            node = self._members.get((instance, handle.name))
            if node is None or node.address != handle.address or not node.alive:
                return NodeHealth.UNREACHABLE
            return NodeHealth.OK

    # Cluster administration

    def join(self, target_addr: str, existing_member_addr: str) -> None:
        with self._lock:
            self._check_fault("join", target_addr)
            target = self._live(target_addr)
            existing = self._live(existing_member_addr)
            cluster = {existing.node_id, target.node_id} | existing.known | target.known
            target.known |= cluster - {target.node_id}
            for node_id in cluster:
                peer = self._by_id.get(node_id)
                if peer is not None and peer.alive and peer is not target:
                    peer.known.add(target.node_id)
            self.calls.append(("join", target.name))

    def forget(self, target_addr: str, node_id: str) -> None:
        with self._lock:
            target = self._live(target_addr)
            if node_id == target.node_id:
                raise TopologyInconsistencyError("a node cannot forget itself", node=target.name)
            if node_id == target.leader_id:
                raise TopologyInconsistencyError("a replica cannot forget its leader", node=target.name)
            target.known.discard(node_id)
            self.calls.append(("forget", target.name))

    def assign_replica_of(self, target_addr: str, leader_addr: str) -> None:
        with self._lock:
            self._check_fault("assign_replica_of", target_addr)
            target = self._live(target_addr)
            leader = self._live(leader_addr)
            if target is leader:
                raise TopologyInconsistencyError("a node cannot replicate itself", node=target.name)
            if target.slots:
                raise TopologyInconsistencyError("node owns slots and cannot become a replica", node=target.name)
            if leader.node_id not in target.known:
                raise TransientError(f"unknown node {leader.node_id}", node=target.name)
            if not leader.is_leader:
                raise TopologyInconsistencyError("can only replicate a leader", node=target.name)
            target.leader_id = leader.node_id
            self.calls.append(("assign_replica_of", target.name))

    def query_topology(self, target_addr: str) -> NodeTopology:
        with self._lock:
            self._check_fault("query_topology", target_addr)
            node = self._live(target_addr)
            peers = [self._view(self._by_id[node_id]) for node_id in sorted(node.known) if node_id in self._by_id]
            return NodeTopology(myself=self._view(node, myself=True), peers=peers)

    def add_slots(self, target_addr: str, ranges: List[SlotRange]) -> None:
        with self._lock:
            node = self._live(target_addr)
            if not node.is_leader:
                raise TopologyInconsistencyError("only leaders own slots", node=node.name)
            slots = set(expand_slots(ranges))
            for other in self._cluster_leaders(node):
                if other is not node and other.slots & slots:
                    raise TopologyInconsistencyError("slot is already busy", node=node.name)
            node.slots |= slots
            self.calls.append(("add_slots", node.name))

    def rebalance_slots(self, any_healthy_addr: str) -> AdminCommandResult:
        with self._lock:
            if "rebalance_slots" in self.faults:
                return AdminCommandResult(ok=False, output="simulated rebalance failure")
            leaders = sorted(self._cluster_leaders(self._live(any_healthy_addr)), key=lambda n: (n.instance, n.name))
            total = sum(len(leader.slots) for leader in leaders)
            if not total:
                return AdminCommandResult(ok=False, output="no slots assigned")

            base, extra = divmod(total, len(leaders))
            targets = {leader.node_id: base + (1 if index < extra else 0) for index, leader in enumerate(leaders)}
            pool: List[int] = []
            for leader in leaders:
                surplus = sorted(leader.slots)[targets[leader.node_id]:]
                leader.slots -= set(surplus)
                pool.extend(surplus)
            moved = len(pool)
            for leader in leaders:
                need = targets[leader.node_id] - len(leader.slots)
                if need > 0:
                    leader.slots |= set(pool[:need])
                    pool = pool[need:]
            self.calls.append(("rebalance_slots", any_healthy_addr))
            return AdminCommandResult(ok=True, output=f"Moved {moved} slots across {len(leaders)} leaders")

    def fix_cluster(self, any_healthy_addr: str) -> AdminCommandResult:
        with self._lock:
            if "fix_cluster" in self.faults:
                return AdminCommandResult(ok=False, output="simulated fix failure")
            leaders = sorted(self._cluster_leaders(self._live(any_healthy_addr)), key=lambda n: (n.instance, n.name))
            if not leaders:
                return AdminCommandResult(ok=False, output="no leader to assign slots to")
            owned: Set[int] = set()
            for leader in leaders:
                owned |= leader.slots
            missing = [slot for slot in range(SLOT_COUNT) if slot not in owned]
            for index, slot in enumerate(missing):
                leaders[index % len(leaders)].slots.add(slot)
            self.calls.append(("fix_cluster", any_healthy_addr))
            return AdminCommandResult(ok=True, output=f"Covered {len(missing)} unassigned slots")

    def reshard(self, any_healthy_addr: str, from_node_id: str, to_node_id: str, count: int) -> AdminCommandResult:
        with self._lock:
            if "reshard" in self.faults:
                return AdminCommandResult(ok=False, output="simulated reshard failure")
            self._live(any_healthy_addr)
            source = self._by_id.get(from_node_id)
            target = self._by_id.get(to_node_id)
            if source is None or target is None or not source.alive or not target.alive:
                return AdminCommandResult(ok=False, output="source or target node is not available")
            if not (source.is_leader and target.is_leader):
                return AdminCommandResult(ok=False, output="slots can only move between leaders")
            moving = set(sorted(source.slots)[:count])
            source.slots -= moving
            target.slots |= moving
            self.calls.append(("reshard", source.name))
            return AdminCommandResult(ok=len(moving) == count, output=f"Moved {len(moving)} slots")

    def failover(self, replica_addr: str) -> None:
        with self._lock:
            self._check_fault("failover", replica_addr)
            replica = self._live(replica_addr)
            if replica.is_leader:
                raise TopologyInconsistencyError("node is not a replica", node=replica.name)
            leader = self._by_id.get(replica.leader_id)
            if leader is None:
                raise TopologyInconsistencyError("replica's leader is unknown", node=replica.name)
            self._promote(replica, leader)
            self.calls.append(("failover", replica.name))

    def _view(self, node: SimulatedNode, myself: bool = False) -> ClusterNodeView:
        return ClusterNodeView(
            node_id=node.node_id,
            address=node.address,
            role=NodeRole.LEADER if node.is_leader else NodeRole.REPLICA,
            leader_id=node.leader_id,
            slots=compress_slots(list(node.slots)) if node.is_leader else [],
            failed=not node.alive,
            myself=myself,
        )

    def _cluster_leaders(self, node: SimulatedNode) -> List[SimulatedNode]:
        members = [node] + [self._by_id[node_id] for node_id in node.known if node_id in self._by_id]
        return [member for member in members if member.alive and member.is_leader]

    def _after_failure(self, node: SimulatedNode) -> None:
        if not self.auto_failover or not node.is_leader or not node.slots:
            return
        candidates = sorted(
            (peer for peer in self._by_id.values() if peer.alive and peer.leader_id == node.node_id),
            key=lambda peer: peer.name,
        )
        if candidates:
            logger.debug("Simulated failover of %s to %s", node.name, candidates[0].name)
            self._promote(candidates[0], node)

    def _promote(self, replica: SimulatedNode, leader: SimulatedNode) -> None:
        replica.slots = set(leader.slots)
        leader.slots = set()
        replica.leader_id = None
        for peer in self._by_id.values():
            if peer is not replica and peer.leader_id == leader.node_id:
                peer.leader_id = replica.node_id
        if leader.alive:
            leader.leader_id = replica.node_id

    def _live(self, address: str) -> SimulatedNode:
        node = self._by_address.get(address)
        if node is None or not node.alive:
            raise TransientError(f"connection to {address} refused")
        return node

    def _require_member(self, instance: str, name: str) -> SimulatedNode:
        node = self._members.get((instance, name))
        if node is None:
            raise KeyError(f"{instance}/{name}")
        return node

    def _check_fault(self, command: str, target: str) -> None:
        if command in self.faults:
            raise TransientError(f"simulated {command} failure", node=target)


class SimulatedMemberProvider:
    """Member lifecycle of one cluster instance on a SimulatedPlatform."""

    def __init__(self, platform: SimulatedPlatform, instance: str) -> None:
        self.platform = platform
        self.instance = instance

    def create_member(self, name: str, role: NodeRole, declaration: ClusterDeclaration) -> MemberHandle:
        return self.platform.create_member(self.instance, name, role, declaration)

    def delete_member(self, name: str) -> None:
        self.platform.delete_member(self.instance, name)

    def list_members(self) -> List[MemberHandle]:
        return self.platform.list_members(self.instance)

    def probe_health(self, handle: MemberHandle) -> NodeHealth:
        return self.platform.probe_health(self.instance, handle)

    def wait_until_ready(self, name: str, timeout: float) -> Optional[MemberHandle]:
        node = self.platform.node(self.instance, name)
        if node is None or not node.alive:
            return None
        return node.handle()


class SimulatedDeclarationSource:
    """Cluster declarations and their status fields, kept in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: Dict[str, ClusterResource] = {}
        self.history: Dict[str, List[str]] = {}

    def declare(self, instance: str, declaration: ClusterDeclaration) -> None:
        """Create the instance or replace its declaration, keeping its status."""
        with self._lock:
            current = self._resources.get(instance)
            if current is None:
                self._resources[instance] = ClusterResource(instance=instance, declaration=declaration)
            else:
                self._resources[instance] = current.model_copy(update={"declaration": declaration})

    def remove(self, instance: str) -> None:
        with self._lock:
            self._resources.pop(instance, None)

    def fetch(self, instance: str) -> Optional[ClusterResource]:
        with self._lock:
            resource = self._resources.get(instance)
            return None if resource is None else resource.model_copy(deep=True)

    def update_status(self, instance: str, state: str, report: str) -> None:
        with self._lock:
            resource = self._resources.get(instance)
            if resource is None:
                raise DeclarationNotFoundError(f"cluster {instance} does not exist")
            self._resources[instance] = resource.model_copy(update={"state": state, "report": report})
            self.history.setdefault(instance, []).append(state)

    def list_instances(self) -> List[str]:
        with self._lock:
            return sorted(self._resources)
