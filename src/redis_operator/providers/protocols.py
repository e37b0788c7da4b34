from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

from redis_operator.core.models import AdminCommandResult, ClusterDeclaration, ClusterResource, MemberConfig
from redis_operator.core.topology import NodeHealth, NodeRole, NodeTopology, SlotRange


class MemberHandle(BaseModel):
    """A backing process (pod) for one logical node."""

    name: str
    role: NodeRole
    address: Optional[str] = None
    config: Optional[MemberConfig] = None
    phase: str = "Pending"


class MemberProvider(Protocol):
    """Creates, lists and probes the processes backing logical nodes."""

    def create_member(self, name: str, role: NodeRole, declaration: ClusterDeclaration) -> MemberHandle: ...

    def delete_member(self, name: str) -> None: ...

    def list_members(self) -> List[MemberHandle]: ...

    def probe_health(self, handle: MemberHandle) -> NodeHealth: ...

    def wait_until_ready(self, name: str, timeout: float) -> Optional[MemberHandle]: ...


class ClusterAdmin(Protocol):
    """Issues cluster administration commands against running members."""

    def join(self, target_addr: str, existing_member_addr: str) -> None: ...

    def forget(self, target_addr: str, node_id: str) -> None: ...

    def assign_replica_of(self, target_addr: str, leader_addr: str) -> None: ...

    def rebalance_slots(self, any_healthy_addr: str) -> AdminCommandResult: ...

    def fix_cluster(self, any_healthy_addr: str) -> AdminCommandResult: ...

    def query_topology(self, target_addr: str) -> NodeTopology: ...

    def add_slots(self, target_addr: str, ranges: List[SlotRange]) -> None: ...

    def reshard(self, any_healthy_addr: str, from_node_id: str, to_node_id: str, count: int) -> AdminCommandResult: ...

    def failover(self, replica_addr: str) -> None: ...


class KeyValueBackend(Protocol):
    """Durable versioned key/value records grouped by namespace."""

    def get(self, namespace: str, key: str) -> Optional[Tuple[str, int]]: ...

    def put(self, namespace: str, key: str, value: str, expected_version: Optional[int]) -> int: ...

    def delete(self, namespace: str, key: str) -> None: ...

    def list(self, namespace: str) -> Dict[str, Tuple[str, int]]: ...

    def replace_all(self, namespace: str, values: Dict[str, str]) -> None: ...


class DeclarationSource(Protocol):
    """Reads cluster declarations and writes their lifecycle status."""

    def fetch(self, instance: str) -> Optional[ClusterResource]: ...

    def update_status(self, instance: str, state: str, report: str) -> None: ...

    def list_instances(self) -> List[str]: ...
