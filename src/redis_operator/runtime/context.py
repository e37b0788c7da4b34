from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from redis_operator.core.models import ClusterDeclaration, OperatorSettings
from redis_operator.core.topology import NodeRole, TopologySnapshot
from redis_operator.providers.protocols import ClusterAdmin, MemberProvider
from redis_operator.runtime.blueprint import BlueprintStore
from redis_operator.runtime.snapshot import SnapshotBuilder
from redis_operator.utils.diagnostics import ReconcileDiagnostic, TransientError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileContext:
    """
    Everything one tick of one cluster instance needs.

    A context is built per instance and per tick and threaded through every engine
    call; nothing about "the current cluster" lives in module state.
    """

    instance: str
    declaration: ClusterDeclaration
    settings: OperatorSettings
    blueprint: BlueprintStore
    members: MemberProvider
    admin: ClusterAdmin
    snapshots: SnapshotBuilder
    diagnostics: List[ReconcileDiagnostic] = field(default_factory=list)

    def note(self, error_code: str, message: str, severity: str = "warning", node: Optional[str] = None) -> None:
        """Record a diagnostic for the status report and log it."""
        diagnostic = ReconcileDiagnostic(
            instance=self.instance,
            error_code=error_code,
            message=message,
            severity=severity,
            node=node,
        )
        self.diagnostics.append(diagnostic)
        if severity in {"error", "critical"}:
            logger.error("%s", diagnostic)
        elif severity == "info":
            logger.info("%s", diagnostic)
        else:
            logger.warning("%s", diagnostic)

    def fresh_snapshot(self) -> TopologySnapshot:
        return self.snapshots.build(self.blueprint.names())

    def healthy_address(self, snapshot: TopologySnapshot, exclude: Iterable[str] = ()) -> Optional[str]:
        """Address of a healthy member, preferring leaders, skipping names in `exclude`."""
        excluded = set(exclude)
        candidates = [node for node in snapshot.healthy() if node.name not in excluded and node.address]
        candidates.sort(key=lambda node: (node.role != NodeRole.LEADER, node.name))
        return candidates[0].address if candidates else None

    def start_member(self, name: str, role: NodeRole) -> str:
        """Delete whatever backs `name`, create a fresh member and wait for its address."""
        self.members.delete_member(name)
        self.members.create_member(name, role, self.declaration)
        handle = self.members.wait_until_ready(name, self.settings.ready_timeout_seconds)
        if handle is None or handle.address is None:
            raise TransientError("member did not become ready in time", node=name)
        return handle.address
