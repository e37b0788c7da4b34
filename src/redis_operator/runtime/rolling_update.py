from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from redis_operator.core.topology import BlueprintEntry, NodeRole, TopologySnapshot
from redis_operator.runtime.context import ReconcileContext
from redis_operator.runtime.evaluator import stale_members
from redis_operator.utils.diagnostics import OperatorError, TopologyInconsistencyError

logger = logging.getLogger(__name__)


@dataclass
class UpdateReport:
    updated: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        parts = [f"updated={len(self.updated)}"]
        if self.skipped:
            parts.append(f"skipped={','.join(sorted(self.skipped))}")
        if self.failed:
            parts.append(f"failed={','.join(sorted(self.failed))}")
        return " ".join(parts)


class RollingUpdateEngine:
    """
    Recreates stale members one at a time until they run the declared configuration.

    Groups are visited in leader order. Within a group replicas are recreated first;
    a stale leader hands its slots to a healthy replica through a controlled failover
    and comes back as a replica of the promoted node. Recovery restores the intended
    leader on the following tick.
    """

    def update(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> UpdateReport:
        report = UpdateReport()
        stale = set(stale_members(ctx.declaration, snapshot))
        if not stale:
            return report

        # Names recreated in this pass run the declared configuration.
        fresh: Dict[str, str] = {}
        for leader in ctx.blueprint.leaders():
            try:
                self._update_group(ctx, snapshot, leader, stale, fresh, report)
            except OperatorError as exc:
                report.failed[exc.node or leader.name] = exc.message
                ctx.note(exc.error_code, f"rolling update stopped: {exc.message}", node=exc.node or leader.name)
                break

        logger.info("Rolling update of %s: %s", ctx.instance, report.summary())
        return report

    def _update_group(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        leader: BlueprintEntry,
        stale: Set[str],
        fresh: Dict[str, str],
        report: UpdateReport,
    ) -> None:
        leader_node = snapshot.get(leader.name)
        leader_address = leader_node.address if leader_node is not None else None
        replicas = ctx.blueprint.replicas_of(leader.name)

        for replica in replicas:
            if replica.name not in stale:
                continue
            if leader_address is None:
                raise TopologyInconsistencyError("leader has no address to replicate from", node=leader.name)
            fresh[replica.name] = self._recreate(ctx, replica, leader_address)
            report.updated.append(replica.name)

        if leader.name not in stale:
            return

        target = self._failover_target(snapshot, replicas, stale, fresh)
        if target is None:
            report.skipped[leader.name] = "no healthy up-to-date replica to fail over to"
            ctx.note("UPDATE_SKIPPED", report.skipped[leader.name], node=leader.name)
            return

        logger.info("Failing over %s before recreating it", leader.name)
        ctx.admin.failover(target)
        fresh[leader.name] = self._recreate(ctx, leader, target)
        report.updated.append(leader.name)

    def _recreate(self, ctx: ReconcileContext, entry: BlueprintEntry, replicate_from: str) -> str:
        # Addresses in the snapshot may already be gone; the node to follow is live.
        logger.info("Recreating %s with the declared configuration", entry.name)
        address = ctx.start_member(entry.name, entry.role)
        ctx.admin.join(address, replicate_from)
        ctx.admin.assign_replica_of(address, replicate_from)
        ctx.blueprint.mark_replaced(entry.name)
        return address

    def _failover_target(
        self,
        snapshot: TopologySnapshot,
        replicas: List[BlueprintEntry],
        stale: Set[str],
        fresh: Dict[str, str],
    ) -> Optional[str]:
        # Replicas recreated in this pass may still be syncing.
        for replica in replicas:
            node = snapshot.get(replica.name)
            if node is not None and node.is_ok and node.role == NodeRole.REPLICA and replica.name not in stale:
                return node.address
        for replica in replicas:
            if replica.name in fresh:
                return fresh[replica.name]
        return None
