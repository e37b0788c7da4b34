from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from redis_operator.core.naming import parse_node_name
from redis_operator.core.topology import BlueprintEntry, NodeRole, TopologySnapshot
from redis_operator.runtime.blueprint import group_entries
from redis_operator.runtime.context import ReconcileContext
from redis_operator.utils.diagnostics import OperatorError, SlotOwnershipError, TopologyInconsistencyError

logger = logging.getLogger(__name__)


@dataclass
class ScaleReport:
    """What one scale pass added, removed or refused."""

    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    removed_slot_counts: Dict[str, int] = field(default_factory=dict)
    refused: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    rebalanced: bool = False

    @property
    def success(self) -> bool:
        return not self.refused and not self.failed

    def summary(self) -> str:
        parts = []
        if self.added:
            parts.append(f"added={','.join(self.added)}")
        if self.removed:
            parts.append(f"removed={','.join(self.removed)}")
        if self.rebalanced:
            parts.append("rebalanced")
        if self.refused:
            parts.append(f"refused={','.join(sorted(self.refused))}")
        if self.failed:
            parts.append(f"failed={','.join(sorted(self.failed))}")
        return " ".join(parts) or "no changes"


def split_evenly(total: int, parts: int) -> List[int]:
    """Split `total` into `parts` counts that differ by at most one."""
    base, extra = divmod(total, parts)
    return [base + (1 if index < extra else 0) for index in range(parts)]


class ScaleEngine:
    """Adds or drains whole leader groups."""

    def scale_up(self, ctx: ReconcileContext, snapshot: TopologySnapshot, delta: int) -> ScaleReport:
        """Add `delta` leader groups, join them and rebalance slots across all leaders."""
        report = ScaleReport()
        seed = ctx.healthy_address(snapshot)
        if seed is None:
            raise TopologyInconsistencyError("no healthy member to join new leaders to")

        replicas_per_leader = ctx.declaration.replicas_per_leader
        for _ in range(delta):
            leader_index = ctx.blueprint.next_leader_index()
            entries = group_entries(leader_index, replicas_per_leader)
            for entry in entries:
                ctx.blueprint.set(entry)

            logger.info("Adding leader group %s to %s", entries[0].name, ctx.instance)
            try:
                self._start_group(ctx, entries, seed)
            except OperatorError as exc:
                # Entries stay in the blueprint; recovery replaces whatever did not come up.
                report.failed[exc.node or entries[0].name] = exc.message
                ctx.note(exc.error_code, f"scale up: {exc.message}", node=exc.node)
                break
            report.added.extend(entry.name for entry in entries)

        if report.failed:
            return report

        result = ctx.admin.rebalance_slots(seed)
        report.rebalanced = result.ok
        if not result.ok:
            report.failed["rebalance"] = result.output or "rebalance failed"
            ctx.note(TopologyInconsistencyError.error_code, "slot rebalance after scale up failed")
        logger.info("Scale up of %s: %s", ctx.instance, report.summary())
        return report

    def scale_down(self, ctx: ReconcileContext, snapshot: TopologySnapshot, delta: int) -> ScaleReport:
        """
        Drain and remove the `delta` newest leader groups.

        A leader is removed only after a fresh query shows it owns no slots; the pass
        stops at the first group that cannot be drained so removal stays newest-first.
        """
        report = ScaleReport()
        leaders = sorted(ctx.blueprint.leaders(), key=lambda entry: parse_node_name(entry.name)[0], reverse=True)
        count = min(delta, len(leaders) - 1)
        if count < delta:
            logger.warning("Keeping at least one leader in %s; removing %d instead of %d", ctx.instance, count, delta)

        departing = leaders[:count]
        remaining = leaders[count:]
        departing_names = {name for entry in departing for name in self._group_names(ctx, entry)}
        targets = self._drain_targets(snapshot, remaining)
        if not targets:
            raise TopologyInconsistencyError("no healthy leader left to receive slots")

        seed = ctx.healthy_address(snapshot, exclude=departing_names)
        if seed is None:
            raise TopologyInconsistencyError("no healthy member outside the departing groups")

        for entry in departing:
            try:
                slots_left = self._drain(ctx, snapshot, entry, targets, seed)
            except SlotOwnershipError as exc:
                report.refused[entry.name] = exc.message
                ctx.note(exc.error_code, exc.message, "error", entry.name)
                break
            except OperatorError as exc:
                report.failed[entry.name] = exc.message
                ctx.note(exc.error_code, f"scale down: {exc.message}", node=entry.name)
                break

            report.removed_slot_counts[entry.name] = slots_left
            report.removed.extend(self._remove_group(ctx, snapshot, entry, departing_names))

        logger.info("Scale down of %s: %s", ctx.instance, report.summary())
        return report

    def _start_group(self, ctx: ReconcileContext, entries: List[BlueprintEntry], seed: str) -> None:
        leader, replicas = entries[0], entries[1:]
        leader_address = ctx.start_member(leader.name, NodeRole.LEADER)
        ctx.admin.join(leader_address, seed)
        for replica in replicas:
            address = ctx.start_member(replica.name, NodeRole.REPLICA)
            ctx.admin.join(address, seed)
            ctx.admin.assign_replica_of(address, leader_address)

    def _drain_targets(self, snapshot: TopologySnapshot, remaining: List[BlueprintEntry]) -> List[Tuple[str, str]]:
        targets = []
        for entry in remaining:
            node = snapshot.get(entry.name)
            if node is not None and node.is_ok and node.node_id and node.role == NodeRole.LEADER:
                targets.append((entry.name, node.node_id))
        return targets

    def _drain(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        entry: BlueprintEntry,
        targets: List[Tuple[str, str]],
        seed: str,
    ) -> int:
        node = snapshot.get(entry.name)
        if node is None or node.address is None:
            raise SlotOwnershipError("leader is unreachable, its slot ownership cannot be verified", node=entry.name)

        topology = ctx.admin.query_topology(node.address)
        owned = topology.slot_count
        if owned:
            logger.info("Moving %d slots off %s", owned, entry.name)
            for (target_name, target_id), share in zip(targets, split_evenly(owned, len(targets))):
                if not share:
                    continue
                result = ctx.admin.reshard(seed, topology.node_id, target_id, share)
                if not result.ok:
                    logger.warning("Resharding %d slots from %s to %s failed: %s", share, entry.name, target_name, result.output)

        slots_left = ctx.admin.query_topology(node.address).slot_count
        if slots_left:
            raise SlotOwnershipError(f"refusing to remove leader that still owns {slots_left} slots", node=entry.name)
        return slots_left

    def _remove_group(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        leader: BlueprintEntry,
        departing_names: Set[str],
    ) -> List[str]:
        group = self._group_names(ctx, leader)
        survivors = [
            node.address
            for node in snapshot.healthy()
            if node.address and node.name not in departing_names
        ]
        removed: List[str] = []
        # Replicas go first so none is left following a deleted leader.
        for name in reversed(group):
            node_id = self._node_id(snapshot, name)
            ctx.members.delete_member(name)
            if node_id is not None:
                for address in survivors:
                    try:
                        ctx.admin.forget(address, node_id)
                    except OperatorError as exc:
                        logger.warning("Could not forget %s on %s: %s", name, address, exc.message)
            ctx.blueprint.delete(name)
            removed.append(name)
            logger.info("Removed %s from %s", name, ctx.instance)
        return removed

    def _group_names(self, ctx: ReconcileContext, leader: BlueprintEntry) -> List[str]:
        return [leader.name, *(entry.name for entry in ctx.blueprint.replicas_of(leader.name))]

    def _node_id(self, snapshot: TopologySnapshot, name: str) -> Optional[str]:
        node = snapshot.get(name)
        return None if node is None else node.node_id
