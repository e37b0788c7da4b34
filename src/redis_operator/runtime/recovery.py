from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from redis_operator.core.naming import node_sort_key, parse_node_name, replica_name
from redis_operator.core.topology import BlueprintEntry, NodeRole, NodeTopology, TopologySnapshot
from redis_operator.runtime.context import ReconcileContext
from redis_operator.runtime.evaluator import lost_nodes, slot_coverage
from redis_operator.utils.diagnostics import OperatorError, TopologyInconsistencyError

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """What one recovery pass did and what is left for the next tick."""

    replaced: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    reattached: List[str] = field(default_factory=list)
    reclaimed: List[str] = field(default_factory=list)
    reparented: List[str] = field(default_factory=list)
    forgotten: List[str] = field(default_factory=list)
    slots_fixed: bool = False
    failed: Dict[str, str] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed and not self.pending

    @property
    def mutations(self) -> int:
        return (
            len(self.replaced)
            + len(self.added)
            + len(self.removed)
            + len(self.reattached)
            + len(self.reclaimed)
            + len(self.reparented)
            + len(self.forgotten)
            + int(self.slots_fixed)
        )

    def summary(self) -> str:
        parts = [f"replaced={len(self.replaced)}", f"reattached={len(self.reattached)}"]
        if self.added:
            parts.append(f"added={len(self.added)}")
        if self.removed:
            parts.append(f"removed={len(self.removed)}")
        if self.reclaimed:
            parts.append(f"reclaimed={len(self.reclaimed)}")
        if self.forgotten:
            parts.append(f"forgotten={len(self.forgotten)}")
        if self.slots_fixed:
            parts.append("slots fixed")
        if self.pending:
            parts.append(f"pending={','.join(self.pending)}")
        if self.failed:
            parts.append(f"failed={','.join(sorted(self.failed))}")
        return " ".join(parts)


class RecoveryEngine:
    """Repairs an incomplete cluster according to its blueprint."""

    def recover(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> RecoveryReport:
        report = RecoveryReport()
        self._reparent_orphans(ctx, report)
        added = self._match_replica_count(ctx, snapshot, report)

        blueprint = [entry for entry in ctx.blueprint.all() if entry.name not in added]
        lost = lost_nodes(blueprint, snapshot, ctx.settings.lost_node_threshold)
        waiting = [entry.name for entry in blueprint if not snapshot.is_ok(entry.name) and entry.name not in lost]
        if waiting:
            logger.info("Waiting for another missed probe before replacing: %s", ", ".join(waiting))
        report.pending.extend(waiting)

        addresses: Dict[str, str] = {
            node.name: node.address
            for node in snapshot.healthy()
            if node.address and ctx.blueprint.get(node.name) is not None
        }

        # Leaders first so replicas can attach to their replacements in the same pass.
        ordered = sorted(lost, key=lambda name: (ctx.blueprint.get(name).role != NodeRole.LEADER, node_sort_key(name)))
        for name in ordered + added:
            entry = ctx.blueprint.get(name)
            try:
                addresses[name] = self._replace(ctx, entry, addresses)
                (report.added if name in added else report.replaced).append(name)
            except OperatorError as exc:
                report.failed[name] = exc.message
                ctx.note(exc.error_code, f"could not start member: {exc.message}", node=name)

        self._restore_roles(ctx, addresses, report)
        self._repair_slots(ctx, addresses, report)

        if not report.pending:
            self._forget_stale_nodes(ctx, snapshot, addresses, report)

        logger.info("Recovery of %s: %s", ctx.instance, report.summary())
        return report

    def forget_stale_nodes(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> List[str]:
        """Make every live member forget node ids that no live blueprint node owns."""
        report = RecoveryReport()
        addresses = {node.name: node.address for node in snapshot.healthy() if node.address}
        self._forget_stale_nodes(ctx, snapshot, addresses, report)
        if report.forgotten:
            logger.info("Forgot %d stale node ids in %s", len(report.forgotten), ctx.instance)
        return report.forgotten

    def _match_replica_count(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        report: RecoveryReport,
    ) -> List[str]:
        """Add or drop blueprint replicas until every leader has the declared count; returns added names."""
        wanted = ctx.declaration.replicas_per_leader
        added: List[str] = []
        for leader in ctx.blueprint.leaders():
            replicas = ctx.blueprint.replicas_of(leader.name)
            if len(replicas) > wanted:
                extra = sorted(replicas, key=lambda entry: node_sort_key(entry.name), reverse=True)
                for entry in extra[: len(replicas) - wanted]:
                    self._remove_replica(ctx, snapshot, entry, report)
                continue

            leader_index = parse_node_name(leader.name)[0]
            replica_index = 0
            for _ in range(wanted - len(replicas)):
                while ctx.blueprint.get(replica_name(leader_index, replica_index)) is not None:
                    replica_index += 1
                entry = BlueprintEntry(
                    name=replica_name(leader_index, replica_index),
                    role=NodeRole.REPLICA,
                    parent=leader.name,
                )
                ctx.blueprint.set(entry)
                added.append(entry.name)
        return added

    def _remove_replica(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        entry: BlueprintEntry,
        report: RecoveryReport,
    ) -> None:
        node = snapshot.get(entry.name)
        if node is not None and node.is_ok and node.role == NodeRole.LEADER:
            # It was promoted and serves slots; recovery hands leadership back first.
            report.pending.append(entry.name)
            return
        try:
            logger.info("Removing surplus replica %s", entry.name)
            ctx.members.delete_member(entry.name)
        except OperatorError as exc:
            report.failed[entry.name] = exc.message
            return
        ctx.blueprint.delete(entry.name)
        report.removed.append(entry.name)

    def _replace(self, ctx: ReconcileContext, entry: BlueprintEntry, addresses: Dict[str, str]) -> str:
        seed = self._seed_address(ctx, addresses, exclude=entry.name)
        if seed is None:
            raise TopologyInconsistencyError("no healthy member left to join", node=entry.name)

        logger.info("Replacing lost %s %s", entry.role.value, entry.name)
        address = ctx.start_member(entry.name, entry.role)
        ctx.admin.join(address, seed)
        if entry.role == NodeRole.LEADER:
            promoted = self._promoted_replica(ctx, entry, addresses)
            if promoted is not None:
                # Its replica took over the slots; follow it until leadership is reclaimed.
                ctx.admin.assign_replica_of(address, promoted)
        ctx.blueprint.mark_replaced(entry.name)
        return address

    def _promoted_replica(
        self,
        ctx: ReconcileContext,
        leader: BlueprintEntry,
        addresses: Dict[str, str],
    ) -> Optional[str]:
        for replica in ctx.blueprint.replicas_of(leader.name):
            address = addresses.get(replica.name)
            if address is None:
                continue
            try:
                topology = ctx.admin.query_topology(address)
            except OperatorError:
                continue
            if topology.role == NodeRole.LEADER and topology.slot_count:
                return address
        return None

    def _reparent_orphans(self, ctx: ReconcileContext, report: RecoveryReport) -> None:
        leaders = ctx.blueprint.leaders()
        leader_names = {entry.name for entry in leaders}
        for entry in ctx.blueprint.all():
            if entry.role != NodeRole.REPLICA or entry.parent in leader_names:
                continue
            if not leaders:
                ctx.note(TopologyInconsistencyError.error_code, "blueprint has no leaders", "critical", entry.name)
                return
            new_parent = min(leaders, key=lambda leader: (len(ctx.blueprint.replicas_of(leader.name)), leader.name))
            ctx.note(
                TopologyInconsistencyError.error_code,
                f"parent '{entry.parent}' is not a leader, re-parenting to {new_parent.name}",
                node=entry.name,
            )
            ctx.blueprint.replace_parent(entry.name, new_parent.name)
            report.reparented.append(entry.name)

    def _restore_roles(self, ctx: ReconcileContext, addresses: Dict[str, str], report: RecoveryReport) -> None:
        for entry in ctx.blueprint.leaders():
            address = addresses.get(entry.name)
            if address is None:
                continue
            topology = self._query(ctx, entry.name, address, report)
            if topology is None or topology.role == NodeRole.LEADER:
                continue
            try:
                logger.info("%s runs as a replica, taking leadership back", entry.name)
                ctx.admin.failover(address)
                report.reclaimed.append(entry.name)
            except OperatorError as exc:
                report.failed[entry.name] = exc.message

        for entry in ctx.blueprint.all():
            if entry.role != NodeRole.REPLICA:
                continue
            address = addresses.get(entry.name)
            if address is None:
                continue
            parent_address = addresses.get(entry.parent or "")
            if parent_address is None:
                report.failed.setdefault(entry.name, f"parent {entry.parent} is unavailable")
                continue

            parent = self._query(ctx, entry.parent or "", parent_address, report)
            replica = self._query(ctx, entry.name, address, report)
            if parent is None or replica is None:
                continue
            if replica.role == NodeRole.REPLICA and replica.myself.leader_id == parent.node_id:
                continue
            try:
                logger.info("Attaching %s to %s", entry.name, entry.parent)
                ctx.admin.assign_replica_of(address, parent_address)
                report.reattached.append(entry.name)
            except OperatorError as exc:
                report.failed[entry.name] = exc.message

    def _repair_slots(self, ctx: ReconcileContext, addresses: Dict[str, str], report: RecoveryReport) -> None:
        seed = self._seed_address(ctx, addresses)
        if seed is None:
            return
        topology = self._query(ctx, "slots", seed, report)
        if topology is None:
            return

        leaders = [view for view in topology.all_nodes() if view.role == NodeRole.LEADER and not view.failed]
        if slot_coverage(leaders).complete:
            return

        try:
            result = ctx.admin.fix_cluster(seed)
        except OperatorError as exc:
            report.failed["slots"] = exc.message
            return
        report.slots_fixed = result.ok
        if not result.ok:
            report.failed["slots"] = result.output or "cluster fix failed"

    def _forget_stale_nodes(
        self,
        ctx: ReconcileContext,
        snapshot: TopologySnapshot,
        addresses: Dict[str, str],
        report: RecoveryReport,
    ) -> None:
        tables: Dict[str, NodeTopology] = {}
        unanswered: List[str] = []
        for name, address in addresses.items():
            topology = self._query(ctx, name, address, report)
            if topology is None:
                unanswered.append(name)
            else:
                tables[address] = topology
        if unanswered:
            # A member that did not answer may still be alive; its id must not be forgotten.
            logger.info("Not forgetting stale node ids, no answer from %s", ", ".join(unanswered))
            return

        live_ids = {
            node.node_id
            for node in snapshot.healthy()
            if node.node_id and ctx.blueprint.get(node.name) is not None
        }
        live_ids |= {topology.node_id for topology in tables.values()}
        forgotten = set()
        for address, topology in tables.items():
            for peer in topology.peers:
                if peer.node_id in live_ids:
                    continue
                try:
                    ctx.admin.forget(address, peer.node_id)
                    forgotten.add(peer.node_id)
                except OperatorError as exc:
                    logger.warning("Could not forget %s on %s: %s", peer.node_id, address, exc.message)
        report.forgotten = sorted(forgotten)

    def _query(
        self,
        ctx: ReconcileContext,
        name: str,
        address: str,
        report: RecoveryReport,
    ) -> Optional[NodeTopology]:
        try:
            return ctx.admin.query_topology(address)
        except OperatorError as exc:
            report.failed.setdefault(name, exc.message)
            return None

    def _seed_address(
        self,
        ctx: ReconcileContext,
        addresses: Dict[str, str],
        exclude: Optional[str] = None,
    ) -> Optional[str]:
        candidates = [name for name in addresses if name != exclude]
        if not candidates:
            return None

        def preference(name: str):
            entry = ctx.blueprint.get(name)
            is_leader = entry is not None and entry.role == NodeRole.LEADER
            return (not is_leader, node_sort_key(name))

        return addresses[min(candidates, key=preference)]
