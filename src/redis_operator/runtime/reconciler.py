from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from redis_operator.core.models import AdminCommandResult, ClusterDeclaration, ClusterResource, OperatorSettings
from redis_operator.core.naming import leader_name
from redis_operator.core.topology import NodeRole, TopologySnapshot, split_slot_space
from redis_operator.providers.protocols import ClusterAdmin, DeclarationSource, KeyValueBackend, MemberProvider
from redis_operator.runtime.blueprint import BlueprintStore
from redis_operator.runtime.context import ReconcileContext
from redis_operator.runtime.evaluator import (
    ScaleKind,
    completeness_problems,
    is_complete,
    scale_required,
    stale_members,
)
from redis_operator.runtime.lifecycle import (
    HandlerOutcome,
    LifecycleState,
    failure_outcome,
    transition_lifecycle_state,
)
from redis_operator.runtime.recovery import RecoveryEngine
from redis_operator.runtime.rolling_update import RollingUpdateEngine
from redis_operator.runtime.scale import ScaleEngine
from redis_operator.runtime.snapshot import SnapshotBuilder
from redis_operator.utils.diagnostics import (
    DeclarationNotFoundError,
    OperatorError,
    TopologyInconsistencyError,
)

logger = logging.getLogger(__name__)

MIRROR_KEY = "snapshot"

Handler = Callable[[ReconcileContext, TopologySnapshot], HandlerOutcome]


@dataclass(frozen=True)
class ReconcileResult:
    """Result of one tick for one instance."""

    instance: str
    state: Optional[LifecycleState]
    outcome: Optional[HandlerOutcome]
    requeue_after: Optional[float]
    report: str = ""

    @property
    def stopped(self) -> bool:
        return self.requeue_after is None


class ClusterReconciler:
    """
    Runs single reconcile ticks against cluster instances.

    The reconciler holds no per-instance state between ticks: every tick builds a
    fresh ReconcileContext, reads the persisted lifecycle state and the blueprint,
    and writes both back before returning. Callers must serialize ticks per instance.
    """

    def __init__(
        self,
        source: DeclarationSource,
        members_for: Callable[[str], MemberProvider],
        admin: ClusterAdmin,
        backend: KeyValueBackend,
        settings: Optional[OperatorSettings] = None,
    ) -> None:
        self.source = source
        self.members_for = members_for
        self.admin = admin
        self.backend = backend
        self.settings = settings or OperatorSettings()

        self.recovery = RecoveryEngine()
        self.scale = ScaleEngine()
        self.rolling_update = RollingUpdateEngine()
        self._handlers: Dict[LifecycleState, Handler] = {
            LifecycleState.READY: self._handle_ready,
            LifecycleState.RECOVERING: self._handle_recovering,
            LifecycleState.UPDATING: self._handle_updating,
            LifecycleState.SCALE: self._handle_scale,
        }

    def reconcile(self, instance: str) -> ReconcileResult:
        """Execute exactly one tick for `instance`."""
        try:
            resource = self.source.fetch(instance)
        except DeclarationNotFoundError:
            resource = None
        except OperatorError as exc:
            logger.warning("Could not fetch declaration of %s: %s", instance, exc)
            return ReconcileResult(instance, None, None, self.settings.requeue_seconds, report=exc.message)

        if resource is None:
            logger.info("Cluster %s no longer exists, stopping reconciliation", instance)
            return ReconcileResult(instance, None, None, None)

        state = LifecycleState.parse(resource.state)
        ctx = self.build_context(instance, resource.declaration)
        logger.debug("Reconciling %s in state %s", instance, state.value)

        try:
            outcome = self._run_handler(state, ctx)
        except OperatorError as exc:
            ctx.note(exc.error_code, exc.message, "error", exc.node)
            outcome = failure_outcome(state)
        except Exception as exc:
            logger.exception("Handler for %s failed on %s", state.value, instance)
            ctx.note("ERR_UNEXPECTED", str(exc), "critical")
            outcome = failure_outcome(state)

        next_state = transition_lifecycle_state(state, outcome)
        report = self._status_report(next_state, outcome, ctx)
        if next_state != state:
            logger.info("Cluster %s: %s -> %s (%s)", instance, state.value, next_state.value, outcome.value)

        self._persist_status(instance, next_state, report)
        self._publish_mirror(ctx, next_state)

        return ReconcileResult(instance, next_state, outcome, self.settings.requeue_seconds, report=report)

    def build_context(self, instance: str, declaration: ClusterDeclaration) -> ReconcileContext:
        members = self.members_for(instance)
        return ReconcileContext(
            instance=instance,
            declaration=declaration,
            settings=self.settings,
            blueprint=BlueprintStore(self.backend, instance, self.settings.conflict_retries),
            members=members,
            admin=self.admin,
            snapshots=SnapshotBuilder(
                members,
                self.admin,
                probe_timeout=self.settings.probe_timeout_seconds,
                workers=self.settings.probe_workers,
            ),
        )

    def force_reset(self, instance: str) -> None:
        """Persist Reset so the next tick reinitializes the cluster."""
        self.source.update_status(instance, LifecycleState.RESET.value, "reset requested by operator")
        logger.warning("Cluster %s forced to %s", instance, LifecycleState.RESET.value)

    def rebalance(self, instance: str) -> AdminCommandResult:
        return self._run_against_leader(instance, self.admin.rebalance_slots)

    def fix(self, instance: str) -> AdminCommandResult:
        return self._run_against_leader(instance, self.admin.fix_cluster)

    def dump(self, instance: str) -> Dict[str, Any]:
        """Read-only view of the lifecycle state, blueprint and a fresh snapshot."""
        resource = self._require(instance)
        ctx = self.build_context(instance, resource.declaration)
        snapshot = None if ctx.blueprint.is_empty() else ctx.fresh_snapshot()
        return {
            "instance": instance,
            "state": LifecycleState.parse(resource.state).value,
            "report": resource.report,
            "declaration": resource.declaration.model_dump(mode="json"),
            "blueprint": [entry.model_dump(mode="json") for entry in ctx.blueprint.all()],
            "snapshot": None if snapshot is None else snapshot.model_dump(mode="json"),
        }

    def _run_handler(self, state: LifecycleState, ctx: ReconcileContext) -> HandlerOutcome:
        if state in (LifecycleState.NOT_EXISTS, LifecycleState.RESET):
            return self._initialize(ctx)

        ctx.blueprint.refresh()
        if ctx.blueprint.is_empty():
            raise TopologyInconsistencyError(f"blueprint is empty while the cluster is {state.value}")
        snapshot = ctx.fresh_snapshot()
        ctx.blueprint.record_observations(snapshot)
        return self._handlers[state](ctx, snapshot)

    def _initialize(self, ctx: ReconcileContext) -> HandlerOutcome:
        declaration = ctx.declaration
        for handle in ctx.members.list_members():
            ctx.members.delete_member(handle.name)

        ctx.blueprint.create(declaration.leader_count, declaration.replicas_per_leader)
        ranges = split_slot_space(declaration.leader_count)

        addresses: Dict[str, str] = {}
        for index, entry in enumerate(ctx.blueprint.leaders()):
            address = ctx.start_member(entry.name, NodeRole.LEADER)
            ctx.admin.add_slots(address, [ranges[index]])
            addresses[entry.name] = address

        seed = addresses[leader_name(0)]
        for name, address in addresses.items():
            if address != seed:
                ctx.admin.join(address, seed)

        for entry in ctx.blueprint.all():
            if entry.role != NodeRole.REPLICA:
                continue
            address = ctx.start_member(entry.name, NodeRole.REPLICA)
            ctx.admin.join(address, seed)
            ctx.admin.assign_replica_of(address, addresses[entry.parent])

        logger.info(
            "Initialized %s with %d leaders and %d replicas per leader",
            ctx.instance,
            declaration.leader_count,
            declaration.replicas_per_leader,
        )
        return HandlerOutcome.INITIALIZED

    def _handle_ready(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> HandlerOutcome:
        problems = completeness_problems(ctx.declaration, snapshot, ctx.blueprint.all())
        if problems:
            for problem in problems:
                ctx.note("INCOMPLETE", problem, "info")
            return HandlerOutcome.INCOMPLETE

        stale = stale_members(ctx.declaration, snapshot)
        if stale:
            ctx.note("STALE", f"running configuration differs on {', '.join(stale)}", "info")
            return HandlerOutcome.STALE

        decision = scale_required(ctx.declaration, snapshot)
        if decision.required:
            ctx.note("SCALE", f"{decision.kind.value}({decision.delta})", "info")
            return HandlerOutcome.SCALE_REQUIRED

        self.recovery.forget_stale_nodes(ctx, snapshot)
        return HandlerOutcome.HEALTHY

    def _handle_recovering(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> HandlerOutcome:
        report = self.recovery.recover(ctx, snapshot)
        if not report.success:
            ctx.note("RECOVERY_PENDING", report.summary(), "info")
            return HandlerOutcome.RECOVERY_PENDING

        # Only a cluster that is complete after the pass counts as recovered.
        problems = completeness_problems(ctx.declaration, ctx.fresh_snapshot(), ctx.blueprint.all())
        if problems:
            for problem in problems:
                ctx.note("STILL_INCOMPLETE", problem)
            return HandlerOutcome.RECOVERY_PENDING
        return HandlerOutcome.RECOVERED

    def _handle_updating(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> HandlerOutcome:
        report = self.rolling_update.update(ctx, snapshot)
        return HandlerOutcome.UPDATED if report.success else HandlerOutcome.UPDATE_FAILED

    def _handle_scale(self, ctx: ReconcileContext, snapshot: TopologySnapshot) -> HandlerOutcome:
        if not is_complete(ctx.declaration, snapshot, ctx.blueprint.all()):
            raise TopologyInconsistencyError("cluster became incomplete before scaling")

        decision = scale_required(ctx.declaration, snapshot)
        if decision.kind == ScaleKind.SCALE_UP:
            report = self.scale.scale_up(ctx, snapshot, decision.delta)
        elif decision.kind == ScaleKind.SCALE_DOWN:
            report = self.scale.scale_down(ctx, snapshot, decision.delta)
        else:
            return HandlerOutcome.SCALED

        if report.success:
            return HandlerOutcome.SCALED
        ctx.note("SCALE_INCOMPLETE", report.summary(), "warning")
        return HandlerOutcome.SCALE_FAILED

    def _status_report(self, state: LifecycleState, outcome: HandlerOutcome, ctx: ReconcileContext) -> str:
        report = f"{state.value} ({outcome.value})"
        messages = [str(diagnostic) for diagnostic in ctx.diagnostics[:3]]
        if len(ctx.diagnostics) > 3:
            messages.append(f"+{len(ctx.diagnostics) - 3} more")
        if messages:
            report += ": " + "; ".join(messages)
        return report

    def _persist_status(self, instance: str, state: LifecycleState, report: str) -> None:
        try:
            self.source.update_status(instance, state.value, report)
        except OperatorError as exc:
            logger.error("Could not persist %s for %s: %s", state.value, instance, exc)

    def _publish_mirror(self, ctx: ReconcileContext, state: LifecycleState) -> None:
        """Write a JSON view of the cluster for observers; nothing reads it back."""
        namespace = f"{ctx.instance}/mirror"
        try:
            snapshot = None if ctx.blueprint.is_empty() else ctx.fresh_snapshot()
            payload = json.dumps(
                {
                    "state": state.value,
                    "blueprint": [entry.model_dump(mode="json") for entry in ctx.blueprint.all()],
                    "snapshot": None if snapshot is None else snapshot.model_dump(mode="json"),
                }
            )
            current = self.backend.get(namespace, MIRROR_KEY)
            self.backend.put(namespace, MIRROR_KEY, payload, None if current is None else current[1])
        except OperatorError as exc:
            logger.warning("Could not publish status mirror for %s: %s", ctx.instance, exc)

    def _run_against_leader(
        self,
        instance: str,
        command: Callable[[str], AdminCommandResult],
    ) -> AdminCommandResult:
        resource = self._require(instance)
        ctx = self.build_context(instance, resource.declaration)
        snapshot = ctx.fresh_snapshot()
        leaders = [node for node in snapshot.healthy_leaders() if node.address]
        if not leaders:
            raise TopologyInconsistencyError(f"no healthy leader found in {instance}")
        return command(leaders[0].address)

    def _require(self, instance: str) -> ClusterResource:
        resource = self.source.fetch(instance)
        if resource is None:
            raise DeclarationNotFoundError(f"cluster {instance} does not exist")
        return resource
