from conftest import run_until

from redis_operator.core.models import ClusterDeclaration
from redis_operator.runtime.lifecycle import HandlerOutcome, LifecycleState


def _images(platform, instance):
    return {node.name: node.config.image for node in platform.nodes(instance)}


def test_image_change_rolls_every_member(ready_cluster, reconciler, source, platform):
    source.declare(ready_cluster, ClusterDeclaration(leader_count=3, replicas_per_leader=1, image="redis:7.4"))

    assert reconciler.reconcile(ready_cluster).state == LifecycleState.UPDATING
    updated = reconciler.reconcile(ready_cluster)
    assert updated.outcome == HandlerOutcome.UPDATED
    assert updated.state == LifecycleState.RECOVERING
    assert set(_images(platform, ready_cluster).values()) == {"redis:7.4"}

    # Recovery hands leadership back to the intended leaders
    run_until(reconciler, ready_cluster, LifecycleState.READY)
    for index in range(3):
        leader = platform.node(ready_cluster, f"leader-{index}")
        replica = platform.node(ready_cluster, f"leader-{index}-replica-0")
        assert leader.is_leader
        assert replica.leader_id == leader.node_id

    assert reconciler.reconcile(ready_cluster).outcome == HandlerOutcome.HEALTHY


def test_replicas_are_recreated_before_their_leader(ready_cluster, reconciler, source, platform):
    source.declare(ready_cluster, ClusterDeclaration(leader_count=3, replicas_per_leader=1, image="redis:7.4"))
    reconciler.reconcile(ready_cluster)
    start = len(platform.calls)

    reconciler.reconcile(ready_cluster)

    created = [name for command, name in platform.calls[start:] if command == "create_member"]
    assert created == [
        "leader-0-replica-0",
        "leader-0",
        "leader-1-replica-0",
        "leader-1",
        "leader-2-replica-0",
        "leader-2",
    ]


def test_slots_survive_the_update(ready_cluster, reconciler, source, platform):
    source.declare(ready_cluster, ClusterDeclaration(leader_count=3, replicas_per_leader=1, env={"MAXMEMORY": "1gb"}))

    run_until(reconciler, ready_cluster, LifecycleState.UPDATING)
    run_until(reconciler, ready_cluster, LifecycleState.READY)

    owned = [len(node.slots) for node in platform.nodes(ready_cluster) if node.is_leader]
    assert sum(owned) == 16384
    assert all(node.config.env == {"MAXMEMORY": "1gb"} for node in platform.nodes(ready_cluster))


def test_leader_without_replica_is_skipped(source, reconciler, platform):
    source.declare("solo", ClusterDeclaration(leader_count=2, replicas_per_leader=0))
    run_until(reconciler, "solo", LifecycleState.READY)
    source.declare("solo", ClusterDeclaration(leader_count=2, replicas_per_leader=0, image="redis:7.4"))

    resource = source.fetch("solo")
    ctx = reconciler.build_context("solo", resource.declaration)
    report = reconciler.rolling_update.update(ctx, ctx.fresh_snapshot())

    assert report.success
    assert report.updated == []
    assert sorted(report.skipped) == ["leader-0", "leader-1"]
    assert set(_images(platform, "solo").values()) == {"redis:7.2"}


def test_update_stops_at_first_failure(ready_cluster, reconciler, source, platform):
    source.declare(ready_cluster, ClusterDeclaration(leader_count=3, replicas_per_leader=1, image="redis:7.4"))
    reconciler.reconcile(ready_cluster)
    platform.inject_fault("failover")

    result = reconciler.reconcile(ready_cluster)

    assert result.outcome == HandlerOutcome.UPDATE_FAILED
    assert result.state == LifecycleState.RECOVERING
    images = _images(platform, ready_cluster)
    assert images["leader-0-replica-0"] == "redis:7.4"
    assert images["leader-0"] == "redis:7.2"
    assert images["leader-1-replica-0"] == "redis:7.2"


def test_leader_fails_over_to_a_replica_that_was_already_in_sync(source, reconciler, platform):
    source.declare("pair", ClusterDeclaration(leader_count=1, replicas_per_leader=2))
    run_until(reconciler, "pair", LifecycleState.READY)
    for name in ("leader-0", "leader-0-replica-1"):
        node = platform.node("pair", name)
        node.config = node.config.model_copy(update={"image": "redis:6.2"})

    resource = source.fetch("pair")
    ctx = reconciler.build_context("pair", resource.declaration)
    report = reconciler.rolling_update.update(ctx, ctx.fresh_snapshot())

    assert report.updated == ["leader-0-replica-1", "leader-0"]
    in_sync = platform.node("pair", "leader-0-replica-0")
    assert in_sync.is_leader
    assert platform.node("pair", "leader-0-replica-1").leader_id == in_sync.node_id
    assert set(_images(platform, "pair").values()) == {"redis:7.2"}
