from redis_operator.core.models import ClusterDeclaration
from redis_operator.core.topology import (
    BlueprintEntry,
    ClusterNodeView,
    NodeHealth,
    NodeRole,
    TopologyNode,
    TopologySnapshot,
)
from redis_operator.runtime.evaluator import (
    ScaleKind,
    completeness_problems,
    is_complete,
    is_up_to_date,
    lost_nodes,
    scale_required,
    slot_coverage,
    stale_members,
)


def _view(node_id, slots):
    return ClusterNodeView(node_id=node_id, address=f"{node_id}:6379", role=NodeRole.LEADER, slots=slots)


def _leader(name, node_id, slots, health=NodeHealth.OK):
    return TopologyNode(name=name, health=health, node_id=node_id, role=NodeRole.LEADER, slots=slots)


def test_slot_coverage_reports_gaps_and_overlaps():
    assert slot_coverage([_view("a", [(0, 8191)]), _view("b", [(8192, 16383)])]).complete

    coverage = slot_coverage([_view("a", [(0, 8000)]), _view("b", [(7990, 16000)])])
    assert coverage.gaps == [(16001, 16383)]
    assert coverage.overlaps == [(7990, 8000)]
    assert not coverage.complete


def test_ready_cluster_is_complete(ready_cluster, reconciler, source):
    resource = source.fetch(ready_cluster)
    ctx = reconciler.build_context(ready_cluster, resource.declaration)
    snapshot = ctx.fresh_snapshot()

    assert completeness_problems(resource.declaration, snapshot, ctx.blueprint.all()) == []
    assert is_complete(resource.declaration, snapshot, ctx.blueprint.all())
    assert is_up_to_date(resource.declaration, snapshot)


def test_missing_replica_and_wrong_parent_are_reported():
    declaration = ClusterDeclaration(leader_count=2, replicas_per_leader=1)
    blueprint = [
        BlueprintEntry(name="leader-0", role=NodeRole.LEADER),
        BlueprintEntry(name="leader-0-replica-0", role=NodeRole.REPLICA, parent="leader-0"),
        BlueprintEntry(name="leader-1", role=NodeRole.LEADER),
        BlueprintEntry(name="leader-1-replica-0", role=NodeRole.REPLICA, parent="leader-1"),
    ]
    snapshot = TopologySnapshot(nodes={
        "leader-0": _leader("leader-0", "id0", [(0, 8191)]),
        "leader-1": _leader("leader-1", "id1", [(8192, 16383)]),
        # Follows the wrong leader
        "leader-0-replica-0": TopologyNode(
            name="leader-0-replica-0", health=NodeHealth.OK, node_id="r0", role=NodeRole.REPLICA, leader_id="id1"
        ),
        "leader-1-replica-0": TopologyNode(name="leader-1-replica-0", health=NodeHealth.UNREACHABLE),
    })

    problems = completeness_problems(declaration, snapshot, blueprint)

    assert "leader-1-replica-0 is Unreachable" in problems
    assert "leader-0 has 0 healthy replicas, expected 1" in problems
    assert "leader-0-replica-0 does not replicate leader-0" in problems
    assert not any("slots" in problem for problem in problems)


def test_scale_required_is_pure():
    snapshot = TopologySnapshot(nodes={
        "leader-0": _leader("leader-0", "id0", [(0, 8191)]),
        "leader-1": _leader("leader-1", "id1", [(8192, 16383)]),
        "leader-2": _leader("leader-2", "id2", [], health=NodeHealth.UNREACHABLE),
    })

    up = ClusterDeclaration(leader_count=5)
    first = scale_required(up, snapshot)
    assert first == scale_required(up, snapshot)
    assert first.kind == ScaleKind.SCALE_UP
    assert first.delta == 3

    down = scale_required(ClusterDeclaration(leader_count=1), snapshot)
    assert down.kind == ScaleKind.SCALE_DOWN
    assert down.delta == 1

    assert not scale_required(ClusterDeclaration(leader_count=2), snapshot).required


def test_stale_members_compare_running_config():
    declaration = ClusterDeclaration(leader_count=1, image="redis:7.4")
    snapshot = TopologySnapshot(nodes={
        "leader-0": TopologyNode(
            name="leader-0",
            health=NodeHealth.OK,
            config=ClusterDeclaration(leader_count=1, image="redis:7.2").desired_member_config(),
        ),
    })

    assert stale_members(declaration, snapshot) == ["leader-0"]


def test_lost_nodes_use_threshold():
    blueprint = [
        BlueprintEntry(name="leader-0", role=NodeRole.LEADER, missed_probes=1),
        BlueprintEntry(name="leader-1", role=NodeRole.LEADER, missed_probes=2),
        BlueprintEntry(name="leader-2", role=NodeRole.LEADER, missed_probes=5),
    ]
    snapshot = TopologySnapshot(nodes={
        "leader-0": TopologyNode(name="leader-0", health=NodeHealth.UNREACHABLE),
        "leader-1": TopologyNode(name="leader-1", health=NodeHealth.UNREACHABLE),
        # Healthy again: never lost, whatever the counter says
        "leader-2": TopologyNode(name="leader-2", health=NodeHealth.OK),
    })

    assert lost_nodes(blueprint, snapshot, threshold=2) == {"leader-1"}
    assert lost_nodes(blueprint, snapshot, threshold=1) == {"leader-0", "leader-1"}
