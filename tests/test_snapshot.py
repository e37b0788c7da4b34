import time

import pytest

from redis_operator.core.models import ClusterDeclaration
from redis_operator.core.topology import NodeHealth, NodeRole
from redis_operator.runtime.snapshot import SnapshotBuilder
from redis_operator.utils.diagnostics import TransientError


def test_snapshot_of_healthy_cluster(ready_cluster, platform):
    snapshot = SnapshotBuilder(platform.members(ready_cluster), platform).build(
        ["leader-0", "leader-0-replica-0", "leader-1", "leader-1-replica-0", "leader-2", "leader-2-replica-0"]
    )

    assert len(snapshot.healthy()) == 6
    assert len(snapshot.healthy_leaders()) == 3
    leader = snapshot.get("leader-0")
    replica = snapshot.get("leader-0-replica-0")
    assert replica.role == NodeRole.REPLICA
    assert replica.leader_id == leader.node_id
    assert leader.slot_count == 5462
    assert len(leader.peers) == 5
    assert snapshot.unexpected == []


def test_dead_and_missing_members_are_unreachable_not_omitted(ready_cluster, platform):
    platform.kill(ready_cluster, "leader-2-replica-0")
    platform.delete_member(ready_cluster, "leader-1-replica-0")

    snapshot = SnapshotBuilder(platform.members(ready_cluster), platform).build(
        ["leader-0", "leader-1-replica-0", "leader-2-replica-0"]
    )

    dead = snapshot.get("leader-2-replica-0")
    assert dead.health == NodeHealth.UNREACHABLE
    assert dead.address is not None

    missing = snapshot.get("leader-1-replica-0")
    assert missing.health == NodeHealth.UNREACHABLE
    assert missing.error == "no backing member"

    assert snapshot.is_ok("leader-0")
    # Members that exist but were not asked for
    assert "leader-1" in snapshot.unexpected


def test_failed_topology_query_marks_node_unreachable(ready_cluster, platform):
    platform.inject_fault("query_topology")

    snapshot = SnapshotBuilder(platform.members(ready_cluster), platform).build(["leader-0"])

    node = snapshot.get("leader-0")
    assert node.health == NodeHealth.UNREACHABLE
    assert "simulated query_topology failure" in node.error


def test_listing_failure_aborts_the_build(platform):
    platform.members("demo").create_member("leader-0", NodeRole.LEADER, ClusterDeclaration(leader_count=1))
    platform.inject_fault("list_members")

    builder = SnapshotBuilder(platform.members("demo"), platform)
    with pytest.raises(TransientError, match="list_members"):
        builder.build(["leader-0"])


def test_overrunning_probe_is_joined_before_returning(ready_cluster, platform):
    finished = []

    class SlowAdmin:
        def query_topology(self, address):
            time.sleep(0.3)
            finished.append(address)
            return platform.query_topology(address)

    builder = SnapshotBuilder(platform.members(ready_cluster), SlowAdmin(), probe_timeout=0.1)
    snapshot = builder.build(["leader-0"])

    node = snapshot.get("leader-0")
    assert node.health == NodeHealth.UNREACHABLE
    assert node.error == "probe timed out"
    # No probe thread outlives the build
    assert finished == [node.address]
