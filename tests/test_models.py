import pytest
from pydantic import ValidationError
from redis_operator.core.models import ClusterDeclaration, MemberConfig, OperatorSettings, PodResources
from redis_operator.core.topology import BlueprintEntry, NodeRole, compress_slots, count_slots, split_slot_space, SLOT_COUNT

# -----------------------------------------------------------------------------
# Declaration Tests
# -----------------------------------------------------------------------------

def test_declaration_accepts_resource_field_names():
    """Verify the custom resource spec keys map onto the model."""
    declaration = ClusterDeclaration.model_validate({
        "leaderCount": 3,
        "leaderFollowersCount": 1,
        "image": "redis:7.4",
        "podResources": {"requests": {"cpu": "100m"}, "limits": {"memory": "256Mi"}},
        "redisContainerEnvVariables": [{"name": "MAXMEMORY", "value": "200mb"}],
        "podAnnotations": {"team": "cache"},
        "podLabelSelector": {"app": "redis"},
    })

    assert declaration.leader_count == 3
    assert declaration.replicas_per_leader == 1
    assert declaration.resources.limits == {"memory": "256Mi"}
    assert declaration.env == {"MAXMEMORY": "200mb"}
    assert declaration.annotations == {"team": "cache"}
    assert declaration.label_selector == {"app": "redis"}
    assert declaration.total_members == 6

def test_declaration_accepts_python_names():
    declaration = ClusterDeclaration(leader_count=2, replicas_per_leader=0)
    assert declaration.total_members == 2

def test_declaration_requires_a_leader():
    with pytest.raises(ValidationError):
        ClusterDeclaration(leader_count=0)

    with pytest.raises(ValidationError):
        ClusterDeclaration(leader_count=1, replicas_per_leader=-1)

def test_desired_member_config_compares_by_value():
    declaration = ClusterDeclaration(leader_count=1, image="redis:7.2", env={"A": "1"})
    same = MemberConfig(image="redis:7.2", resources=PodResources(), env={"A": "1"})
    other = MemberConfig(image="redis:7.4", resources=PodResources(), env={"A": "1"})

    assert declaration.desired_member_config() == same
    assert declaration.desired_member_config() != other

# -----------------------------------------------------------------------------
# Settings Tests
# -----------------------------------------------------------------------------

def test_settings_reject_timeouts_longer_than_a_tick():
    with pytest.raises(ValidationError, match="must be shorter than requeue_seconds"):
        OperatorSettings(requeue_seconds=5, probe_timeout_seconds=10)

def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("REDIS_OPERATOR_LOST_NODE_THRESHOLD", "4")
    assert OperatorSettings().lost_node_threshold == 4

# -----------------------------------------------------------------------------
# Topology Model Tests
# -----------------------------------------------------------------------------

def test_replica_entry_needs_parent():
    with pytest.raises(ValidationError):
        BlueprintEntry(name="leader-0-replica-0", role=NodeRole.REPLICA)

    with pytest.raises(ValidationError):
        BlueprintEntry(name="leader-0", role=NodeRole.LEADER, parent="leader-1")

def test_split_slot_space_covers_everything_once():
    ranges = split_slot_space(3)
    assert ranges == [(0, 5461), (5462, 10922), (10923, 16383)]
    assert count_slots(ranges) == SLOT_COUNT

    with pytest.raises(ValueError):
        split_slot_space(0)

def test_compress_slots():
    assert compress_slots([5, 1, 2, 3, 7, 6, 2]) == [(1, 3), (5, 7)]
    assert compress_slots([]) == []
