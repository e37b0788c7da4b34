from types import SimpleNamespace

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from redis_operator.core.models import ClusterDeclaration, KubernetesSettings
from redis_operator.core.topology import NodeHealth, NodeRole
from redis_operator.providers import kubernetes as k8s
from redis_operator.providers.kubernetes import KubernetesDeclarationSource, KubernetesMemberProvider
from redis_operator.providers.protocols import MemberHandle
from redis_operator.utils.diagnostics import ConflictError, DeclarationInvalidError, TransientError

SETTINGS = KubernetesSettings()


def _pod(node, role="leader", ip="10.1.0.7", phase="Running", image="redis:7.2", env=None):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=f"demo-{node}",
            labels={"redis-cluster": "demo", "redis-node-name": node, "redis-node-role": role},
        ),
        spec=client.V1PodSpec(containers=[
            client.V1Container(
                name="redis",
                image=image,
                env=[client.V1EnvVar(name=k, value=v) for k, v in (env or {}).items()],
                resources=client.V1ResourceRequirements(limits={"memory": "256Mi"}),
            ),
        ]),
        status=client.V1PodStatus(pod_ip=ip, phase=phase),
    )


class FakeCoreApi:
    def __init__(self, pods=None):
        self.pods = {pod.metadata.name: pod for pod in pods or []}
        self.created = []
        self.deleted = []
        self.fail_create = None

    def create_namespaced_pod(self, namespace, body):
        if self.fail_create is not None:
            raise self.fail_create
        self.created.append(body)

    def delete_namespaced_pod(self, name, namespace, grace_period_seconds=None):
        if name not in self.pods:
            raise ApiException(status=404, reason="Not Found")
        self.deleted.append(name)
        del self.pods[name]

    def read_namespaced_pod(self, name, namespace):
        if name not in self.pods:
            raise ApiException(status=404, reason="Not Found")
        return self.pods[name]

    def list_namespaced_pod(self, namespace, label_selector):
        return SimpleNamespace(items=list(self.pods.values()))


def test_list_members_maps_pods():
    unlabelled = _pod("x")
    unlabelled.metadata.labels = {"redis-cluster": "demo"}
    api = FakeCoreApi([_pod("leader-0", env={"A": "1"}), _pod("leader-0-replica-0", role="replica", ip=None, phase="Pending"), unlabelled])
    provider = KubernetesMemberProvider(api, "demo", "redis", SETTINGS)

    members = {handle.name: handle for handle in provider.list_members()}

    assert sorted(members) == ["leader-0", "leader-0-replica-0"]
    leader = members["leader-0"]
    assert leader.role == NodeRole.LEADER
    assert leader.address == "10.1.0.7:6379"
    assert leader.phase == "Running"
    assert leader.config.image == "redis:7.2"
    assert leader.config.env == {"A": "1"}
    assert leader.config.resources.limits == {"memory": "256Mi"}

    replica = members["leader-0-replica-0"]
    assert replica.role == NodeRole.REPLICA
    assert replica.address is None


def test_pod_manifest_carries_declaration():
    api = FakeCoreApi()
    provider = KubernetesMemberProvider(api, "demo", "redis", SETTINGS, redis_port=7000)
    declaration = ClusterDeclaration(
        leader_count=1,
        image="redis:7.4",
        env={"MAXMEMORY": "1gb"},
        annotations={"team": "cache"},
        label_selector={"app": "redis"},
    )

    handle = provider.create_member("leader-0", NodeRole.LEADER, declaration)

    body = api.created[0]
    assert body["metadata"]["name"] == "demo-leader-0"
    assert body["metadata"]["labels"] == {
        "app": "redis",
        "redis-cluster": "demo",
        "redis-node-name": "leader-0",
        "redis-node-role": "leader",
    }
    assert body["metadata"]["annotations"] == {"team": "cache"}
    container = body["spec"]["containers"][0]
    assert container["image"] == "redis:7.4"
    assert container["env"] == [{"name": "MAXMEMORY", "value": "1gb"}]
    assert {"name": "cluster-bus", "containerPort": 17000} in container["ports"]
    assert handle.config == declaration.desired_member_config()


def test_create_conflict_and_transient_errors():
    api = FakeCoreApi()
    provider = KubernetesMemberProvider(api, "demo", "redis", SETTINGS)
    declaration = ClusterDeclaration(leader_count=1)

    api.fail_create = ApiException(status=409, reason="AlreadyExists")
    with pytest.raises(ConflictError):
        provider.create_member("leader-0", NodeRole.LEADER, declaration)

    api.fail_create = ApiException(status=500, reason="Internal Server Error")
    with pytest.raises(TransientError, match="500"):
        provider.create_member("leader-0", NodeRole.LEADER, declaration)


def test_delete_member_ignores_missing_pods():
    api = FakeCoreApi([_pod("leader-0")])
    provider = KubernetesMemberProvider(api, "demo", "redis", SETTINGS)

    provider.delete_member("leader-0")
    provider.delete_member("leader-1")

    assert api.deleted == ["demo-leader-0"]


def test_probe_health_pings_running_pods(monkeypatch):
    pinged = []

    def fake_ping(address, timeout):
        pinged.append(address)
        return True

    monkeypatch.setattr(k8s, "ping", fake_ping)
    provider = KubernetesMemberProvider(FakeCoreApi(), "demo", "redis", SETTINGS)

    running = MemberHandle(name="leader-0", role=NodeRole.LEADER, address="10.1.0.7:6379", phase="Running")
    pending = MemberHandle(name="leader-1", role=NodeRole.LEADER, address="10.1.0.8:6379", phase="Pending")

    assert provider.probe_health(running) == NodeHealth.OK
    assert provider.probe_health(pending) == NodeHealth.UNREACHABLE
    assert pinged == ["10.1.0.7:6379"]


def test_wait_until_ready_returns_handle(monkeypatch):
    monkeypatch.setattr(k8s, "ping", lambda address, timeout: True)
    provider = KubernetesMemberProvider(FakeCoreApi([_pod("leader-0")]), "demo", "redis", SETTINGS)

    handle = provider.wait_until_ready("leader-0", timeout=1.0)

    assert handle.address == "10.1.0.7:6379"


def test_wait_until_ready_gives_up(monkeypatch):
    monkeypatch.setattr(k8s, "ping", lambda address, timeout: False)
    provider = KubernetesMemberProvider(FakeCoreApi([_pod("leader-0")]), "demo", "redis", SETTINGS)

    assert provider.wait_until_ready("leader-0", timeout=0.6) is None


class FakeCustomApi:
    def __init__(self, objects):
        self.objects = objects
        self.patches = []

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        if name not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return self.objects[name]

    def patch_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        self.patches.append((name, body))

    def list_namespaced_custom_object(self, group, version, namespace, plural):
        return {"items": [{"metadata": {"name": name}} for name in self.objects]}


def test_declaration_source_reads_resources():
    api = FakeCustomApi({
        "cache": {
            "spec": {"leaderCount": 3, "leaderFollowersCount": 1},
            "status": {"clusterState": "Ready", "report": "Ready (healthy)"},
        },
        "broken": {"spec": {"leaderCount": 0}},
        "fresh": {"spec": {"leaderCount": 1}},
    })
    source = KubernetesDeclarationSource(api, "redis", SETTINGS)

    cache = source.fetch("cache")
    assert cache.declaration.leader_count == 3
    assert cache.state == "Ready"
    assert source.fetch("fresh").state == ""
    assert source.fetch("ghost") is None
    with pytest.raises(DeclarationInvalidError):
        source.fetch("broken")

    assert source.list_instances() == ["broken", "cache", "fresh"]


def test_declaration_source_patches_status():
    api = FakeCustomApi({"cache": {"spec": {"leaderCount": 1}}})
    source = KubernetesDeclarationSource(api, "redis", SETTINGS)

    source.update_status("cache", "Recovering", "Recovering (recovery_pending)")

    assert api.patches == [
        ("cache", {"status": {"clusterState": "Recovering", "report": "Recovering (recovery_pending)"}}),
    ]
