from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from pydantic import ValidationError
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from redis_operator.core.models import (
    ClusterDeclaration,
    ClusterResource,
    KubernetesSettings,
    MemberConfig,
    PodResources,
)
from redis_operator.core.naming import format_address
from redis_operator.core.topology import NodeHealth, NodeRole
from redis_operator.providers.protocols import MemberHandle
from redis_operator.providers.redis_admin import ping
from redis_operator.utils.diagnostics import ConflictError, DeclarationInvalidError, OperatorError, TransientError

logger = logging.getLogger(__name__)

CLUSTER_BUS_OFFSET = 10000


def load_kubernetes_config(in_cluster: Optional[bool] = None) -> None:
    """Load credentials; with `in_cluster` unset, try the service account first."""
    if in_cluster is True:
        config.load_incluster_config()
        return
    if in_cluster is False:
        config.load_kube_config()
        return
    try:
        config.load_incluster_config()
    except ConfigException:
        logger.info("Not running inside a cluster, falling back to kubeconfig")
        config.load_kube_config()


def _translate(exc: ApiException, action: str, node: Optional[str] = None) -> OperatorError:
    if exc.status == 409:
        return ConflictError(f"{action}: already exists", node=node)
    return TransientError(f"{action}: {exc.status} {exc.reason}", node=node)


class KubernetesMemberProvider:
    """Backs every logical node with one pod labelled with the cluster and node name."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        instance: str,
        namespace: str,
        settings: KubernetesSettings,
        redis_port: int = 6379,
        probe_timeout: float = 2.0,
    ) -> None:
        self.core_api = core_api
        self.instance = instance
        self.namespace = namespace
        self.settings = settings
        self.redis_port = redis_port
        self.probe_timeout = probe_timeout

    def pod_name(self, name: str) -> str:
        return f"{self.instance}-{name}"

    def create_member(self, name: str, role: NodeRole, declaration: ClusterDeclaration) -> MemberHandle:
        body = self._pod_manifest(name, role, declaration)
        try:
            self.core_api.create_namespaced_pod(namespace=self.namespace, body=body)
        except ApiException as exc:
            raise _translate(exc, f"create pod {self.pod_name(name)}", node=name) from exc
        logger.info("Created pod %s", self.pod_name(name))
        return MemberHandle(name=name, role=role, config=declaration.desired_member_config())

    def delete_member(self, name: str) -> None:
        try:
            self.core_api.delete_namespaced_pod(
                name=self.pod_name(name),
                namespace=self.namespace,
                grace_period_seconds=0,
            )
        except ApiException as exc:
            if exc.status == 404:
                return
            raise _translate(exc, f"delete pod {self.pod_name(name)}", node=name) from exc
        self._wait_until_gone(name)

    def list_members(self) -> List[MemberHandle]:
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"{self.settings.cluster_label}={self.instance}",
            )
        except ApiException as exc:
            raise _translate(exc, "list pods") from exc
        return [handle for handle in (self._handle(pod) for pod in pods.items) if handle is not None]

    def probe_health(self, handle: MemberHandle) -> NodeHealth:
        if handle.address is None or handle.phase != "Running":
            return NodeHealth.UNREACHABLE
        return NodeHealth.OK if ping(handle.address, self.probe_timeout) else NodeHealth.UNREACHABLE

    def wait_until_ready(self, name: str, timeout: float) -> Optional[MemberHandle]:
        retrying = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(0.5),
            retry=retry_if_result(lambda handle: handle is None),
        )
        try:
            return retrying(self._ready_handle, name)
        except RetryError:
            logger.warning("Pod %s was not ready after %.1fs", self.pod_name(name), timeout)
            return None

    def _ready_handle(self, name: str) -> Optional[MemberHandle]:
        try:
            pod = self.core_api.read_namespaced_pod(name=self.pod_name(name), namespace=self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise _translate(exc, f"read pod {self.pod_name(name)}", node=name) from exc
        handle = self._handle(pod)
        if handle is None or self.probe_health(handle) != NodeHealth.OK:
            return None
        return handle

    def _wait_until_gone(self, name: str) -> None:
        # A pod with the same name cannot be created while the old one terminates.
        retrying = Retrying(
            stop=stop_after_delay(self.probe_timeout * 4),
            wait=wait_fixed(0.5),
            retry=retry_if_result(lambda exists: exists),
        )
        try:
            retrying(self._pod_exists, name)
        except RetryError:
            logger.warning("Pod %s is still terminating", self.pod_name(name))

    def _pod_exists(self, name: str) -> bool:
        try:
            self.core_api.read_namespaced_pod(name=self.pod_name(name), namespace=self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise _translate(exc, f"read pod {self.pod_name(name)}", node=name) from exc
        return True

    def _handle(self, pod: client.V1Pod) -> Optional[MemberHandle]:
        labels = pod.metadata.labels or {}
        name = labels.get(self.settings.node_label)
        if not name:
            return None
        role = labels.get(self.settings.role_label, NodeRole.REPLICA.value)
        pod_ip = pod.status.pod_ip if pod.status else None
        phase = pod.status.phase if pod.status and pod.status.phase else "Pending"
        return MemberHandle(
            name=name,
            role=NodeRole(role),
            address=format_address(pod_ip, self.redis_port) if pod_ip else None,
            config=self._running_config(pod),
            phase=phase,
        )

    def _running_config(self, pod: client.V1Pod) -> Optional[MemberConfig]:
        for container in pod.spec.containers or []:
            if container.name != self.settings.container_name:
                continue
            resources = container.resources
            return MemberConfig(
                image=container.image,
                resources=PodResources(
                    requests=dict(resources.requests or {}) if resources else {},
                    limits=dict(resources.limits or {}) if resources else {},
                ),
                env={item.name: item.value or "" for item in container.env or []},
            )
        return None

    def _pod_manifest(self, name: str, role: NodeRole, declaration: ClusterDeclaration) -> Dict[str, Any]:
        labels = {
            **declaration.label_selector,
            self.settings.cluster_label: self.instance,
            self.settings.node_label: name,
            self.settings.role_label: role.value,
        }
        port = self.redis_port
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": self.pod_name(name),
                "namespace": self.namespace,
                "labels": labels,
                "annotations": dict(declaration.annotations),
            },
            "spec": {
                "containers": [
                    {
                        "name": self.settings.container_name,
                        "image": declaration.image,
                        "command": [
                            "redis-server",
                            "--port",
                            str(port),
                            "--cluster-enabled",
                            "yes",
                            "--cluster-node-timeout",
                            "5000",
                            "--appendonly",
                            "no",
                        ],
                        "ports": [
                            {"name": "redis", "containerPort": port},
                            {"name": "cluster-bus", "containerPort": port + CLUSTER_BUS_OFFSET},
                        ],
                        "env": [{"name": key, "value": value} for key, value in declaration.env.items()],
                        "resources": declaration.resources.model_dump(),
                        "readinessProbe": {
                            "exec": {"command": ["redis-cli", "-p", str(port), "ping"]},
                            "periodSeconds": 2,
                        },
                    }
                ],
                "restartPolicy": "Never",
            },
        }


class KubernetesDeclarationSource:
    """Reads RedisCluster custom resources and patches their status subresource."""

    def __init__(self, custom_api: client.CustomObjectsApi, namespace: str, settings: KubernetesSettings) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.settings = settings

    def fetch(self, instance: str) -> Optional[ClusterResource]:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=self.settings.group,
                version=self.settings.version,
                namespace=self.namespace,
                plural=self.settings.plural,
                name=instance,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise _translate(exc, f"get {self.settings.plural}/{instance}") from exc

        try:
            declaration = ClusterDeclaration.model_validate(body.get("spec") or {})
        except ValidationError as exc:
            raise DeclarationInvalidError(f"invalid spec of {self.settings.plural}/{instance}: {exc}") from exc

        status = body.get("status") or {}
        return ClusterResource(
            instance=instance,
            declaration=declaration,
            state=status.get("clusterState", ""),
            report=status.get("report", ""),
        )

    def update_status(self, instance: str, state: str, report: str) -> None:
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=self.settings.group,
                version=self.settings.version,
                namespace=self.namespace,
                plural=self.settings.plural,
                name=instance,
                body={"status": {"clusterState": state, "report": report}},
            )
        except ApiException as exc:
            raise _translate(exc, f"patch status of {self.settings.plural}/{instance}") from exc

    def list_instances(self) -> List[str]:
        try:
            listing = self.custom_api.list_namespaced_custom_object(
                group=self.settings.group,
                version=self.settings.version,
                namespace=self.namespace,
                plural=self.settings.plural,
            )
        except ApiException as exc:
            raise _translate(exc, f"list {self.settings.plural}") from exc
        return sorted(item["metadata"]["name"] for item in listing.get("items", []))
