from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperatorSettings(BaseSettings):
    """
    Control loop settings (the 'operator' section in operator.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='REDIS_OPERATOR_', extra='ignore')

    namespace: str = "default"
    requeue_seconds: float = Field(default=15.0, gt=0)
    probe_timeout_seconds: float = Field(default=2.0, gt=0)
    command_timeout_seconds: float = Field(default=10.0, gt=0)
    ready_timeout_seconds: float = Field(default=10.0, gt=0)
    lost_node_threshold: int = Field(default=2, ge=1)
    probe_workers: int = Field(default=8, ge=1)
    conflict_retries: int = Field(default=3, ge=1)
    redis_port: int = Field(default=6379, ge=1, le=65535)
    log_level: str = "INFO"

    @model_validator(mode='after')
    def timeouts_fit_in_tick(self) -> 'OperatorSettings':
        for field_name in ("probe_timeout_seconds", "command_timeout_seconds", "ready_timeout_seconds"):
            if getattr(self, field_name) >= self.requeue_seconds:
                raise ValueError(f"{field_name} must be shorter than requeue_seconds ({self.requeue_seconds})")
        return self


class StoreSettings(BaseModel):
    """
    Blueprint persistence settings (the 'store' section in operator.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    url: str = "sqlite:///redis-operator.db"
    connect_args: Dict[str, Any] = Field(default_factory=dict)


class AdminSettings(BaseModel):
    """
    Admin RPC settings (the 'admin' section in operator.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8099, ge=1, le=65535)


class KubernetesSettings(BaseModel):
    """
    Custom resource and pod labelling settings (the 'kubernetes' section in operator.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    group: str = "db.payu.com"
    version: str = "v1"
    plural: str = "redisclusters"
    cluster_label: str = "redis-cluster"
    node_label: str = "redis-node-name"
    role_label: str = "redis-node-role"
    container_name: str = "redis"
    in_cluster: Optional[bool] = None


class PodResources(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)


class MemberConfig(BaseModel):
    """Running configuration of a member; compared field by field for drift."""
    model_config = ConfigDict(frozen=True)

    image: str
    resources: PodResources = Field(default_factory=PodResources)
    env: Dict[str, str] = Field(default_factory=dict)


class ClusterDeclaration(BaseModel):
    """
    Operator-declared cluster shape, parsed from the RedisCluster resource spec.
    """
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    leader_count: int = Field(alias="leaderCount", ge=1)
    replicas_per_leader: int = Field(default=0, alias="leaderFollowersCount", ge=0)
    image: str = "redis:7.2"
    resources: PodResources = Field(default_factory=PodResources, alias="podResources")
    env: Dict[str, str] = Field(default_factory=dict, alias="redisContainerEnvVariables")
    annotations: Dict[str, str] = Field(default_factory=dict, alias="podAnnotations")
    label_selector: Dict[str, str] = Field(default_factory=dict, alias="podLabelSelector")

    @field_validator("env", mode="before")
    @classmethod
    def accept_env_var_list(cls, value: Any) -> Any:
        # Kubernetes style: [{"name": "X", "value": "1"}, ...]
        if isinstance(value, list):
            return {item["name"]: str(item.get("value", "")) for item in value}
        return value

    def desired_member_config(self) -> MemberConfig:
        return MemberConfig(image=self.image, resources=self.resources, env=dict(self.env))

    @property
    def total_members(self) -> int:
        return self.leader_count * (1 + self.replicas_per_leader)


class ClusterResource(BaseModel):
    """A fetched declaration together with its persisted lifecycle status field."""

    instance: str
    declaration: ClusterDeclaration
    state: str = ""
    report: str = ""


class AdminCommandResult(BaseModel):
    """Outcome of a long-running cluster administration command (rebalance, fix)."""

    ok: bool
    output: str = ""
