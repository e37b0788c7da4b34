from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from redis_operator.core.models import (
    AdminSettings,
    ClusterDeclaration,
    KubernetesSettings,
    OperatorSettings,
    StoreSettings,
)


class OperatorContext(BaseModel):
    """
    Process-wide configuration of the operator, assembled from operator.yaml.
    """
    model_config = ConfigDict(extra="forbid")

    # Control loop settings (Maps to 'operator' section)
    settings: OperatorSettings = Field(default_factory=OperatorSettings)

    # Blueprint persistence (Maps to 'store' section)
    store: StoreSettings = Field(default_factory=StoreSettings)

    # Admin RPC surface (Maps to 'admin' section)
    admin: AdminSettings = Field(default_factory=AdminSettings)

    # Custom resource and pod labelling (Maps to 'kubernetes' section)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)

    # Declarations served by the simulation (Maps to 'instances' section)
    instances: Dict[str, ClusterDeclaration] = Field(default_factory=dict)

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None, **data: Any):
        """
        Initialize the context, optionally with a configuration dictionary.
        """
        if config_dict:
            if 'settings' not in data:
                data['settings'] = OperatorSettings(**(config_dict.get('operator') or {}))
            if 'store' not in data:
                data['store'] = StoreSettings(**(config_dict.get('store') or {}))
            if 'admin' not in data:
                data['admin'] = AdminSettings(**(config_dict.get('admin') or {}))
            if 'kubernetes' not in data:
                data['kubernetes'] = KubernetesSettings(**(config_dict.get('kubernetes') or {}))
            if 'instances' not in data:
                data['instances'] = {
                    name: ClusterDeclaration.model_validate(spec or {})
                    for name, spec in (config_dict.get('instances') or {}).items()
                }

        super().__init__(**data)
