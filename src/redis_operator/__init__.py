"""Operator that keeps sharded, replicated Redis clusters converged on Kubernetes."""

from redis_operator.core.models import ClusterDeclaration, OperatorSettings
from redis_operator.runtime import ClusterReconciler, LifecycleState, OperatorController

__version__ = "0.3.0"

__all__ = [
	"ClusterDeclaration",
	"ClusterReconciler",
	"LifecycleState",
	"OperatorController",
	"OperatorSettings",
	"__version__",
]
