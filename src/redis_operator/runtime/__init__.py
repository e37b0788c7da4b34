"""Reconciliation runtime: lifecycle state machine, engines and control loop."""

from redis_operator.runtime.admin_rpc import AdminRPCRequest, AdminRPCResponse, AdminRPCServer, send_admin_command
from redis_operator.runtime.blueprint import BlueprintStore, generate_blueprint
from redis_operator.runtime.controller import OperatorController
from redis_operator.runtime.lifecycle import HandlerOutcome, LifecycleState, transition_lifecycle_state
from redis_operator.runtime.reconciler import ClusterReconciler, ReconcileResult

__all__ = [
	"AdminRPCRequest",
	"AdminRPCResponse",
	"AdminRPCServer",
	"BlueprintStore",
	"ClusterReconciler",
	"HandlerOutcome",
	"LifecycleState",
	"OperatorController",
	"ReconcileResult",
	"generate_blueprint",
	"send_admin_command",
	"transition_lifecycle_state",
]
