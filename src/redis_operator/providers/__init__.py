from redis_operator.providers.memory import (
	SimulatedDeclarationSource,
	SimulatedMemberProvider,
	SimulatedPlatform,
)
from redis_operator.providers.protocols import (
	ClusterAdmin,
	DeclarationSource,
	KeyValueBackend,
	MemberHandle,
	MemberProvider,
)

__all__ = [
	"ClusterAdmin",
	"DeclarationSource",
	"KeyValueBackend",
	"MemberHandle",
	"MemberProvider",
	"SimulatedDeclarationSource",
	"SimulatedMemberProvider",
	"SimulatedPlatform",
]
