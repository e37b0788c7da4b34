from typing import Optional
from pydantic import BaseModel

class ReconcileDiagnostic(BaseModel):
    """
    Standardized record of a problem observed while reconciling one cluster instance.
    """
    instance: str
    error_code: str
    message: str
    severity: str = "error" # 'info', 'warning', 'error', 'critical'
    node: Optional[str] = None

    def __str__(self) -> str:
        loc = self.instance
        if self.node:
            loc += f"/{self.node}"
        return f"[{self.error_code}] {self.message} (at {loc})"


class OperatorError(Exception):
    """
    Base exception for every failure the reconciler knows how to classify.
    """
    error_code = "ERR_OPERATOR"

    def __init__(self, message: str, node: Optional[str] = None):
        self.message = message
        self.node = node
        ctx = f" on node '{node}'" if node else ""
        super().__init__(f"{message}{ctx}")

    def to_diagnostic(self, instance: str, severity: str = "error") -> ReconcileDiagnostic:
        return ReconcileDiagnostic(
            instance=instance,
            error_code=self.error_code,
            message=self.message,
            severity=severity,
            node=self.node,
        )


class TransientError(OperatorError):
    """Timeout or connection failure talking to a member or the persistence layer."""
    error_code = "ERR_TRANSIENT"


class ConflictError(OperatorError):
    """Concurrent write rejected by the persistence layer."""
    error_code = "ERR_CONFLICT"


class TopologyInconsistencyError(OperatorError):
    """Blueprint or observed topology violates a structural invariant."""
    error_code = "ERR_TOPOLOGY"


class SlotOwnershipError(OperatorError):
    """A node still owns slots where the operation requires it to own none."""
    error_code = "ERR_SLOT_OWNERSHIP"


class DeclarationNotFoundError(OperatorError):
    """The cluster declaration no longer exists."""
    error_code = "ERR_NOT_FOUND"


class DeclarationInvalidError(OperatorError):
    """The cluster declaration cannot be parsed into a valid cluster shape."""
    error_code = "ERR_DECLARATION"
