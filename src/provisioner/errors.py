"""Error taxonomy for cluster reconciliation.

Every error raised by the reconciler carries the operation kind, the cluster
identifier and the elapsed time, so callers can tell a retryable timeout from
structural misconfiguration without parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ClusterSnapshot, OperationKind


class ReconciliationError(Exception):
    """Base class for all reconciliation failures."""

    def __init__(
        self,
        message: str,
        *,
        operation: OperationKind,
        identifier: str = "",
        elapsed_seconds: float = 0.0,
        snapshot: ClusterSnapshot | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.identifier = identifier
        self.elapsed_seconds = elapsed_seconds
        self.snapshot = snapshot

    def __str__(self) -> str:
        base = super().__str__()
        target = self.identifier or "<unassigned>"
        return (
            f"{self.operation.value} cluster {target}: {base} "
            f"(after {self.elapsed_seconds:.1f}s)"
        )


class StructuralReferenceError(ReconciliationError):
    """Raised when the request references a plan, space or release that does not exist.

    Deterministic; never retried.
    """

    pass


class TransientNotFound(ReconciliationError):
    """The cluster is not visible yet. Only retried during polling."""

    pass


class AcceptanceRejected(ReconciliationError):
    """Raised when an update request is not acknowledged by the control plane."""

    pass


class ConvergenceTimeout(ReconciliationError):
    """Raised when polling does not reach a terminal state before the deadline.

    ``snapshot`` holds the best-known partial state. When ``recoverable`` is
    True the cluster most likely exists and the caller may persist the partial
    snapshot and reconcile later.
    """

    def __init__(self, message: str, *, recoverable: bool = True, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.recoverable = recoverable


class ReconciliationCancelled(ReconciliationError):
    """Raised when the caller aborts an operation mid-poll."""

    pass


class UnexpectedRemoteError(ReconciliationError):
    """Raised for any other control plane failure. Carries the remote error text."""

    pass


class ClusterNotFound(ReconciliationError):
    """Raised when reading a cluster that does not exist."""

    pass
