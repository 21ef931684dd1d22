"""Operation provenance for audit.

Every reconciliation operation is stamped with a provenance record that
answers:
- "What did we ask the control plane to do, and to which cluster?"
- "How long did convergence take, and how many polls?"
- "What version of the operator was running?"

Records are emitted as structured log lines; with JSON logging enabled they
are directly queryable.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class OperationProvenance:
    """Complete provenance record for one reconciliation operation."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operation: str = ""
    operator_version: str = OPERATOR_VERSION
    git_commit_sha: str = ""
    endpoint: str = ""

    # Target
    cluster_slug: str = ""
    cluster_name: str = ""
    plan: str = ""
    space: str = ""
    release: str = ""

    # Outcome
    phase: str = ""
    final_state: str = ""
    poll_attempts: int = 0
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Creates and emits provenance records."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_provenance(
        self,
        operation: str,
        endpoint: str,
        cluster_slug: str = "",
        cluster_name: str = "",
        plan: str | None = None,
        space: str | None = None,
        release: str | None = None,
    ) -> OperationProvenance:
        """Create a new provenance record for an operation."""
        return OperationProvenance(
            operation=operation,
            operator_version=OPERATOR_VERSION,
            git_commit_sha=self._git_commit_sha,
            endpoint=endpoint,
            cluster_slug=cluster_slug,
            cluster_name=cluster_name,
            plan=plan or "",
            space=space or "",
            release=release or "",
        )

    def log_provenance(self, provenance: OperationProvenance) -> None:
        """Log a completed provenance record.

        Failed operations log at ERROR; timeouts and cancellations at WARNING
        since the cluster may still be converging remotely.
        """
        if not self._enabled:
            return

        log_level = logging.INFO
        if provenance.phase in ("timed_out", "cancelled"):
            log_level = logging.WARNING
        elif provenance.error:
            log_level = logging.ERROR

        logger.log(
            log_level,
            "Operation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "operation": provenance.operation,
                "cluster_slug": provenance.cluster_slug,
                "phase": provenance.phase,
                "poll_attempts": provenance.poll_attempts,
                "duration_seconds": provenance.duration_seconds,
                "operator_version": provenance.operator_version,
            },
        )
