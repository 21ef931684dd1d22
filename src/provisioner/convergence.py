"""Convergence predicates: classify a polled response into a verdict.

Each reconciliation operation has its own notion of "done":

- create: the cluster is visible, out of its transitional state, and its
  space has been resolved
- update: the plan change has landed AND the remote name matches the
  desired name (two independent changes that can land separately)
- delete: the cluster is gone, or still listed but DEPROVISIONED

The control plane reports some in-progress conditions only as free text
("... not available ...") in descriptive fields. That matching is confined to
UnavailableMarkers so it can be replaced without touching the reconciler.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from azure.core.exceptions import ResourceNotFoundError

from .models import ClusterSnapshot, ClusterState, OperationKind

# Phrase the control plane returns when it has queued an update
UPDATE_ACCEPTED_PATTERN = r"Your cluster is being updated"

# Placeholder text in fields the control plane has not resolved yet
UNAVAILABLE_PATTERN = r"not available"


class Convergence(str, Enum):
    """Classification of a single poll."""

    READY = "ready"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self != Convergence.IN_PROGRESS

    @property
    def is_success(self) -> bool:
        return self in (Convergence.READY, Convergence.NOT_FOUND)


@dataclass(frozen=True)
class Verdict:
    """Outcome of classifying one poll, with a reason for logs and errors."""

    convergence: Convergence
    reason: str = ""

    @classmethod
    def ready(cls, reason: str = "") -> Verdict:
        return cls(Convergence.READY, reason)

    @classmethod
    def in_progress(cls, reason: str) -> Verdict:
        return cls(Convergence.IN_PROGRESS, reason)

    @classmethod
    def failed(cls, reason: str) -> Verdict:
        return cls(Convergence.FAILED, reason)

    @classmethod
    def not_found(cls, reason: str = "cluster no longer exists") -> Verdict:
        return cls(Convergence.NOT_FOUND, reason)


@dataclass(frozen=True)
class UnavailableMarkers:
    """Detects fields the control plane still reports as unresolved."""

    pattern: re.Pattern[str] = field(default_factory=lambda: re.compile(UNAVAILABLE_PATTERN))

    def find(self, snapshot: ClusterSnapshot) -> str | None:
        """Return the name of the first unresolved field, or None."""
        candidates = {
            "space.path": snapshot.space.path,
            "space.uri": snapshot.space.uri,
        }
        for name, value in candidates.items():
            if value and self.pattern.search(value):
                return name
        return None


DEFAULT_MARKERS = UnavailableMarkers()


def is_update_accepted(message: str) -> bool:
    """Check whether an update response acknowledges the request."""
    return bool(message) and re.search(UPDATE_ACCEPTED_PATTERN, message) is not None


class ConvergencePredicate(Protocol):
    """Classifies a fetch result (snapshot or error) for one operation."""

    def classify(self, snapshot: ClusterSnapshot | None, error: Exception | None) -> Verdict: ...


@dataclass(frozen=True)
class CreatePredicate:
    """Ready once the new cluster is visible and fully provisioned."""

    markers: UnavailableMarkers = DEFAULT_MARKERS

    def classify(self, snapshot: ClusterSnapshot | None, error: Exception | None) -> Verdict:
        if error is not None:
            if isinstance(error, ResourceNotFoundError):
                return Verdict.in_progress("cluster not visible yet")
            return Verdict.failed(str(error))
        if snapshot is None:
            return Verdict.failed("empty response")

        if snapshot.state.is_transitional:
            return Verdict.in_progress(f"state is {snapshot.state.value}")

        unresolved = self.markers.find(snapshot)
        if unresolved:
            return Verdict.in_progress(f"{unresolved} not resolved yet")

        return Verdict.ready(f"state is {snapshot.state.value}")


@dataclass(frozen=True)
class UpdatePredicate:
    """Ready once the plan change has landed and the name matches."""

    desired_name: str
    markers: UnavailableMarkers = DEFAULT_MARKERS

    def classify(self, snapshot: ClusterSnapshot | None, error: Exception | None) -> Verdict:
        if error is not None:
            if isinstance(error, ResourceNotFoundError):
                return Verdict.in_progress("cluster not visible")
            return Verdict.failed(str(error))
        if snapshot is None:
            return Verdict.failed("empty response")

        if snapshot.state == ClusterState.UPDATING_PLAN:
            return Verdict.in_progress("plan update in progress")

        if snapshot.name != self.desired_name:
            return Verdict.in_progress(
                f"name is {snapshot.name!r}, waiting for {self.desired_name!r}"
            )

        unresolved = self.markers.find(snapshot)
        if unresolved:
            return Verdict.in_progress(f"{unresolved} not resolved yet")

        return Verdict.ready(f"state is {snapshot.state.value}")


@dataclass(frozen=True)
class DeletePredicate:
    """Done once the cluster is gone or reported DEPROVISIONED."""

    def classify(self, snapshot: ClusterSnapshot | None, error: Exception | None) -> Verdict:
        if error is not None:
            if isinstance(error, ResourceNotFoundError):
                return Verdict.not_found()
            return Verdict.failed(str(error))
        if snapshot is None:
            return Verdict.failed("empty response")

        if snapshot.state == ClusterState.DEPROVISIONED:
            return Verdict.ready("cluster deprovisioned")

        return Verdict.in_progress(f"state is {snapshot.state.value}")


def predicate_for(
    operation: OperationKind,
    *,
    desired_name: str | None = None,
    markers: UnavailableMarkers = DEFAULT_MARKERS,
) -> ConvergencePredicate:
    """Get the predicate for an operation kind.

    Raises:
        ValueError: If the operation has no polling phase, or update is
            requested without a desired name.
    """
    match operation:
        case OperationKind.CREATE:
            return CreatePredicate(markers=markers)
        case OperationKind.UPDATE:
            if not desired_name:
                raise ValueError("update convergence requires a desired name")
            return UpdatePredicate(desired_name=desired_name, markers=markers)
        case OperationKind.DELETE:
            return DeletePredicate()
    raise ValueError(f"Operation '{operation.value}' has no convergence predicate")


def classify(
    operation: OperationKind,
    snapshot: ClusterSnapshot | None,
    error: Exception | None,
    *,
    desired_name: str | None = None,
) -> Verdict:
    """Classify one poll result for the given operation."""
    return predicate_for(operation, desired_name=desired_name).classify(snapshot, error)
