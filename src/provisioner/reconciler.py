"""Cluster lifecycle reconciliation.

This module turns a single create/update/delete intent into a bounded
sequence of control plane calls that converges on an externally observed
state:

1. ISSUING: send the mutating request (never retried; structural errors
   such as an unknown plan are deterministic)
2. POLLING: fetch the cluster by slug at a fixed interval until the
   operation's predicate reports a terminal verdict, the deadline passes,
   or the caller cancels
3. MERGING: combine the fetched snapshot with what is already known
   (slug, one-time credentials, desired references)

The control plane is eventually consistent. A freshly created cluster is
invisible (404) for a while, then visible with unresolved fields, then
provisioned. Updates are acknowledged with a free-text message and land
field by field. Deletes either disappear or linger as DEPROVISIONED.

Concurrency: one operation per slug at a time. No locking is done here;
callers must serialize mutations of the same cluster.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from pydantic import ValidationError

from .client import ClusterClient, ControlPlaneClient
from .config import Config
from .convergence import ConvergencePredicate, is_update_accepted, predicate_for
from .errors import (
    AcceptanceRejected,
    ClusterNotFound,
    ConvergenceTimeout,
    ReconciliationCancelled,
    ReconciliationError,
    StructuralReferenceError,
    TransientNotFound,
    UnexpectedRemoteError,
)
from .merge import merge_snapshots, overlay_desired, with_connection_url
from .models import ClusterDescriptor, ClusterSnapshot, OperationKind
from .polling import Clock, Deadline, PollOutcome, PollPolicy, PollResult, StatePoller, SystemClock
from .provenance import OperationProvenance, ProvenanceLogger

logger = logging.getLogger(__name__)

# Status codes that mean the request itself is wrong (bad plan/space/release)
CREATE_STRUCTURAL_STATUS_CODES = frozenset({400, 404, 422})
UPDATE_STRUCTURAL_STATUS_CODES = frozenset({400, 422})


class ReconcilePhase(str, Enum):
    """Phases of a single reconciliation operation."""

    ISSUING = "issuing"
    POLLING = "polling"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class OperationContext:
    """Per-operation state: kind, deadline, phase and best-known snapshot.

    Owned exclusively by one operation and discarded when it returns.
    """

    kind: OperationKind
    deadline: Deadline
    clock: Clock
    slug: str = ""
    phase: ReconcilePhase = ReconcilePhase.ISSUING
    best_known: ClusterSnapshot | None = None
    attempts: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock.monotonic()

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started_at

    def transition(self, phase: ReconcilePhase) -> None:
        logger.debug(
            "Phase transition",
            extra={
                "operation": self.kind.value,
                "cluster_slug": self.slug,
                "from_phase": self.phase.value,
                "to_phase": phase.value,
                "elapsed_seconds": round(self.elapsed(), 3),
            },
        )
        self.phase = phase

    def observe(self, snapshot: ClusterSnapshot) -> None:
        """Fold a polled snapshot into the best-known partial state."""
        self.best_known = merge_snapshots(self.best_known, snapshot)

    def error(
        self,
        error_type: type[ReconciliationError],
        message: str,
        **kwargs,
    ) -> ReconciliationError:
        """Build an error carrying this operation's context."""
        kwargs.setdefault("snapshot", self.best_known)
        return error_type(
            message,
            operation=self.kind,
            identifier=self.slug,
            elapsed_seconds=self.elapsed(),
            **kwargs,
        )


PartialFinalizer = Callable[[ClusterSnapshot], ClusterSnapshot]


class ClusterReconciler:
    """Drives create, update and delete of a cluster to convergence.

    Every public operation is synchronous and blocks until the cluster
    converges, the configured timeout elapses, or ``cancel`` is set.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        config: Config,
        *,
        clock: Clock | None = None,
        provenance: ProvenanceLogger | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            client: Control plane client.
            config: Validated configuration (timeouts, poll interval).
            clock: Time source; tests inject a fake.
            provenance: Audit logger; defaults to one honouring config.
        """
        self._client = client
        self._config = config
        self._clock = clock or SystemClock()
        self._policy = PollPolicy(
            interval_seconds=config.poll_interval_seconds,
            timeout_seconds=config.convergence_timeout_seconds,
            max_attempts=config.max_poll_attempts,
        )
        self._provenance = provenance or ProvenanceLogger(enabled=config.enable_audit_logging)

    @classmethod
    def from_config(cls, config: Config) -> ClusterReconciler:
        """Build a reconciler talking to the configured control plane."""
        return cls(ClusterClient(config), config)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    # =========================================================================
    # Operations
    # =========================================================================

    def create(
        self,
        descriptor: ClusterDescriptor,
        cancel: threading.Event | None = None,
    ) -> ClusterSnapshot:
        """Create a cluster and wait until it is provisioned.

        Raises:
            StructuralReferenceError: Plan, space or release does not exist.
            ConvergenceTimeout: Cluster did not converge in time. The error's
                snapshot holds the slug and one-time credentials.
            ReconciliationCancelled: ``cancel`` was set while polling.
            UnexpectedRemoteError: Any other control plane failure.
        """
        ctx = self._start(OperationKind.CREATE)
        provenance = self._provenance.create_provenance(
            operation=ctx.kind.value,
            endpoint=self._config.endpoint,
            cluster_name=descriptor.name,
            plan=descriptor.plan,
            space=descriptor.space,
            release=descriptor.release,
        )

        try:
            try:
                response = self._client.create(descriptor)
            except (AzureError, ValidationError) as e:
                raise self._issue_error(ctx, e, CREATE_STRUCTURAL_STATUS_CODES) from e

            ctx.slug = response.identifier
            if not ctx.slug:
                ctx.transition(ReconcilePhase.FAILED)
                raise ctx.error(
                    UnexpectedRemoteError,
                    f"creation response did not identify the cluster: {response.message!r}",
                )

            # One-time credentials exist only in this response
            ctx.best_known = overlay_desired(response.to_snapshot(), descriptor)
            logger.info(
                "Cluster creation accepted",
                extra={"cluster_slug": ctx.slug, "cluster_name": descriptor.name},
            )

            def finalize(snapshot: ClusterSnapshot) -> ClusterSnapshot:
                return with_connection_url(overlay_desired(snapshot, descriptor))

            result = self._poll(ctx, predicate_for(ctx.kind), cancel, finalize=finalize)

            ctx.transition(ReconcilePhase.MERGING)
            final = finalize(merge_snapshots(ctx.best_known, result.snapshot))
            ctx.transition(ReconcilePhase.DONE)

            logger.info(
                "Cluster provisioned",
                extra={
                    "cluster_slug": final.slug,
                    "state": final.state.value,
                    "poll_attempts": ctx.attempts,
                    "elapsed_seconds": round(ctx.elapsed(), 3),
                },
            )
            self._record(provenance, ctx, final)
            return final

        except ReconciliationError as e:
            self._record(provenance, ctx, e.snapshot, error=e)
            raise

    def update(
        self,
        slug: str,
        descriptor: ClusterDescriptor,
        prior: ClusterSnapshot | None = None,
        cancel: threading.Event | None = None,
    ) -> ClusterSnapshot:
        """Update a cluster's name and plan and wait until both have landed.

        Args:
            slug: Cluster identifier.
            descriptor: Desired state; only name and plan are sent.
            prior: Last persisted snapshot; its slug and credentials survive.
            cancel: Set to abort while polling.

        Raises:
            ClusterNotFound: The cluster does not exist.
            StructuralReferenceError: The requested plan does not exist.
            AcceptanceRejected: The control plane did not acknowledge the update.
            ConvergenceTimeout: The update did not land in time.
            ReconciliationCancelled: ``cancel`` was set while polling.
            UnexpectedRemoteError: Any other control plane failure.
        """
        ctx = self._start(OperationKind.UPDATE, slug=slug)
        prior = prior or ClusterSnapshot(slug=slug)
        ctx.best_known = prior
        provenance = self._provenance.create_provenance(
            operation=ctx.kind.value,
            endpoint=self._config.endpoint,
            cluster_slug=slug,
            cluster_name=descriptor.name,
            plan=descriptor.plan,
        )

        try:
            update = descriptor.to_update()
            try:
                response = self._client.update(slug, update)
            except ResourceNotFoundError as e:
                ctx.transition(ReconcilePhase.FAILED)
                raise ctx.error(ClusterNotFound, "cluster does not exist") from e
            except (AzureError, ValidationError) as e:
                raise self._issue_error(ctx, e, UPDATE_STRUCTURAL_STATUS_CODES) from e

            if not is_update_accepted(response.message):
                ctx.transition(ReconcilePhase.FAILED)
                raise ctx.error(
                    AcceptanceRejected,
                    f"update request was not acknowledged: {response.message!r}",
                )

            logger.info(
                "Cluster update accepted",
                extra={"cluster_slug": slug, "cluster_name": update.name, "plan": update.plan},
            )

            result = self._poll(
                ctx, predicate_for(ctx.kind, desired_name=descriptor.name), cancel
            )

            ctx.transition(ReconcilePhase.MERGING)
            final = merge_snapshots(prior, result.snapshot)
            ctx.transition(ReconcilePhase.DONE)

            logger.info(
                "Cluster updated",
                extra={
                    "cluster_slug": final.slug,
                    "state": final.state.value,
                    "poll_attempts": ctx.attempts,
                },
            )
            self._record(provenance, ctx, final)
            return final

        except ReconciliationError as e:
            self._record(provenance, ctx, e.snapshot, error=e)
            raise

    def delete(self, slug: str, cancel: threading.Event | None = None) -> None:
        """Destroy a cluster and wait until it is gone or DEPROVISIONED.

        A cluster that is already gone counts as deleted.

        Raises:
            ConvergenceTimeout: Deletion was not confirmed in time
                (``recoverable`` is False).
            ReconciliationCancelled: ``cancel`` was set while polling.
            UnexpectedRemoteError: Any other control plane failure.
        """
        ctx = self._start(OperationKind.DELETE, slug=slug)
        provenance = self._provenance.create_provenance(
            operation=ctx.kind.value,
            endpoint=self._config.endpoint,
            cluster_slug=slug,
        )

        try:
            try:
                self._client.destroy(slug)
            except ResourceNotFoundError:
                logger.info("Cluster already deleted", extra={"cluster_slug": slug})
                ctx.transition(ReconcilePhase.DONE)
                self._record(provenance, ctx, None)
                return
            except (AzureError, ValidationError) as e:
                raise self._issue_error(ctx, e, frozenset()) from e

            logger.info("Cluster destroy accepted", extra={"cluster_slug": slug})

            result = self._poll(ctx, predicate_for(ctx.kind), cancel, recoverable=False)
            ctx.transition(ReconcilePhase.DONE)

            logger.info(
                "Cluster deleted",
                extra={
                    "cluster_slug": slug,
                    "convergence": result.verdict.convergence.value if result.verdict else "",
                    "poll_attempts": ctx.attempts,
                },
            )
            self._record(provenance, ctx, result.snapshot)

        except ReconciliationError as e:
            self._record(provenance, ctx, e.snapshot, error=e)
            raise

    def read(self, slug: str, prior: ClusterSnapshot | None = None) -> ClusterSnapshot:
        """Fetch a cluster once, preserving slug and credentials from ``prior``.

        Raises:
            ClusterNotFound: The cluster does not exist.
            UnexpectedRemoteError: Any other control plane failure.
        """
        ctx = self._start(OperationKind.READ, slug=slug)
        try:
            fresh = self._client.get_by_slug(slug)
        except ResourceNotFoundError as e:
            raise ctx.error(ClusterNotFound, "cluster does not exist") from e
        except (AzureError, ValidationError) as e:
            raise ctx.error(UnexpectedRemoteError, f"failed to read cluster: {e}") from e

        return merge_snapshots(prior or ClusterSnapshot(slug=slug), fresh)

    # =========================================================================
    # Internals
    # =========================================================================

    def _start(self, kind: OperationKind, slug: str = "") -> OperationContext:
        return OperationContext(
            kind=kind,
            deadline=Deadline.after(self._policy.timeout_seconds, self._clock),
            clock=self._clock,
            slug=slug,
        )

    def _issue_error(
        self,
        ctx: OperationContext,
        error: Exception,
        structural_status_codes: frozenset[int],
    ) -> ReconciliationError:
        """Classify a failed mutating request. Never retried either way."""
        ctx.transition(ReconcilePhase.FAILED)
        status_code = error.status_code if isinstance(error, HttpResponseError) else None

        if status_code in structural_status_codes:
            logger.error(
                "Control plane rejected request",
                extra={
                    "operation": ctx.kind.value,
                    "status_code": status_code,
                    "error": str(error),
                },
            )
            return ctx.error(StructuralReferenceError, f"request rejected: {error}")

        logger.error(
            "Control plane request failed",
            extra={
                "operation": ctx.kind.value,
                "status_code": status_code,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )
        return ctx.error(UnexpectedRemoteError, f"{ctx.kind.value} request failed: {error}")

    def _poll(
        self,
        ctx: OperationContext,
        predicate: ConvergencePredicate,
        cancel: threading.Event | None,
        *,
        recoverable: bool = True,
        finalize: PartialFinalizer | None = None,
    ) -> PollResult:
        """Poll the cluster until it converges.

        Returns:
            The converged PollResult.

        Raises:
            UnexpectedRemoteError: Predicate reported failure.
            ConvergenceTimeout: Deadline passed or attempts exhausted.
            ReconciliationCancelled: ``cancel`` was set.
        """
        ctx.transition(ReconcilePhase.POLLING)
        poller = StatePoller(self._policy, self._clock)
        slug = ctx.slug

        result = poller.poll(
            lambda: self._client.get_by_slug(slug),
            predicate,
            cancel=cancel,
            deadline=ctx.deadline,
            on_observe=ctx.observe,
        )
        ctx.attempts = result.attempts

        def partial() -> ClusterSnapshot | None:
            if ctx.best_known is None or finalize is None:
                return ctx.best_known
            return finalize(ctx.best_known)

        match result.outcome:
            case PollOutcome.CONVERGED:
                return result

            case PollOutcome.FAILED:
                ctx.transition(ReconcilePhase.FAILED)
                reason = result.verdict.reason if result.verdict else "unknown failure"
                logger.error(
                    "Unexpected error while polling cluster",
                    extra={
                        "operation": ctx.kind.value,
                        "cluster_slug": slug,
                        "attempt": result.attempts,
                        "error": reason,
                    },
                )
                error = ctx.error(
                    UnexpectedRemoteError,
                    f"failed while refreshing cluster state: {reason}",
                    snapshot=partial(),
                )
                raise error from result.error

            case PollOutcome.TIMED_OUT:
                ctx.transition(ReconcilePhase.TIMED_OUT)
                reason = result.verdict.reason if result.verdict else "no response"
                logger.warning(
                    "Timed out waiting for cluster to converge",
                    extra={
                        "operation": ctx.kind.value,
                        "cluster_slug": slug,
                        "attempts": result.attempts,
                        "timeout_seconds": self._policy.timeout_seconds,
                        "last_reason": reason,
                    },
                )
                # A cluster that never became visible is reported as the cause
                cause = None
                if isinstance(result.error, ResourceNotFoundError):
                    cause = ctx.error(TransientNotFound, "cluster not visible yet")
                    cause.__cause__ = result.error
                raise ctx.error(
                    ConvergenceTimeout,
                    f"timed out after {result.attempts} polls, last seen: {reason}",
                    snapshot=partial(),
                    recoverable=recoverable,
                ) from cause

            case PollOutcome.CANCELLED:
                ctx.transition(ReconcilePhase.CANCELLED)
                logger.warning(
                    "Operation cancelled while polling",
                    extra={
                        "operation": ctx.kind.value,
                        "cluster_slug": slug,
                        "attempts": result.attempts,
                    },
                )
                raise ctx.error(
                    ReconciliationCancelled,
                    "cancelled by caller",
                    snapshot=partial(),
                )

        raise AssertionError(f"Unhandled poll outcome: {result.outcome}")

    def _record(
        self,
        provenance: OperationProvenance,
        ctx: OperationContext,
        snapshot: ClusterSnapshot | None,
        error: ReconciliationError | None = None,
    ) -> None:
        provenance.cluster_slug = ctx.slug
        provenance.phase = ctx.phase.value
        provenance.poll_attempts = ctx.attempts
        provenance.duration_seconds = round(ctx.elapsed(), 3)
        if snapshot is not None:
            provenance.final_state = snapshot.state.value
        if error is not None:
            provenance.error = str(error)
            provenance.error_type = type(error).__name__
        self._provenance.log_provenance(provenance)
