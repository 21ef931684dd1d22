"""Bounded fixed-interval polling with deadline and cancellation.

The poller is deliberately simple: fetch, classify, and on IN_PROGRESS wait
one interval before fetching again. The wait races the deadline and the
caller's cancel event, so expiry and aborts are noticed at the next wait
boundary. The interval is fixed; there is no exponential backoff.

Time is read through a Clock so tests can drive the loop deterministically.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .convergence import Convergence, ConvergencePredicate, Verdict
from .models import ClusterSnapshot

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Source of monotonic time and interruptible waiting."""

    def monotonic(self) -> float: ...

    def wait(self, seconds: float, cancel: threading.Event | None) -> bool:
        """Block for ``seconds``. Return True if woken by ``cancel``."""
        ...


class SystemClock:
    """Real clock backed by time.monotonic and Event.wait."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, seconds: float, cancel: threading.Event | None) -> bool:
        if seconds <= 0:
            return cancel is not None and cancel.is_set()
        if cancel is None:
            time.sleep(seconds)
            return False
        return cancel.wait(timeout=seconds)


class Deadline:
    """Absolute time budget for one operation."""

    def __init__(self, expires_at: float, clock: Clock) -> None:
        self._expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Clock) -> Deadline:
        return cls(clock.monotonic() + seconds, clock)

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - self._clock.monotonic())

    def expired(self) -> bool:
        return self._clock.monotonic() >= self._expires_at


@dataclass(frozen=True)
class PollPolicy:
    """Fixed-interval retry policy bounded by a deadline and optional attempt cap."""

    interval_seconds: float
    timeout_seconds: float
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


class PollOutcome(str, Enum):
    """How a polling loop ended."""

    CONVERGED = "converged"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    """Result of a polling loop.

    ``snapshot`` is the last successfully fetched snapshot, kept even when the
    loop times out or is cancelled.
    """

    outcome: PollOutcome
    verdict: Verdict | None = None
    snapshot: ClusterSnapshot | None = None
    attempts: int = 0
    elapsed_seconds: float = 0.0
    error: Exception | None = None

    @property
    def converged(self) -> bool:
        return self.outcome == PollOutcome.CONVERGED


Fetch = Callable[[], ClusterSnapshot]
Observer = Callable[[ClusterSnapshot], None]


class StatePoller:
    """Polls a fetch callable until its predicate reports a terminal verdict."""

    def __init__(self, policy: PollPolicy, clock: Clock | None = None) -> None:
        self._policy = policy
        self._clock = clock or SystemClock()

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    def poll(
        self,
        fetch: Fetch,
        predicate: ConvergencePredicate,
        *,
        cancel: threading.Event | None = None,
        deadline: Deadline | None = None,
        on_observe: Observer | None = None,
    ) -> PollResult:
        """Run the polling loop.

        Args:
            fetch: Returns the current snapshot or raises.
            predicate: Classifies each fetch result.
            cancel: Set by the caller to abort at the next wait boundary.
            deadline: Overall budget; defaults to the policy timeout from now.
            on_observe: Called with every successfully fetched snapshot.

        Returns:
            PollResult describing how the loop ended.
        """
        started = self._clock.monotonic()
        deadline = deadline or Deadline.after(self._policy.timeout_seconds, self._clock)
        result = PollResult(outcome=PollOutcome.TIMED_OUT)

        def finish(outcome: PollOutcome) -> PollResult:
            result.outcome = outcome
            result.elapsed_seconds = self._clock.monotonic() - started
            return result

        while True:
            if cancel is not None and cancel.is_set():
                return finish(PollOutcome.CANCELLED)
            if deadline.expired():
                return finish(PollOutcome.TIMED_OUT)

            result.attempts += 1
            snapshot: ClusterSnapshot | None = None
            error: Exception | None = None
            try:
                snapshot = fetch()
            except Exception as e:  # noqa: BLE001 - classified by the predicate
                error = e

            if snapshot is not None:
                result.snapshot = snapshot
                if on_observe is not None:
                    on_observe(snapshot)

            verdict = predicate.classify(snapshot, error)
            result.verdict = verdict
            result.error = error

            logger.debug(
                "Poll result",
                extra={
                    "attempt": result.attempts,
                    "convergence": verdict.convergence.value,
                    "reason": verdict.reason,
                },
            )

            if verdict.convergence == Convergence.FAILED:
                return finish(PollOutcome.FAILED)
            if verdict.convergence.is_terminal:
                return finish(PollOutcome.CONVERGED)

            if (
                self._policy.max_attempts is not None
                and result.attempts >= self._policy.max_attempts
            ):
                logger.info(
                    "Poll attempts exhausted",
                    extra={"attempts": result.attempts, "reason": verdict.reason},
                )
                return finish(PollOutcome.TIMED_OUT)

            remaining = deadline.remaining()
            if remaining <= 0:
                return finish(PollOutcome.TIMED_OUT)

            # Sleep until the next poll or the deadline, whichever is first
            if self._clock.wait(min(self._policy.interval_seconds, remaining), cancel):
                return finish(PollOutcome.CANCELLED)
