"""Control plane mock for reconciliation tests.

This package provides an in-memory stand-in for the cluster control plane
so reconciliation can be tested without network access or real time.

Key Features:
- Eventual consistency simulation (404 → PROVISIONING → PROVISIONED)
- Scripted per-read responses for exact scenarios
- Error injection for structural and unexpected failures
- A fake clock that records every wait instead of sleeping

Usage:
    from bonsai_mock import FakeClock, MockControlPlane

    clock = FakeClock()
    plane = MockControlPlane(clock=clock, hidden_polls=2)
    reconciler = ClusterReconciler(plane, config, clock=clock)

    snapshot = reconciler.create(descriptor)

    assert plane.read_count == 3
    assert clock.waits == [10, 10]
"""

from .clock import FakeClock
from .control_plane import (
    DESTROY_ACCEPTED_MESSAGE,
    UPDATE_ACCEPTED_MESSAGE,
    MockCatalog,
    MockCluster,
    MockControlPlane,
    cluster_json,
    not_found,
)
from .http import FakeHttpResponse, make_http_error

__all__ = [
    "DESTROY_ACCEPTED_MESSAGE",
    "UPDATE_ACCEPTED_MESSAGE",
    "FakeClock",
    "FakeHttpResponse",
    "MockCatalog",
    "MockCluster",
    "MockControlPlane",
    "cluster_json",
    "make_http_error",
    "not_found",
]
