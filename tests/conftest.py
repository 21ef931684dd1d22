"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for bonsai_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from bonsai_mock import FakeClock, MockControlPlane  # noqa: E402

from provisioner.config import Config  # noqa: E402
from provisioner.models import ClusterDescriptor  # noqa: E402
from provisioner.provenance import ProvenanceLogger  # noqa: E402
from provisioner.reconciler import ClusterReconciler  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Configuration with the default 300s timeout and 10s poll interval."""
    return Config(api_key="test-key", api_token="test-token")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def plane(clock: FakeClock) -> MockControlPlane:
    return MockControlPlane(clock=clock)


@pytest.fixture
def reconciler(plane: MockControlPlane, config: Config, clock: FakeClock) -> ClusterReconciler:
    return ClusterReconciler(plane, config, clock=clock, provenance=ProvenanceLogger(enabled=False))


@pytest.fixture
def descriptor() -> ClusterDescriptor:
    return ClusterDescriptor(
        name="acct-search",
        plan="sandbox",
        space="us-east-1/common",
        release="opensearch-2.6.0-mt",
    )
