"""Pydantic models for cluster descriptors, snapshots and API payloads.

These models provide:
1. Type-safe parsing of control plane JSON
2. Validation of caller intent at the boundary (fail fast, fail loudly)
3. One-time credentials held as SecretStr so they never leak into logs
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from .config import MAX_CLUSTER_NAME_LENGTH

# =============================================================================
# Lifecycle
# =============================================================================


class ClusterState(str, Enum):
    """Cluster lifecycle states reported by the control plane."""

    PROVISIONING = "PROVISIONING"
    PROVISIONED = "PROVISIONED"
    UPDATING_PLAN = "UPDATING PLAN"
    DEPROVISIONING = "DEPROVISIONING"
    DEPROVISIONED = "DEPROVISIONED"
    DISABLED = "DISABLED"
    MAINTENANCE = "MAINTENANCE"
    READONLY = "READONLY"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value: object) -> ClusterState:
        # States added to the API later must not break snapshot parsing
        return cls.UNKNOWN

    @property
    def is_transitional(self) -> bool:
        """Check if the cluster is mid-change and should be polled again."""
        return self in (
            ClusterState.PROVISIONING,
            ClusterState.UPDATING_PLAN,
            ClusterState.DEPROVISIONING,
        )


class OperationKind(str, Enum):
    """Kinds of reconciliation operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


# =============================================================================
# Desired state
# =============================================================================


class ClusterDescriptor(BaseModel):
    """Desired configuration for a cluster, supplied by the caller."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=MAX_CLUSTER_NAME_LENGTH)]
    plan: str | None = None
    space: str | None = None
    release: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name cannot be blank")
        return v

    @field_validator("plan", "space", "release")
    @classmethod
    def strip_references(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def to_create_payload(self) -> dict[str, Any]:
        """Convert to the cluster creation request body."""
        payload: dict[str, Any] = {"name": self.name}
        if self.plan:
            payload["plan"] = self.plan
        if self.space:
            payload["space"] = self.space
        if self.release:
            payload["release"] = self.release
        return payload

    def to_update(self) -> ClusterUpdate:
        """Extract the fields the control plane accepts on update."""
        return ClusterUpdate(name=self.name, plan=self.plan)


class ClusterUpdate(BaseModel):
    """Mutable subset of a cluster sent on update."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    plan: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name}
        if self.plan:
            payload["plan"] = self.plan
        return payload


# =============================================================================
# Observed state
# =============================================================================


class PlanRef(BaseModel):
    """Plan as referenced from a cluster."""

    model_config = ConfigDict(extra="ignore")

    slug: str = ""
    uri: str = ""


class ReleaseRef(BaseModel):
    """Release as referenced from a cluster."""

    model_config = ConfigDict(extra="ignore")

    service_type: str = ""
    package_name: str = ""
    version: str = ""
    slug: str = ""
    uri: str = ""


class SpaceRef(BaseModel):
    """Space (server group) as referenced from a cluster."""

    model_config = ConfigDict(extra="ignore")

    path: str = ""
    region: str = ""
    uri: str = ""


class ClusterStats(BaseModel):
    """Coarse usage statistics. Updated remotely every 10-15 minutes."""

    model_config = ConfigDict(extra="ignore")

    docs: int = 0
    shards_used: int = 0
    data_bytes_used: int = 0


class ClusterAccess(BaseModel):
    """Connection details.

    ``username``, ``password`` and ``url`` are only returned by the creation
    call and come back empty from every later read.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    host: str = ""
    port: int = 443
    scheme: str = "https"
    username: SecretStr | None = Field(None, alias="user")
    password: SecretStr | None = Field(None, alias="pass")
    url: SecretStr | None = None

    @field_validator("username", "password", "url", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v:
            return None
        return v

    @property
    def has_credentials(self) -> bool:
        """Check if the one-time credentials are present."""
        return self.username is not None and self.password is not None


class ClusterSnapshot(BaseModel):
    """Last observed remote representation of a cluster."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    slug: str = ""
    name: str = ""
    uri: str = ""

    # Only set from the creation response
    message: str = ""
    monitor: str = ""

    state: ClusterState = ClusterState.UNKNOWN
    plan: PlanRef = Field(default_factory=PlanRef)
    release: ReleaseRef = Field(default_factory=ReleaseRef)
    space: SpaceRef = Field(default_factory=SpaceRef)
    stats: ClusterStats = Field(default_factory=ClusterStats)
    access: ClusterAccess = Field(default_factory=ClusterAccess)

    @field_validator("state", mode="before")
    @classmethod
    def coerce_state(cls, v: Any) -> Any:
        if v is None or v == "":
            return ClusterState.UNKNOWN
        if isinstance(v, str) and not isinstance(v, ClusterState):
            return ClusterState(v.upper())
        return v

    @property
    def is_ready(self) -> bool:
        """Check if the cluster is provisioned and serving."""
        return self.state == ClusterState.PROVISIONED

    def to_output(self, show_secrets: bool = False) -> dict[str, Any]:
        """Render as a JSON-serializable dict, masking secrets by default."""
        data = self.model_dump(mode="json", by_alias=False)
        data["state"] = self.state.value
        if show_secrets:
            for key in ("username", "password", "url"):
                secret = getattr(self.access, key)
                data["access"][key] = secret.get_secret_value() if secret else None
        return data


# =============================================================================
# API responses
# =============================================================================


class CreateClusterResponse(BaseModel):
    """Response to a cluster creation request.

    The creation response carries the one-time credentials but may omit the
    slug. The access host is the cluster slug on this platform.
    """

    model_config = ConfigDict(extra="ignore")

    message: str = ""
    monitor: str = ""
    slug: str = ""
    access: ClusterAccess = Field(default_factory=ClusterAccess)

    @property
    def identifier(self) -> str:
        """The cluster slug, falling back to the access host."""
        return self.slug or self.access.host

    def to_snapshot(self) -> ClusterSnapshot:
        """Seed a partial snapshot from the creation response."""
        return ClusterSnapshot(
            slug=self.identifier,
            message=self.message,
            monitor=self.monitor,
            state=ClusterState.PROVISIONING,
            access=self.access.model_copy(),
        )


class ClusterOperationResponse(BaseModel):
    """Response to update and destroy requests."""

    model_config = ConfigDict(extra="ignore")

    message: str = ""
    monitor: str = ""


# =============================================================================
# Catalog
# =============================================================================


class Plan(BaseModel):
    """A subscription plan clusters can be provisioned on."""

    model_config = ConfigDict(extra="ignore")

    slug: str
    name: str = ""
    price_in_cents: int = 0
    billing_interval_in_months: int = 0
    single_tenant: bool = False
    private_network: bool = False
    available_releases: list[str] = Field(default_factory=list)
    available_spaces: list[str] = Field(default_factory=list)
    uri: str = ""


class Space(BaseModel):
    """A server group clusters can be placed in."""

    model_config = ConfigDict(extra="ignore")

    path: str
    private_network: bool = False
    cloud: dict[str, Any] = Field(default_factory=dict)
    region: str = ""
    uri: str = ""


class Release(BaseModel):
    """A search engine release clusters can run."""

    model_config = ConfigDict(extra="ignore")

    slug: str
    name: str = ""
    service_type: str = ""
    version: str = ""
    multitenant: bool = False
    package_name: str = ""
    uri: str = ""
