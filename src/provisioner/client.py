"""Control plane client for managed search clusters.

A thin JSON client over azure-core's HTTP pipeline. The reconciler treats it
as a black box through the ControlPlaneClient protocol, so tests substitute
an in-memory implementation.

Status mapping:
- 404 -> ResourceNotFoundError (the only error the poller retries)
- 401/403 -> ClientAuthenticationError
- any other non-2xx -> HttpResponseError carrying the remote message

Structural errors (unknown plan, space or release) come back as 4xx and are
never retried by the transport; RetryPolicy only retries throttling, 5xx
and connection failures.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.core.pipeline import PipelineRequest
from azure.core.pipeline.policies import (
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    SansIOHTTPPolicy,
    UserAgentPolicy,
)
from azure.core.pipeline.transport import HttpTransport
from azure.core.rest import HttpRequest, HttpResponse

from .config import Config
from .models import (
    ClusterDescriptor,
    ClusterOperationResponse,
    ClusterSnapshot,
    ClusterUpdate,
    CreateClusterResponse,
    Plan,
    Release,
    Space,
)

logger = logging.getLogger(__name__)

CLIENT_VERSION = "0.1.0"

ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    403: ClientAuthenticationError,
    404: ResourceNotFoundError,
}


class ControlPlaneClient(Protocol):
    """Operations the reconciler consumes from the control plane."""

    def create(self, descriptor: ClusterDescriptor) -> CreateClusterResponse: ...

    def update(self, slug: str, update: ClusterUpdate) -> ClusterOperationResponse: ...

    def destroy(self, slug: str) -> ClusterOperationResponse: ...

    def get_by_slug(self, slug: str) -> ClusterSnapshot: ...


class BasicAuthCredentialPolicy(SansIOHTTPPolicy):
    """Adds HTTP basic authentication from a named key credential.

    The key name is the API access key and the key value is the API token.
    """

    def __init__(self, credential: AzureNamedKeyCredential) -> None:
        super().__init__()
        self._credential = credential

    def on_request(self, request: PipelineRequest) -> None:
        name, key = self._credential.named_key
        token = base64.b64encode(f"{name}:{key}".encode()).decode("ascii")
        request.http_request.headers["Authorization"] = f"Basic {token}"


def _error_message(response: HttpResponse) -> str:
    """Extract a readable message from an error response body."""
    try:
        body = response.json()
    except (ValueError, DecodeError):
        text = response.text()
        return text[:500].replace("\n", " ").strip() or "<no body>"

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(e) for e in errors)
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])
    return str(body)[:500]


def _unwrap(data: Any, envelope: str) -> Any:
    """Strip the single-resource envelope (e.g. {"cluster": {...}}) if present."""
    if isinstance(data, dict) and isinstance(data.get(envelope), dict):
        return data[envelope]
    return data


class ClusterClient:
    """HTTP client for the cluster, plan, space and release endpoints."""

    def __init__(
        self,
        config: Config,
        *,
        transport: HttpTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Validated configuration supplying endpoint and credentials.
            transport: Optional transport override (tests, proxies).
        """
        self._config = config
        policies = [
            HeadersPolicy({"Accept": "application/json"}),
            UserAgentPolicy(base_user_agent=f"{config.application}/{CLIENT_VERSION}"),
            RetryPolicy(retry_total=config.http_retry_total),
            BasicAuthCredentialPolicy(config.credential),
            HttpLoggingPolicy(),
        ]
        kwargs: dict[str, Any] = {"policies": policies}
        if transport is not None:
            kwargs["transport"] = transport
        self._pipeline = PipelineClient(base_url=config.endpoint.rstrip("/"), **kwargs)

    def close(self) -> None:
        self._pipeline.close()

    def __enter__(self) -> ClusterClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _send(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            ResourceNotFoundError: On 404.
            ClientAuthenticationError: On 401/403.
            HttpResponseError: On any other non-2xx status.
        """
        url = self._pipeline.format_url(path)
        request = HttpRequest(method, url, json=json)
        # The read timeout bounds a stalled fetch during polling
        response = self._pipeline.send_request(
            request,
            connection_timeout=self._config.http_timeout_seconds,
            read_timeout=self._config.http_timeout_seconds,
        )

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.debug(
                "Control plane request failed",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            error_type = ERROR_MAP.get(response.status_code, HttpResponseError)
            raise error_type(message=message, response=response)

        if not response.text():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(
                message=f"Invalid JSON from {method} {path}", response=response
            ) from e

    # Clusters

    def create(self, descriptor: ClusterDescriptor) -> CreateClusterResponse:
        data = self._send("POST", "/clusters", json=descriptor.to_create_payload())
        return CreateClusterResponse.model_validate(data)

    def update(self, slug: str, update: ClusterUpdate) -> ClusterOperationResponse:
        data = self._send("PUT", f"/clusters/{slug}", json=update.to_payload())
        return ClusterOperationResponse.model_validate(data)

    def destroy(self, slug: str) -> ClusterOperationResponse:
        data = self._send("DELETE", f"/clusters/{slug}")
        return ClusterOperationResponse.model_validate(data)

    def get_by_slug(self, slug: str) -> ClusterSnapshot:
        data = self._send("GET", f"/clusters/{slug}")
        return ClusterSnapshot.model_validate(_unwrap(data, "cluster"))

    def list_clusters(self) -> list[ClusterSnapshot]:
        data = self._send("GET", "/clusters")
        return [ClusterSnapshot.model_validate(item) for item in data.get("clusters", [])]

    # Catalog

    def list_plans(self) -> list[Plan]:
        data = self._send("GET", "/plans")
        return [Plan.model_validate(item) for item in data.get("plans", [])]

    def list_spaces(self) -> list[Space]:
        data = self._send("GET", "/spaces")
        return [Space.model_validate(item) for item in data.get("spaces", [])]

    def list_releases(self) -> list[Release]:
        data = self._send("GET", "/releases")
        return [Release.model_validate(item) for item in data.get("releases", [])]

    def get_plan(self, slug: str) -> Plan:
        data = self._send("GET", f"/plans/{slug}")
        return Plan.model_validate(_unwrap(data, "plan"))

    def get_space(self, path: str) -> Space:
        # Space paths contain slashes and are appended as-is
        data = self._send("GET", f"/spaces/{path.strip('/')}")
        return Space.model_validate(_unwrap(data, "space"))

    def get_release(self, slug: str) -> Release:
        data = self._send("GET", f"/releases/{slug}")
        return Release.model_validate(_unwrap(data, "release"))
