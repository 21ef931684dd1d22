"""Tests for the control plane HTTP client."""

from __future__ import annotations

import base64
import json
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.core.pipeline import PipelineContext, PipelineRequest
from azure.core.rest import HttpRequest

from bonsai_mock import FakeHttpResponse
from provisioner.client import BasicAuthCredentialPolicy, ClusterClient
from provisioner.config import Config
from provisioner.models import ClusterDescriptor, ClusterState, ClusterUpdate


@pytest.fixture
def client() -> Iterator[ClusterClient]:
    config = Config(api_key="key", api_token="token", endpoint="https://api.example.test/")
    with ClusterClient(config) as c:
        yield c


def respond(client: ClusterClient, response: FakeHttpResponse) -> Any:
    """Patch the pipeline to return ``response`` for every request."""
    return patch.object(client._pipeline, "send_request", return_value=response)


def sent_request(send: MagicMock) -> HttpRequest:
    return send.call_args.args[0]


class TestBasicAuthCredentialPolicy:
    """Tests for basic auth header injection."""

    def test_sets_authorization_header(self) -> None:
        policy = BasicAuthCredentialPolicy(AzureNamedKeyCredential("key", "token"))
        request = PipelineRequest(
            HttpRequest("GET", "https://api.example.test/clusters"), PipelineContext(None)
        )

        policy.on_request(request)

        expected = base64.b64encode(b"key:token").decode("ascii")
        assert request.http_request.headers["Authorization"] == f"Basic {expected}"

    def test_uses_rotated_credential(self) -> None:
        credential = AzureNamedKeyCredential("key", "token")
        policy = BasicAuthCredentialPolicy(credential)
        credential.update("key2", "token2")
        request = PipelineRequest(
            HttpRequest("GET", "https://api.example.test/clusters"), PipelineContext(None)
        )

        policy.on_request(request)

        expected = base64.b64encode(b"key2:token2").decode("ascii")
        assert request.http_request.headers["Authorization"] == f"Basic {expected}"


class TestClusterOperations:
    """Tests for cluster endpoints."""

    def test_create(self, client: ClusterClient) -> None:
        body = {
            "message": "Your cluster is being provisioned.",
            "monitor": "https://api.example.test/clusters/acct-search-0001",
            "access": {"host": "acct-search-0001", "user": "u", "pass": "p"},
        }
        with respond(client, FakeHttpResponse(202, body)) as send:
            response = client.create(ClusterDescriptor(name="acct-search", plan="sandbox"))

        request = sent_request(send)
        assert request.method == "POST"
        assert request.url == "https://api.example.test/clusters"
        assert json.loads(request.content) == {"name": "acct-search", "plan": "sandbox"}
        assert response.identifier == "acct-search-0001"
        assert response.access.has_credentials

    def test_update(self, client: ClusterClient) -> None:
        body = {"message": "Your cluster is being updated."}
        with respond(client, FakeHttpResponse(200, body)) as send:
            response = client.update("acct-search-0001", ClusterUpdate(name="renamed"))

        request = sent_request(send)
        assert request.method == "PUT"
        assert request.url.endswith("/clusters/acct-search-0001")
        assert json.loads(request.content) == {"name": "renamed"}
        assert response.message == "Your cluster is being updated."

    def test_destroy(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(202, {"message": "bye"})) as send:
            response = client.destroy("acct-search-0001")

        assert sent_request(send).method == "DELETE"
        assert response.message == "bye"

    def test_destroy_empty_body(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(204)):
            response = client.destroy("acct-search-0001")
        assert response.message == ""

    def test_get_by_slug_unwraps_envelope(self, client: ClusterClient) -> None:
        body = {"cluster": {"slug": "acct-search-0001", "name": "acct-search", "state": "PROVISIONED"}}
        with respond(client, FakeHttpResponse(200, body)) as send:
            snapshot = client.get_by_slug("acct-search-0001")

        assert sent_request(send).method == "GET"
        assert snapshot.slug == "acct-search-0001"
        assert snapshot.state == ClusterState.PROVISIONED

    def test_get_by_slug_bare_body(self, client: ClusterClient) -> None:
        body = {"slug": "acct-search-0001", "state": "PROVISIONING"}
        with respond(client, FakeHttpResponse(200, body)):
            snapshot = client.get_by_slug("acct-search-0001")
        assert snapshot.state == ClusterState.PROVISIONING

    def test_list_clusters(self, client: ClusterClient) -> None:
        body = {"clusters": [{"slug": "a"}, {"slug": "b"}]}
        with respond(client, FakeHttpResponse(200, body)):
            clusters = client.list_clusters()
        assert [c.slug for c in clusters] == ["a", "b"]


class TestCatalog:
    """Tests for catalog endpoints."""

    def test_list_plans(self, client: ClusterClient) -> None:
        body = {"plans": [{"slug": "sandbox", "name": "Sandbox"}]}
        with respond(client, FakeHttpResponse(200, body)) as send:
            plans = client.list_plans()
        assert sent_request(send).url.endswith("/plans")
        assert plans[0].slug == "sandbox"

    def test_list_spaces(self, client: ClusterClient) -> None:
        body = {"spaces": [{"path": "omc/bonsai/us-east-1/common", "region": "aws-us-east-1"}]}
        with respond(client, FakeHttpResponse(200, body)):
            spaces = client.list_spaces()
        assert spaces[0].region == "aws-us-east-1"

    def test_list_releases(self, client: ClusterClient) -> None:
        body = {"releases": [{"slug": "opensearch-2.6.0-mt", "version": "2.6.0"}]}
        with respond(client, FakeHttpResponse(200, body)):
            releases = client.list_releases()
        assert releases[0].version == "2.6.0"

    def test_missing_collection_is_empty(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(200, {})):
            assert client.list_plans() == []


class TestSingleLookups:
    """Tests for single plan, space and release lookups."""

    def test_get_plan_unwraps_envelope(self, client: ClusterClient) -> None:
        body = {"plan": {"slug": "sandbox", "name": "Sandbox"}}
        with respond(client, FakeHttpResponse(200, body)) as send:
            plan = client.get_plan("sandbox")
        assert sent_request(send).url.endswith("/plans/sandbox")
        assert plan.name == "Sandbox"

    def test_get_space_by_path(self, client: ClusterClient) -> None:
        body = {"path": "omc/bonsai/us-east-1/common", "region": "aws-us-east-1"}
        with respond(client, FakeHttpResponse(200, body)) as send:
            space = client.get_space("omc/bonsai/us-east-1/common")
        assert sent_request(send).url.endswith("/spaces/omc/bonsai/us-east-1/common")
        assert space.region == "aws-us-east-1"

    def test_get_release(self, client: ClusterClient) -> None:
        body = {"slug": "opensearch-2.6.0-mt", "version": "2.6.0"}
        with respond(client, FakeHttpResponse(200, body)) as send:
            release = client.get_release("opensearch-2.6.0-mt")
        assert sent_request(send).url.endswith("/releases/opensearch-2.6.0-mt")
        assert release.version == "2.6.0"

    def test_unknown_plan_is_not_found(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(404, {"errors": ["Plan not found"]})):
            with pytest.raises(ResourceNotFoundError):
                client.get_plan("gold")


class TestRequestTimeouts:
    """Tests for per-request transport timeouts."""

    def test_http_timeout_bounds_connect_and_read(self) -> None:
        """A stalled read is cut off after HTTP_TIMEOUT, not the transport default."""
        config = Config(api_key="key", api_token="token", http_timeout_seconds=7)
        with ClusterClient(config) as client:
            with respond(client, FakeHttpResponse(200, {"slug": "a"})) as send:
                client.get_by_slug("a")

        kwargs = send.call_args.kwargs
        assert kwargs["read_timeout"] == 7
        assert kwargs["connection_timeout"] == 7


class TestErrorMapping:
    """Tests for HTTP status to azure-core exception mapping."""

    def test_not_found(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(404, {"errors": ["Cluster not found"]})):
            with pytest.raises(ResourceNotFoundError) as exc_info:
                client.get_by_slug("missing")
        assert "Cluster not found" in str(exc_info.value)
        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failures(self, client: ClusterClient, status: int) -> None:
        with respond(client, FakeHttpResponse(status, {"message": "denied"})):
            with pytest.raises(ClientAuthenticationError):
                client.list_plans()

    def test_structural_error_keeps_status(self, client: ClusterClient) -> None:
        body = {"errors": ["Plan 'gold' not found", "Check the plan slug"]}
        with respond(client, FakeHttpResponse(422, body)):
            with pytest.raises(HttpResponseError) as exc_info:
                client.create(ClusterDescriptor(name="a", plan="gold"))

        assert exc_info.value.status_code == 422
        assert "Plan 'gold' not found; Check the plan slug" in str(exc_info.value)

    def test_non_json_error_body(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(500, raw="<html>Internal error</html>")):
            with pytest.raises(HttpResponseError) as exc_info:
                client.list_plans()
        assert "Internal error" in str(exc_info.value)

    def test_invalid_json_success_body(self, client: ClusterClient) -> None:
        with respond(client, FakeHttpResponse(200, raw="not json")):
            with pytest.raises(DecodeError):
                client.list_plans()
