"""Tests for the backend REST clients."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import httpx
import pytest

from unicloud.errors import BackendError, UnavailableError, UnreachableError
from unicloud.services import NotClusteredError
from unicloud.services.clients import Endpoint, LXDClient, MicroClusterClient, RestClient

Handler = Callable[[httpx.Request], httpx.Response]
C = TypeVar("C", bound=RestClient)


def _client(cls: type[C], handler: Handler, endpoint: Endpoint | None = None) -> C:
    endpoint = endpoint or Endpoint.local(Path("/run/test/control.socket"))
    client = cls.__new__(cls)
    client.endpoint = endpoint
    client._client = httpx.Client(  # type: ignore[attr-defined]
        base_url=endpoint.base_url,
        transport=httpx.MockTransport(handler),
    )
    return client


def _sync(metadata: object) -> httpx.Response:
    return httpx.Response(200, json={"type": "sync", "status_code": 200, "metadata": metadata})


def test_micro_cluster_status_and_members() -> None:
    """Micro-cluster daemons report identity and registry members."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/core/1.0":
            return _sync(
                {"name": "a", "address": "10.0.0.1:9443", "version": "2.1.0", "ready": True}
            )
        assert request.url.path == "/core/1.0/cluster"
        return _sync(
            [
                {"name": "a", "address": "10.0.0.1:9443", "role": "voter", "status": "ONLINE"},
                {"name": "b", "address": "10.0.0.2:9443", "role": "spare", "status": "ONLINE"},
            ]
        )

    with _client(MicroClusterClient, handler) as client:
        status = client.status()
        rows = [member.as_row() for member in client.list_members()]
        version = client.server_version()

    assert status.name == "a"
    assert status.ready is True
    assert version == "2.1.0"
    assert rows == [
        ("a", "10.0.0.1:9443", "voter", "ONLINE"),
        ("b", "10.0.0.2:9443", "spare", "ONLINE"),
    ]


def test_lxd_standalone_server_has_no_members() -> None:
    """A standalone virtualization server is not queried for members."""
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return _sync({"environment": {"server_clustered": False, "server_version": "5.21"}})

    client = _client(LXDClient, handler)
    assert client.list_members() == []
    assert client.server_version() == "5.21"
    assert requested == ["/1.0", "/1.0"]


def test_lxd_clustered_members_join_roles() -> None:
    """Clustered virtualization members are read with recursion."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/1.0":
            return _sync({"environment": {"server_clustered": True}})
        assert request.url.path == "/1.0/cluster/members"
        assert request.url.params["recursion"] == "1"
        return _sync(
            [
                {
                    "server_name": "a",
                    "url": "https://10.0.0.1:8443",
                    "roles": ["database-leader", "database"],
                    "status": "Online",
                }
            ]
        )

    (member,) = _client(LXDClient, handler).list_members()
    assert member.name == "a"
    assert member.address == "https://10.0.0.1:8443"
    assert member.role == "database-leader\ndatabase"
    assert member.status == "Online"


def test_service_unavailable_raises_not_clustered() -> None:
    """A 503 answer is reported as an unclustered backend."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            503,
            json={"type": "error", "error": "Daemon not yet initialized", "error_code": 503},
        )

    with pytest.raises(NotClusteredError, match="Daemon not yet initialized"):
        _client(MicroClusterClient, handler).list_members()


def test_other_errors_raise_backend_error() -> None:
    """Non-503 failures carry their status code."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"type": "error", "error": "not authorized"})

    with pytest.raises(BackendError) as excinfo:
        _client(MicroClusterClient, handler).list_members()
    assert excinfo.value.status_code == 403
    assert not isinstance(excinfo.value, UnavailableError)


def test_unexpected_payload_raises_backend_error() -> None:
    """Malformed metadata is rejected."""

    def handler(request: httpx.Request) -> httpx.Response:
        return _sync(["not", "a", "mapping"])

    with pytest.raises(BackendError, match="Unexpected payload"):
        _client(MicroClusterClient, handler).status()


def test_local_transport_failure_is_unavailable() -> None:
    """Failing to reach a local socket means the backend is unavailable."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UnavailableError, match="connection refused"):
        _client(MicroClusterClient, handler).list_members()


def test_remote_transport_failure_is_unreachable() -> None:
    """Failing to reach a peer means the node is unreachable."""
    endpoint = Endpoint.remote(
        "10.0.0.2",
        9443,
        prefix="/1.0/services/microceph",
        cert=Path("/var/lib/unicloud/cluster.crt"),
        key=Path("/var/lib/unicloud/cluster.key"),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UnreachableError, match="timed out"):
        _client(MicroClusterClient, handler, endpoint).list_members()


def test_remote_endpoint_targets_service_proxy() -> None:
    """Remote endpoints go through the peer's service proxy over HTTPS."""
    endpoint = Endpoint.remote(
        "fd42::2",
        9443,
        prefix="/1.0/services/lxd",
        cert=Path("/srv/cluster.crt"),
        key=Path("/srv/cluster.key"),
    )

    assert endpoint.base_url == "https://[fd42::2]:9443/1.0/services/lxd"
    assert endpoint.cert == ("/srv/cluster.crt", "/srv/cluster.key")
    assert endpoint.ca_file == "/srv/cluster.crt"
    assert endpoint.is_local is False
    assert Endpoint.local(Path("/run/x.socket")).is_local is True


def test_remote_client_without_credentials_is_unreachable(tmp_path: Path) -> None:
    """Missing cluster credentials surface as an unreachable peer."""
    endpoint = Endpoint.remote(
        "10.0.0.2",
        9443,
        prefix="",
        cert=tmp_path / "missing.crt",
        key=tmp_path / "missing.key",
    )

    with pytest.raises(UnreachableError, match="cluster credentials"):
        MicroClusterClient(endpoint, timeout=1.0)


def test_non_sync_success_reply_raises_backend_error() -> None:
    """A 2xx answer that is not a backend envelope is never read as an empty cluster."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy page</html>")

    with pytest.raises(BackendError, match="non-sync response"):
        _client(MicroClusterClient, handler).list_members()


def test_null_member_list_raises_backend_error() -> None:
    """Member queries require a list of members."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/1.0":
            return _sync({"environment": {"server_clustered": True}})
        return _sync(None)

    with pytest.raises(BackendError, match="Unexpected payload from /1.0/cluster/members"):
        _client(LXDClient, handler).list_members()
    with pytest.raises(BackendError, match="Unexpected payload from /core/1.0/cluster"):
        _client(MicroClusterClient, handler).list_members()


def test_non_numeric_error_code_falls_back_to_http_status() -> None:
    """A garbled error code still maps onto the HTTP status."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            503,
            json={"type": "error", "error": "not ready", "error_code": "unavailable"},
        )

    with pytest.raises(NotClusteredError, match=r"\(503\): not ready"):
        _client(MicroClusterClient, handler).list_members()
