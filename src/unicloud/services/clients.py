"""REST clients for backend membership endpoints.

Backends speak the same envelope (``{"type": "sync", "metadata": ...}`` on
success, ``{"type": "error", "error": ..., "error_code": ...}`` on failure)
either over their local unix socket or, for other nodes, over HTTPS through
the orchestrator's service proxy.
"""
from __future__ import annotations

import ssl
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol

import httpx

from ..errors import BackendError, UnavailableError, UnreachableError
from .types import ClusterMember

HTTP_SERVICE_UNAVAILABLE = 503


class NotClusteredError(UnavailableError):
    """Raised when a backend answers "service unavailable" to a membership query."""


class MembershipClient(Protocol):
    """Client handle returned by :meth:`Service.client`."""

    def __enter__(self) -> MembershipClient: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None: ...

    def list_members(self) -> list[ClusterMember]:
        """Return the cluster members the backend knows about."""
        ...

    def server_version(self) -> str:
        """Return the backend version string."""
        ...

    def close(self) -> None:
        """Release the underlying connection."""
        ...


@dataclass(slots=True, frozen=True)
class NodeStatus:
    """Identity reported by a micro-cluster daemon."""

    name: str
    address: str
    version: str
    ready: bool


@dataclass(slots=True, frozen=True)
class Endpoint:
    """Where and how a client connects."""

    base_url: str
    socket: Path | None = None
    cert: tuple[str, str] | None = None
    ca_file: str | None = None

    @classmethod
    def local(cls, socket: Path) -> Endpoint:
        """Return an endpoint for a local unix socket."""
        return cls(base_url="http://unix", socket=socket)

    @classmethod
    def remote(
        cls,
        address: str,
        port: int,
        *,
        prefix: str,
        cert: Path,
        key: Path,
    ) -> Endpoint:
        """Return an HTTPS endpoint proxied through the node at *address*."""
        host = f"[{address}]" if ":" in address and not address.startswith("[") else address
        return cls(
            base_url=f"https://{host}:{port}{prefix}",
            cert=(str(cert), str(key)),
            ca_file=str(cert),
        )

    @property
    def is_local(self) -> bool:
        """Return ``True`` for unix-socket endpoints."""
        return self.socket is not None


class RestClient:
    """Thin synchronous wrapper around :class:`httpx.Client`."""

    def __init__(self, endpoint: Endpoint, *, timeout: float) -> None:
        """Open a client for *endpoint* with a per-request *timeout* in seconds."""
        self.endpoint = endpoint
        transport = httpx.HTTPTransport(uds=str(endpoint.socket)) if endpoint.is_local else None
        self._client = httpx.Client(
            base_url=endpoint.base_url,
            transport=transport,
            verify=_ssl_context(endpoint),
            timeout=httpx.Timeout(timeout),
        )

    def __enter__(self) -> RestClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def get(self, path: str, *, params: Mapping[str, str] | None = None) -> Any:
        """Issue ``GET path`` and return the response metadata."""
        try:
            response = self._client.get(path, params=params)
        except (httpx.TransportError, httpx.TimeoutException) as exc:
            target = self.endpoint.socket or self.endpoint.base_url
            message = f"Failed to reach {target}: {exc}"
            if self.endpoint.is_local:
                raise UnavailableError(message) from exc
            raise UnreachableError(message) from exc
        return _unwrap(response, path)

    def list_members(self) -> list[ClusterMember]:
        """Return the cluster members (overridden per backend flavour)."""
        raise NotImplementedError

    def server_version(self) -> str:
        """Return the backend version (overridden per backend flavour)."""
        raise NotImplementedError


class MicroClusterClient(RestClient):
    """Client for micro-cluster daemons (orchestrator, storage, networking)."""

    def status(self) -> NodeStatus:
        """Return the daemon's view of its own identity."""
        payload = _as_mapping(self.get("/core/1.0"), "/core/1.0")
        return NodeStatus(
            name=str(payload.get("name", "")),
            address=str(payload.get("address", "")),
            version=str(payload.get("version", "")),
            ready=bool(payload.get("ready", False)),
        )

    def list_members(self) -> list[ClusterMember]:
        """Return the members recorded in the daemon's cluster registry."""
        payload = _as_list(self.get("/core/1.0/cluster"), "/core/1.0/cluster")
        members: list[ClusterMember] = []
        for entry in payload:
            item = _as_mapping(entry, "/core/1.0/cluster")
            members.append(
                ClusterMember(
                    name=str(item.get("name", "")),
                    address=str(item.get("address", "")),
                    role=str(item.get("role", "")),
                    status=str(item.get("status", "")),
                )
            )
        return members

    def server_version(self) -> str:
        """Return the daemon version."""
        return self.status().version


class LXDClient(RestClient):
    """Client for the virtualization daemon's REST API."""

    def server_info(self) -> Mapping[str, Any]:
        """Return the ``environment`` block of ``GET /1.0``."""
        payload = _as_mapping(self.get("/1.0"), "/1.0")
        return _as_mapping(payload.get("environment") or {}, "/1.0 environment")

    def list_members(self) -> list[ClusterMember]:
        """Return cluster members, or an empty list for a standalone server."""
        if not self.server_info().get("server_clustered", False):
            return []
        payload = _as_list(
            self.get("/1.0/cluster/members", params={"recursion": "1"}),
            "/1.0/cluster/members",
        )
        members: list[ClusterMember] = []
        for entry in payload:
            item = _as_mapping(entry, "/1.0/cluster/members")
            roles = item.get("roles") or []
            members.append(
                ClusterMember(
                    name=str(item.get("server_name", "")),
                    address=str(item.get("url", "")),
                    role="\n".join(str(role) for role in roles),
                    status=str(item.get("status", "")),
                )
            )
        return members

    def server_version(self) -> str:
        """Return the daemon version."""
        return str(self.server_info().get("server_version", ""))


def _ssl_context(endpoint: Endpoint) -> ssl.SSLContext | bool:
    if endpoint.cert is None:
        return True
    try:
        context = ssl.create_default_context(cafile=endpoint.ca_file)
        context.load_cert_chain(*endpoint.cert)
    except OSError as exc:
        raise UnreachableError(
            f"Cannot load cluster credentials for {endpoint.base_url}: {exc}"
        ) from exc
    # Cluster certificates are issued per cluster, not per host name.
    context.check_hostname = False
    return context


def _unwrap(response: httpx.Response, path: str) -> Any:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, Mapping):
        body = {}
    status_code = _status_code(body, response)
    if body.get("type") == "error" or status_code >= 400:
        detail = str(body.get("error") or response.reason_phrase or "unknown error")
        message = f"GET {path} failed ({status_code}): {detail}"
        if status_code == HTTP_SERVICE_UNAVAILABLE:
            raise NotClusteredError(message)
        raise BackendError(message, status_code=status_code)
    if body.get("type") != "sync":
        raise BackendError(
            f"GET {path} returned a non-sync response ({response.status_code})",
            status_code=response.status_code,
        )
    return body.get("metadata")


def _status_code(body: Mapping[str, Any], response: httpx.Response) -> int:
    try:
        return int(body.get("error_code") or response.status_code)
    except (TypeError, ValueError):
        return response.status_code


def _as_mapping(value: object, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise BackendError(f"Unexpected payload from {label}: {type(value).__name__}")
    return value


def _as_list(value: object, label: str) -> list[Any]:
    if not isinstance(value, list):
        raise BackendError(f"Unexpected payload from {label}: {type(value).__name__}")
    return value


__all__ = [
    "Endpoint",
    "LXDClient",
    "MembershipClient",
    "MicroClusterClient",
    "NodeStatus",
    "NotClusteredError",
    "RestClient",
]
