"""Service handles for each backend kind.

Each :class:`Service` variant binds one :class:`ServiceType` to the client
flavour that speaks its API. Variants are looked up through
:data:`SERVICE_REGISTRY` rather than by testing concrete types.
"""
from __future__ import annotations

from abc import ABC
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, cast

from ..errors import UnavailableError
from .clients import (
    Endpoint,
    LXDClient,
    MembershipClient,
    MicroClusterClient,
    NodeStatus,
    RestClient,
)
from .types import OPTIONAL_SERVICES, ServerInfo, ServiceType, host_of

if TYPE_CHECKING:
    from ..config import AppConfig


@dataclass(slots=True, frozen=True)
class ServiceContext:
    """Per-call settings handed to every client acquisition."""

    timeout: float = 30.0


@dataclass(slots=True, frozen=True)
class ServiceSettings:
    """Connection parameters for one backend on the local node."""

    local_name: str
    state_dir: Path
    socket: Path
    cluster_port: int
    cluster_cert: Path
    cluster_key: Path

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        service_type: ServiceType,
        *,
        local_name: str,
    ) -> ServiceSettings:
        """Build settings for *service_type* from the resolved config."""
        service = config.service(service_type)
        return cls(
            local_name=local_name,
            state_dir=service.state_dir,
            socket=service.socket,
            cluster_port=config.cluster.port,
            cluster_cert=config.cluster.cert,
            cluster_key=config.cluster.key,
        )


class Service(ABC):
    """A handle over one backend cluster type on the local node."""

    service_type: ClassVar[ServiceType]
    client_class: ClassVar[type[RestClient]]
    # Prefix under which peers proxy this backend's API.
    proxy_prefix: ClassVar[str]

    def __init__(self, settings: ServiceSettings) -> None:
        """Store connection parameters; no connection is opened yet."""
        self.settings = settings

    def __repr__(self) -> str:
        return f"{type(self).__name__}(socket={str(self.settings.socket)!r})"

    def identify(self) -> ServiceType:
        """Return the backend kind this handle manages."""
        return self.service_type

    def installed(self) -> bool:
        """Return ``True`` when the backend's state directory exists locally."""
        return self.settings.state_dir.is_dir()

    def client(
        self,
        context: ServiceContext,
        target: ServerInfo | None = None,
    ) -> MembershipClient:
        """Return a client for the local backend or for the one on *target*."""
        if target is None or target.name == self.settings.local_name:
            socket = self.settings.socket
            if not socket.exists():
                raise UnavailableError(
                    f"{self.service_type.label} control socket {socket} is not available."
                )
            endpoint = Endpoint.local(socket)
        else:
            endpoint = Endpoint.remote(
                target.address,
                self.settings.cluster_port,
                prefix=self.proxy_prefix,
                cert=self.settings.cluster_cert,
                key=self.settings.cluster_key,
            )
        return self.client_class(endpoint, timeout=context.timeout)

    def version(self, context: ServiceContext) -> str:
        """Return the version of the local backend."""
        with self.client(context) as client:
            return client.server_version()


class OrchestratorService(Service):
    """The orchestrator's own coordination daemon."""

    service_type = ServiceType.ORCHESTRATOR
    client_class = MicroClusterClient
    proxy_prefix = ""

    def status(self, context: ServiceContext) -> NodeStatus:
        """Return the local daemon's name, address and readiness."""
        with cast(MicroClusterClient, self.client(context)) as client:
            return client.status()


class VirtualizationService(Service):
    """The virtualization daemon."""

    service_type = ServiceType.VIRTUALIZATION
    client_class = LXDClient
    proxy_prefix = "/1.0/services/lxd"


class StorageService(Service):
    """The distributed storage daemon."""

    service_type = ServiceType.STORAGE
    client_class = MicroClusterClient
    proxy_prefix = "/1.0/services/microceph"


class NetworkingService(Service):
    """The distributed networking daemon."""

    service_type = ServiceType.NETWORKING
    client_class = MicroClusterClient
    proxy_prefix = "/1.0/services/microovn"


SERVICE_REGISTRY: Mapping[ServiceType, type[Service]] = {
    ServiceType.ORCHESTRATOR: OrchestratorService,
    ServiceType.VIRTUALIZATION: VirtualizationService,
    ServiceType.STORAGE: StorageService,
    ServiceType.NETWORKING: NetworkingService,
}


def detect_installed_services(config: AppConfig) -> list[ServiceType]:
    """Return the optional backends whose state directory exists locally."""
    return [
        service_type
        for service_type in OPTIONAL_SERVICES
        if config.service(service_type).state_dir.is_dir()
    ]


def fetch_local_status(config: AppConfig, context: ServiceContext) -> NodeStatus:
    """Ask the local orchestrator daemon who it is."""
    settings = ServiceSettings.from_config(config, ServiceType.ORCHESTRATOR, local_name="")
    status = OrchestratorService(settings).status(context)
    return NodeStatus(
        name=status.name,
        address=host_of(status.address),
        version=status.version,
        ready=status.ready,
    )


__all__ = [
    "NetworkingService",
    "OrchestratorService",
    "SERVICE_REGISTRY",
    "Service",
    "ServiceContext",
    "ServiceSettings",
    "StorageService",
    "VirtualizationService",
    "detect_installed_services",
    "fetch_local_status",
]
