"""Value types shared by the service handler, collector and validator."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType


class ServiceType(str, Enum):
    """Backend kinds that make up a cloud."""

    ORCHESTRATOR = "unicloud"
    VIRTUALIZATION = "lxd"
    STORAGE = "microceph"
    NETWORKING = "microovn"

    @property
    def label(self) -> str:
        """Return the human-facing backend name."""
        return _LABELS[self]

    @property
    def is_optional(self) -> bool:
        """Return ``True`` for backends a cloud may run without."""
        return self in OPTIONAL_SERVICES

    def __str__(self) -> str:
        return self.label


_LABELS: Mapping[ServiceType, str] = {
    ServiceType.ORCHESTRATOR: "UniCloud",
    ServiceType.VIRTUALIZATION: "LXD",
    ServiceType.STORAGE: "MicroCeph",
    ServiceType.NETWORKING: "MicroOVN",
}

REQUIRED_SERVICES: tuple[ServiceType, ...] = (
    ServiceType.ORCHESTRATOR,
    ServiceType.VIRTUALIZATION,
)

# Order matters: storage is always set up before networking.
OPTIONAL_SERVICES: tuple[ServiceType, ...] = (
    ServiceType.STORAGE,
    ServiceType.NETWORKING,
)


class MembershipState(str, Enum):
    """What one node can observe about a single backend's clustering."""

    NOT_INSTALLED = "not-installed"
    INSTALLED_UNCLUSTERED = "installed-unclustered"
    CLUSTERED = "clustered"


@dataclass(slots=True, frozen=True)
class ClusterMember:
    """One row returned by a backend membership query."""

    name: str
    address: str
    role: str = ""
    status: str = ""

    def as_row(self) -> tuple[str, str, str, str]:
        """Return the member as a ``(name, address, role, status)`` row."""
        return (self.name, self.address, self.role, self.status)


@dataclass(slots=True, frozen=True)
class ServerInfo:
    """A candidate node and the services it claims to have installed."""

    name: str
    address: str
    services: Mapping[ServiceType, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze the services mapping."""
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))

    def has_service(self, service_type: ServiceType) -> bool:
        """Return ``True`` when *service_type* is installed on the node."""
        return service_type in self.services


@dataclass(slots=True, frozen=True)
class ServiceMembership:
    """Membership of one backend as seen from one node."""

    state: MembershipState
    members: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze the member mapping."""
        object.__setattr__(self, "members", MappingProxyType(dict(self.members)))

    @classmethod
    def not_installed(cls) -> ServiceMembership:
        """Return the membership of a backend missing from the node."""
        return cls(state=MembershipState.NOT_INSTALLED)

    @classmethod
    def from_members(
        cls,
        members: Mapping[str, str],
        *,
        clustered: bool | None = None,
    ) -> ServiceMembership:
        """Build a membership, deriving the state from *members* by default."""
        if clustered is None:
            clustered = len(members) > 0
        state = (
            MembershipState.CLUSTERED if clustered else MembershipState.INSTALLED_UNCLUSTERED
        )
        return cls(state=state, members=members)

    @property
    def installed(self) -> bool:
        """Return ``True`` when the backend is installed on the node."""
        return self.state is not MembershipState.NOT_INSTALLED

    @property
    def clustered(self) -> bool:
        """Return ``True`` when the backend already belongs to a cluster."""
        return self.state is MembershipState.CLUSTERED


@dataclass(slots=True, frozen=True)
class SystemInformation:
    """Cluster memberships one node can currently observe."""

    server: ServerInfo
    existing_services: Mapping[ServiceType, ServiceMembership] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze the membership mapping."""
        object.__setattr__(
            self,
            "existing_services",
            MappingProxyType(dict(self.existing_services)),
        )

    def membership(self, service_type: ServiceType) -> ServiceMembership:
        """Return the membership for *service_type* (not installed when unknown)."""
        return self.existing_services.get(service_type, ServiceMembership.not_installed())

    def members(self, service_type: ServiceType) -> Mapping[str, str]:
        """Return the members observed for *service_type*."""
        return self.membership(service_type).members


def host_of(address: str) -> str:
    """Return *address* without a trailing port (``10.0.0.1:9443`` -> ``10.0.0.1``)."""
    if address.startswith("["):
        return address[1:].split("]", 1)[0]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


__all__ = [
    "ClusterMember",
    "MembershipState",
    "OPTIONAL_SERVICES",
    "REQUIRED_SERVICES",
    "ServerInfo",
    "ServiceMembership",
    "ServiceType",
    "SystemInformation",
    "host_of",
]
