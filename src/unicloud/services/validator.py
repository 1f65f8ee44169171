"""Decide whether candidate nodes can take new services, and which ones.

Everything here is pure: callers gather :class:`SystemInformation` for every
candidate first and hand over the complete mapping.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from ..errors import AlreadyConfiguredError, InconsistentClusterError
from .types import (
    OPTIONAL_SERVICES,
    MembershipState,
    ServiceType,
    SystemInformation,
)


@dataclass(slots=True, frozen=True)
class DeltaResolution:
    """Services to add, plus the reason each other optional service was left out."""

    missing: Mapping[ServiceType, str]
    skipped: Mapping[ServiceType, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze both mappings."""
        object.__setattr__(self, "missing", MappingProxyType(dict(self.missing)))
        object.__setattr__(self, "skipped", MappingProxyType(dict(self.skipped)))


def check_consistency(
    collected: Mapping[str, SystemInformation],
    local_name: str,
) -> None:
    """Ensure every candidate shares the local node's virtualization cluster."""
    local = collected.get(local_name)
    if local is None:
        raise InconsistentClusterError(
            f"No system information collected for the local node '{local_name}'.",
            node=local_name,
        )

    expected = len(local.members(ServiceType.VIRTUALIZATION))
    for name in sorted(collected):
        count = len(collected[name].members(ServiceType.VIRTUALIZATION))
        if count == 0:
            raise InconsistentClusterError(
                f"Unable to add services: '{name}' is not part of the "
                f"{ServiceType.VIRTUALIZATION.label} cluster.",
                node=name,
            )
        if count != expected:
            raise InconsistentClusterError(
                f"Unable to add services: '{name}' sees {count} "
                f"{ServiceType.VIRTUALIZATION.label} members but '{local_name}' sees "
                f"{expected}.",
                node=name,
            )


def resolve_missing_services(
    collected: Mapping[str, SystemInformation],
    local_name: str,
) -> DeltaResolution:
    """Return the optional services that still need clustering on every candidate.

    A service is added only when every candidate has it installed and none
    has clustered it yet; any existing membership disqualifies it. Versions
    come from the local node's :class:`ServerInfo`.
    """
    check_consistency(collected, local_name)
    local = collected[local_name]

    missing: dict[ServiceType, str] = {}
    skipped: dict[ServiceType, str] = {}
    for service_type in OPTIONAL_SERVICES:
        states = {
            name: info.membership(service_type).state for name, info in collected.items()
        }
        clustered = sorted(
            name for name, state in states.items() if state is MembershipState.CLUSTERED
        )
        absent = sorted(
            name for name, state in states.items() if state is MembershipState.NOT_INSTALLED
        )
        if clustered:
            skipped[service_type] = f"already clustered on {', '.join(clustered)}"
        elif absent:
            skipped[service_type] = f"not installed on {', '.join(absent)}"
        else:
            missing[service_type] = local.server.services.get(service_type, "")

    if not missing:
        details = "; ".join(
            f"{service_type.label} {reason}" for service_type, reason in skipped.items()
        )
        raise AlreadyConfiguredError(f"All services have already been set up ({details}).")

    return DeltaResolution(missing=missing, skipped=skipped)


__all__ = ["DeltaResolution", "check_consistency", "resolve_missing_services"]
