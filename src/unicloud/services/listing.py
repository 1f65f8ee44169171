"""Best-effort membership listing for every local service."""
from __future__ import annotations

import re
from collections.abc import Sequence

from .executor import AggregationMode
from .handler import ServiceHandler
from .service import Service, ServiceContext
from .types import ClusterMember, ServiceType

_DIGITS = re.compile(r"(\d+)")


def _natural_key(member: ClusterMember) -> list[tuple[int, int, str]]:
    return [
        (0, int(part), "") if part.isdigit() else (1, 0, part.lower())
        for part in _DIGITS.split(member.name)
        if part
    ]


def _members(service: Service, context: ServiceContext) -> tuple[ClusterMember, ...]:
    with service.client(context) as client:
        members = client.list_members()
    return tuple(sorted(members, key=_natural_key))


def list_services(handler: ServiceHandler) -> dict[ServiceType, Sequence[ClusterMember]]:
    """Return every service's members, naturally sorted by name.

    Services that are present but not yet clustered report no members instead
    of failing the listing.
    """
    context = handler.context()
    results = handler.run_concurrent(
        lambda service: _members(service, context),
        mode=AggregationMode.BEST_EFFORT,
        default=(),
    )
    return {service_type: members or () for service_type, members in results.items()}


__all__ = ["list_services"]
