"""Collect the cluster memberships one node can currently observe."""
from __future__ import annotations

import logging

from .clients import NotClusteredError
from .executor import AggregationMode
from .handler import ServiceHandler
from .service import Service, ServiceContext
from .types import (
    ServerInfo,
    ServiceMembership,
    ServiceType,
    SystemInformation,
)

LOGGER = logging.getLogger(__name__)


def _query_membership(
    service: Service,
    context: ServiceContext,
    server: ServerInfo,
) -> ServiceMembership:
    service_type = service.identify()
    if service_type.is_optional and not server.has_service(service_type):
        return ServiceMembership.not_installed()

    try:
        with service.client(context, target=server) as client:
            members = client.list_members()
    except NotClusteredError as exc:
        # A backend that has not been bootstrapped yet refuses membership queries.
        LOGGER.debug("%s on %s is not clustered: %s", service_type.label, server.name, exc)
        return ServiceMembership.from_members({}, clustered=False)

    mapping = {member.name: member.address for member in members}
    if service_type is ServiceType.ORCHESTRATOR:
        # The registry always lists the node itself.
        return ServiceMembership.from_members(mapping, clustered=len(mapping) > 1)
    return ServiceMembership.from_members(mapping)


def collect_system_information(
    handler: ServiceHandler,
    server: ServerInfo,
) -> SystemInformation:
    """Return the memberships of every backend as seen from *server*.

    Backends missing from ``server.services`` are reported as not installed.
    Failing to reach *server* raises :class:`~unicloud.errors.UnreachableError`.
    """
    context = handler.context()
    results = handler.run_concurrent(
        lambda service: _query_membership(service, context, server),
        mode=AggregationMode.FAIL_FAST,
    )

    existing: dict[ServiceType, ServiceMembership] = {}
    for service_type in ServiceType:
        membership = results.get(service_type)
        if membership is None:
            membership = ServiceMembership.not_installed()
        existing[service_type] = membership

    LOGGER.debug(
        "Collected system information for %s: %s",
        server.name,
        ", ".join(
            f"{service_type.value}={membership.state.value}"
            for service_type, membership in existing.items()
        ),
    )
    return SystemInformation(server=server, existing_services=existing)


__all__ = ["collect_system_information"]
