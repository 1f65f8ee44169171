"""Tests for system information collection."""
from __future__ import annotations

import pytest
from fakes import VERSIONS, make_handler, members, three_node_topology

from unicloud.errors import UnavailableError, UnreachableError
from unicloud.services import (
    MembershipState,
    ServerInfo,
    ServiceType,
    collect_system_information,
)


def _server(name: str, *service_types: ServiceType) -> ServerInfo:
    selected = service_types or tuple(ServiceType)
    return ServerInfo(
        name=name,
        address="10.0.0.9",
        services={service_type: VERSIONS[service_type] for service_type in selected},
    )


def test_collect_reports_three_membership_states() -> None:
    """Clustered, unclustered and absent backends are told apart."""
    topology = three_node_topology()
    topology[ServiceType.STORAGE] = {"b": members("a", "b")}
    handler, _ = make_handler(topology)

    server = _server(
        "b",
        ServiceType.ORCHESTRATOR,
        ServiceType.VIRTUALIZATION,
        ServiceType.STORAGE,
    )
    info = collect_system_information(handler, server)

    assert info.server == server
    assert info.membership(ServiceType.VIRTUALIZATION).state is MembershipState.CLUSTERED
    assert dict(info.members(ServiceType.VIRTUALIZATION)) == {
        "a": "10.0.0.1:8443",
        "b": "10.0.0.2:8443",
        "c": "10.0.0.3:8443",
    }
    assert info.membership(ServiceType.STORAGE).state is MembershipState.CLUSTERED
    assert info.membership(ServiceType.NETWORKING).state is MembershipState.NOT_INSTALLED
    assert set(info.existing_services) == set(ServiceType)


def test_collect_treats_service_unavailable_as_unclustered() -> None:
    """A 503 from the backend means installed but not clustered."""
    handler, _ = make_handler(three_node_topology())

    info = collect_system_information(handler, _server("c"))

    for service_type in (ServiceType.STORAGE, ServiceType.NETWORKING):
        membership = info.membership(service_type)
        assert membership.state is MembershipState.INSTALLED_UNCLUSTERED
        assert membership.installed
        assert not membership.clustered
        assert dict(membership.members) == {}


def test_collect_skips_backends_missing_from_server() -> None:
    """Optional backends absent from the server are never queried."""
    handler, services = make_handler(three_node_topology())

    collect_system_information(
        handler,
        _server("b", ServiceType.ORCHESTRATOR, ServiceType.VIRTUALIZATION),
    )

    assert services[ServiceType.STORAGE].targets == []
    assert services[ServiceType.NETWORKING].targets == []
    assert services[ServiceType.VIRTUALIZATION].targets == ["b"]


def test_collect_single_member_orchestrator_is_unclustered() -> None:
    """The orchestrator registry always lists the node itself."""
    handler, _ = make_handler(
        {
            ServiceType.ORCHESTRATOR: {"a": members("a")},
            ServiceType.VIRTUALIZATION: {"a": members("a")},
        }
    )

    info = collect_system_information(handler, _server("a"))

    orchestrator = info.membership(ServiceType.ORCHESTRATOR)
    assert orchestrator.state is MembershipState.INSTALLED_UNCLUSTERED
    assert dict(orchestrator.members) == {"a": "10.0.0.1"}
    virtualization = info.membership(ServiceType.VIRTUALIZATION)
    assert virtualization.state is MembershipState.CLUSTERED


def test_collect_uses_local_client_for_local_server() -> None:
    """Querying the local node targets the local name."""
    handler, services = make_handler(three_node_topology())

    collect_system_information(handler, _server("a", ServiceType.ORCHESTRATOR))

    assert services[ServiceType.ORCHESTRATOR].targets == ["a"]


def test_collect_propagates_unreachable_peer() -> None:
    """A peer that cannot be reached fails the whole collection."""
    topology = three_node_topology()
    topology[ServiceType.VIRTUALIZATION]["c"] = UnreachableError("connection refused")
    handler, _ = make_handler(topology)

    with pytest.raises(UnreachableError, match="connection refused"):
        collect_system_information(handler, _server("c"))


def test_collect_propagates_missing_local_socket() -> None:
    """A missing control socket is not mistaken for an unclustered backend."""
    handler, services = make_handler(three_node_topology())
    services[ServiceType.STORAGE].acquire_error = UnavailableError("socket missing")

    with pytest.raises(UnavailableError, match="socket missing"):
        collect_system_information(handler, _server("a"))
