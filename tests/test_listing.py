"""Tests for best-effort membership listing."""
from __future__ import annotations

import pytest
from fakes import make_handler, members

from unicloud.errors import BackendError
from unicloud.services import ServiceType, list_services


def test_list_services_sorts_members_naturally() -> None:
    """Member names sort with numeric runs compared as numbers."""
    handler, _ = make_handler(
        {ServiceType.VIRTUALIZATION: {"a": members("node10", "node2", "Node1")}},
        service_types=[ServiceType.VIRTUALIZATION],
    )

    clusters = list_services(handler)

    names = [member.name for member in clusters[ServiceType.VIRTUALIZATION]]
    assert names == ["Node1", "node2", "node10"]


def test_list_services_reports_unclustered_backends_as_empty() -> None:
    """Unclustered backends do not fail the listing."""
    handler, _ = make_handler(
        {
            ServiceType.ORCHESTRATOR: {"a": members("a", "b")},
            ServiceType.VIRTUALIZATION: {"a": members("a", "b")},
        }
    )

    clusters = list_services(handler)

    assert list(clusters) == list(ServiceType)
    assert clusters[ServiceType.STORAGE] == ()
    assert clusters[ServiceType.NETWORKING] == ()
    assert len(clusters[ServiceType.ORCHESTRATOR]) == 2


def test_list_services_propagates_backend_failures() -> None:
    """Unexpected backend errors still fail the listing."""
    handler, _ = make_handler(
        {ServiceType.VIRTUALIZATION: {"a": BackendError("forbidden", status_code=403)}},
        service_types=[ServiceType.VIRTUALIZATION],
    )

    with pytest.raises(BackendError):
        list_services(handler)
