"""End-to-end tests for the add-services workflow."""
from __future__ import annotations

from collections.abc import Mapping

import pytest
from fakes import make_handler, members, three_node_topology

from unicloud.errors import (
    AlreadyConfiguredError,
    InconsistentClusterError,
    PhaseError,
)
from unicloud.services import (
    AddServicesWorkflow,
    ServerInfo,
    ServiceHandler,
    ServiceType,
    WorkflowPhase,
)


class RecordingPhases:
    """External phases that record every call."""

    def __init__(
        self,
        *,
        accept: set[ServiceType] | None = None,
        fail_on: str | None = None,
    ) -> None:
        self.accept = accept
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.offered: dict[ServiceType, str] = {}
        self.joined: dict[ServiceType, str] = {}

    def confirm_services(self, delta: Mapping[ServiceType, str]) -> Mapping[ServiceType, str]:
        self.calls.append("confirm")
        self.offered = dict(delta)
        if self.accept is None:
            return dict(delta)
        return {key: value for key, value in delta.items() if key in self.accept}

    def setup_storage(self, handler: ServiceHandler) -> None:
        self._call("setup_storage")

    def setup_networking(self, handler: ServiceHandler) -> None:
        self._call("setup_networking")

    def join_cluster(self, handler: ServiceHandler, services: Mapping[ServiceType, str]) -> None:
        self.joined = dict(services)
        self._call("join_cluster")

    def _call(self, phase: str) -> None:
        self.calls.append(phase)
        if phase == self.fail_on:
            raise PhaseError(f"{phase} exploded", phase=phase, returncode=1)


def test_workflow_adds_storage_then_networking_then_joins() -> None:
    """Three clustered nodes with no optional services get both added in order."""
    handler, _ = make_handler(three_node_topology())
    phases = RecordingPhases()
    workflow = AddServicesWorkflow(handler, phases)

    session = workflow.run()

    assert phases.offered == {ServiceType.STORAGE: "19.2", ServiceType.NETWORKING: "24.03"}
    assert phases.calls == ["confirm", "setup_storage", "setup_networking", "join_cluster"]
    assert phases.joined == phases.offered
    assert sorted(session.candidates) == ["a", "b", "c"]
    assert session.candidates["b"].address == "10.0.0.2"
    assert [str(step) for step in workflow.history] == [
        "discovering",
        "collecting",
        "validating",
        "confirming",
        "setting-up[microceph]",
        "setting-up[microovn]",
        "joining",
        "done",
    ]
    assert workflow.phase is WorkflowPhase.DONE


def test_workflow_only_offers_services_missing_everywhere() -> None:
    """Networking clustered on one peer leaves storage as the only addition."""
    topology = three_node_topology()
    topology[ServiceType.NETWORKING] = {"b": members("b")}
    handler, _ = make_handler(topology)
    phases = RecordingPhases()

    session = AddServicesWorkflow(handler, phases).run()

    assert phases.offered == {ServiceType.STORAGE: "19.2"}
    assert phases.calls == ["confirm", "setup_storage", "join_cluster"]
    assert session.skipped[ServiceType.NETWORKING] == "already clustered on b"


def test_workflow_aborts_before_any_phase_on_inconsistent_cluster() -> None:
    """A node outside the virtualization cluster stops the workflow."""
    topology = three_node_topology()
    topology[ServiceType.VIRTUALIZATION]["c"] = []
    handler, _ = make_handler(topology)
    phases = RecordingPhases()
    workflow = AddServicesWorkflow(handler, phases)

    with pytest.raises(InconsistentClusterError) as excinfo:
        workflow.run()

    assert excinfo.value.node == "c"
    assert phases.calls == []
    assert workflow.phase is WorkflowPhase.ABORTED
    assert [step.phase for step in workflow.history][-2:] == [
        WorkflowPhase.VALIDATING,
        WorkflowPhase.ABORTED,
    ]


def test_workflow_aborts_when_everything_is_configured() -> None:
    """An empty delta surfaces as an error before confirmation."""
    topology = three_node_topology()
    nodes = ("a", "b", "c")
    topology[ServiceType.STORAGE] = {node: members(*nodes) for node in nodes}
    topology[ServiceType.NETWORKING] = {node: members(*nodes) for node in nodes}
    handler, _ = make_handler(topology)
    phases = RecordingPhases()
    workflow = AddServicesWorkflow(handler, phases)

    with pytest.raises(AlreadyConfiguredError):
        workflow.run()
    assert phases.calls == []
    assert workflow.phase is WorkflowPhase.ABORTED


def test_workflow_respects_declined_services() -> None:
    """Only confirmed services are set up and joined."""
    handler, _ = make_handler(three_node_topology())
    phases = RecordingPhases(accept={ServiceType.NETWORKING})

    session = AddServicesWorkflow(handler, phases).run()

    assert phases.calls == ["confirm", "setup_networking", "join_cluster"]
    assert dict(session.confirmed) == {ServiceType.NETWORKING: "24.03"}
    assert phases.joined == {ServiceType.NETWORKING: "24.03"}


def test_workflow_with_nothing_confirmed_skips_setup() -> None:
    """Declining everything ends the workflow without side effects."""
    handler, _ = make_handler(three_node_topology())
    phases = RecordingPhases(accept=set())
    workflow = AddServicesWorkflow(handler, phases)

    session = workflow.run()

    assert phases.calls == ["confirm"]
    assert dict(session.confirmed) == {}
    assert workflow.phase is WorkflowPhase.DONE


def test_workflow_propagates_phase_errors_without_joining() -> None:
    """A failing setup step aborts the workflow verbatim."""
    handler, _ = make_handler(three_node_topology())
    phases = RecordingPhases(fail_on="setup_storage")
    workflow = AddServicesWorkflow(handler, phases)

    with pytest.raises(PhaseError, match="setup_storage exploded"):
        workflow.run()

    assert phases.calls == ["confirm", "setup_storage"]
    assert [str(step) for step in workflow.history][-2:] == [
        "setting-up[microceph]",
        "aborted",
    ]


def test_workflow_includes_explicit_peers() -> None:
    """Peers passed on the command line join the candidate set."""
    topology = three_node_topology()
    nodes = ("a", "b", "c", "d")
    topology[ServiceType.VIRTUALIZATION] = {node: members(*nodes) for node in nodes}
    handler, services = make_handler(topology)
    phases = RecordingPhases()

    session = AddServicesWorkflow(
        handler,
        phases,
        peers=[ServerInfo(name="d", address="10.0.0.4"), ServerInfo(name="a", address="x")],
    ).run()

    assert sorted(session.candidates) == ["a", "b", "c", "d"]
    assert session.candidates["a"].address == "10.0.0.1"
    assert dict(session.candidates["d"].services) == dict(session.local_services)
    assert "d" in services[ServiceType.VIRTUALIZATION].targets


def test_workflow_collects_each_candidate_once() -> None:
    """The local node is collected during discovery and not queried again."""
    handler, services = make_handler(three_node_topology())

    AddServicesWorkflow(handler, RecordingPhases()).run()

    targets = services[ServiceType.VIRTUALIZATION].targets
    # Once for the version query, once for membership.
    assert targets.count("a") == 2
    assert targets.count("b") == 1
    assert targets.count("c") == 1
