"""Phased workflow that adds unclustered services to an existing cloud.

The workflow walks ``discovering -> collecting -> validating -> confirming ->
setting-up[service] -> joining -> done``. Any exception moves it to
``aborted`` and is re-raised unchanged; completed external phases are not
rolled back. Each phase receives an immutable :class:`SessionContext` and
returns a new one.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Protocol

from .collector import collect_system_information
from .handler import ServiceHandler
from .types import (
    OPTIONAL_SERVICES,
    ServerInfo,
    ServiceType,
    SystemInformation,
    host_of,
)
from .validator import resolve_missing_services

LOGGER = logging.getLogger(__name__)


class WorkflowPhase(str, Enum):
    """States of the service-addition workflow."""

    DISCOVERING = "discovering"
    COLLECTING = "collecting"
    VALIDATING = "validating"
    CONFIRMING = "confirming"
    SETTING_UP = "setting-up"
    JOINING = "joining"
    DONE = "done"
    ABORTED = "aborted"


class ExternalPhases(Protocol):
    """Interactive and bootstrap steps the workflow delegates."""

    def confirm_services(
        self, delta: Mapping[ServiceType, str]
    ) -> Mapping[ServiceType, str]:
        """Return the subset of *delta* the operator agreed to add."""
        ...

    def setup_storage(self, handler: ServiceHandler) -> None:
        """Prepare the storage backend (disk selection and bootstrap)."""
        ...

    def setup_networking(self, handler: ServiceHandler) -> None:
        """Prepare the networking backend (uplink selection and bootstrap)."""
        ...

    def join_cluster(
        self, handler: ServiceHandler, services: Mapping[ServiceType, str]
    ) -> None:
        """Join every candidate node to the newly set-up services."""
        ...


@dataclass(slots=True, frozen=True)
class SessionContext:
    """Everything one run has learned so far."""

    local_name: str
    local_address: str
    local_services: Mapping[ServiceType, str] = field(default_factory=dict)
    candidates: Mapping[str, ServerInfo] = field(default_factory=dict)
    collected: Mapping[str, SystemInformation] = field(default_factory=dict)
    delta: Mapping[ServiceType, str] = field(default_factory=dict)
    skipped: Mapping[ServiceType, str] = field(default_factory=dict)
    confirmed: Mapping[ServiceType, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze every mapping."""
        for name in (
            "local_services",
            "candidates",
            "collected",
            "delta",
            "skipped",
            "confirmed",
        ):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def local_server(self) -> ServerInfo:
        """Return the local node as a :class:`ServerInfo`."""
        return ServerInfo(
            name=self.local_name,
            address=self.local_address,
            services=self.local_services,
        )


@dataclass(slots=True, frozen=True)
class PhaseTransition:
    """One entry in the workflow history."""

    phase: WorkflowPhase
    service: ServiceType | None = None

    def __str__(self) -> str:
        if self.service is None:
            return self.phase.value
        return f"{self.phase.value}[{self.service.value}]"


class AddServicesWorkflow:
    """Sequence the addition of missing services across the candidate nodes."""

    def __init__(
        self,
        handler: ServiceHandler,
        phases: ExternalPhases,
        *,
        peers: Iterable[ServerInfo] = (),
    ) -> None:
        """Bind the workflow to *handler*; *peers* extend the discovered candidates."""
        self.handler = handler
        self.phases = phases
        self.peers = tuple(peers)
        self.history: list[PhaseTransition] = []
        self._setup_steps: Mapping[ServiceType, Callable[[ServiceHandler], None]] = {
            ServiceType.STORAGE: phases.setup_storage,
            ServiceType.NETWORKING: phases.setup_networking,
        }

    @property
    def phase(self) -> WorkflowPhase | None:
        """Return the current phase (``None`` before :meth:`run`)."""
        return self.history[-1].phase if self.history else None

    def run(self) -> SessionContext:
        """Execute every phase in order and return the final context."""
        self.history.clear()
        context = SessionContext(
            local_name=self.handler.name,
            local_address=self.handler.address,
        )
        try:
            context = self.discover(context)
            context = self.collect(context)
            context = self.validate(context)
            context = self.confirm(context)
            if context.confirmed:
                context = self.set_up(context)
                context = self.join(context)
            else:
                LOGGER.info("No services confirmed; nothing to set up.")
        except Exception as exc:
            LOGGER.info(
                "Add-services workflow aborted during %s: %s",
                self.history[-1] if self.history else "startup",
                exc,
            )
            self._enter(WorkflowPhase.ABORTED)
            raise
        self._enter(WorkflowPhase.DONE)
        return context

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def discover(self, context: SessionContext) -> SessionContext:
        """Query local versions and derive candidates from local membership."""
        self._enter(WorkflowPhase.DISCOVERING)
        versions = self.handler.versions()
        local = ServerInfo(
            name=context.local_name,
            address=context.local_address,
            services=versions,
        )
        local_state = collect_system_information(self.handler, local)

        candidates: dict[str, ServerInfo] = {local.name: local}
        for name, address in local_state.members(ServiceType.ORCHESTRATOR).items():
            if not name or name in candidates:
                continue
            candidates[name] = ServerInfo(
                name=name,
                address=host_of(address),
                services=versions,
            )
        for peer in self.peers:
            if not peer.name or peer.name == local.name:
                continue
            # Peers announced without a service list are assumed to mirror this node.
            candidates[peer.name] = peer if peer.services else replace(peer, services=versions)

        LOGGER.info("Discovered candidates: %s", ", ".join(sorted(candidates)))
        return replace(
            context,
            local_services=versions,
            candidates=candidates,
            collected={local.name: local_state},
        )

    def collect(self, context: SessionContext) -> SessionContext:
        """Gather system information from every candidate not yet collected."""
        self._enter(WorkflowPhase.COLLECTING)
        collected = dict(context.collected)
        for name in sorted(context.candidates):
            if name in collected:
                continue
            collected[name] = collect_system_information(self.handler, context.candidates[name])
        return replace(context, collected=collected)

    def validate(self, context: SessionContext) -> SessionContext:
        """Compute the services every candidate is still missing."""
        self._enter(WorkflowPhase.VALIDATING)
        resolution = resolve_missing_services(context.collected, context.local_name)
        for service_type, reason in resolution.skipped.items():
            LOGGER.info("Skipping %s: %s", service_type.label, reason)
        return replace(context, delta=resolution.missing, skipped=resolution.skipped)

    def confirm(self, context: SessionContext) -> SessionContext:
        """Ask the operator which missing services to add."""
        self._enter(WorkflowPhase.CONFIRMING)
        answer = self.phases.confirm_services(MappingProxyType(dict(context.delta)))
        confirmed = {
            service_type: version
            for service_type, version in context.delta.items()
            if service_type in answer
        }
        return replace(context, confirmed=confirmed)

    def set_up(self, context: SessionContext) -> SessionContext:
        """Run each confirmed service's setup step, storage before networking."""
        for service_type in OPTIONAL_SERVICES:
            if service_type not in context.confirmed:
                continue
            self._enter(WorkflowPhase.SETTING_UP, service_type)
            self._setup_steps[service_type](self.handler)
        return context

    def join(self, context: SessionContext) -> SessionContext:
        """Join the candidates to the confirmed services."""
        self._enter(WorkflowPhase.JOINING)
        self.phases.join_cluster(self.handler, MappingProxyType(dict(context.confirmed)))
        return context

    def _enter(self, phase: WorkflowPhase, service: ServiceType | None = None) -> None:
        transition = PhaseTransition(phase=phase, service=service)
        LOGGER.debug("Workflow entering %s", transition)
        self.history.append(transition)


__all__ = [
    "AddServicesWorkflow",
    "ExternalPhases",
    "PhaseTransition",
    "SessionContext",
    "WorkflowPhase",
]
