"""Service orchestration core: handlers, fan-out, collection and validation."""
from __future__ import annotations

from .clients import MembershipClient, NodeStatus, NotClusteredError
from .collector import collect_system_information
from .executor import AggregationMode, ExecutorOptions, run_concurrent
from .handler import ServiceHandler
from .listing import list_services
from .service import (
    SERVICE_REGISTRY,
    Service,
    ServiceContext,
    ServiceSettings,
    detect_installed_services,
    fetch_local_status,
)
from .types import (
    OPTIONAL_SERVICES,
    REQUIRED_SERVICES,
    ClusterMember,
    MembershipState,
    ServerInfo,
    ServiceMembership,
    ServiceType,
    SystemInformation,
)
from .validator import DeltaResolution, check_consistency, resolve_missing_services
from .workflow import (
    AddServicesWorkflow,
    ExternalPhases,
    PhaseTransition,
    SessionContext,
    WorkflowPhase,
)

__all__ = [
    # value types
    "ClusterMember",
    "MembershipState",
    "OPTIONAL_SERVICES",
    "REQUIRED_SERVICES",
    "ServerInfo",
    "ServiceMembership",
    "ServiceType",
    "SystemInformation",
    # services and fan-out
    "AggregationMode",
    "ExecutorOptions",
    "MembershipClient",
    "NodeStatus",
    "NotClusteredError",
    "SERVICE_REGISTRY",
    "Service",
    "ServiceContext",
    "ServiceHandler",
    "ServiceSettings",
    "detect_installed_services",
    "fetch_local_status",
    "run_concurrent",
    # collection, validation and workflow
    "AddServicesWorkflow",
    "DeltaResolution",
    "ExternalPhases",
    "PhaseTransition",
    "SessionContext",
    "WorkflowPhase",
    "check_consistency",
    "collect_system_information",
    "list_services",
    "resolve_missing_services",
]
