"""Service handler: the set of backends active on the local node."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from ..errors import ConfigurationError
from .executor import AggregationMode, ExecutorOptions, run_concurrent
from .service import SERVICE_REGISTRY, Service, ServiceContext, ServiceSettings
from .types import ServiceType

if TYPE_CHECKING:
    from ..config import AppConfig

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceHandler:
    """Owns the services configured for one local node."""

    def __init__(
        self,
        name: str,
        address: str,
        state_dir: Path,
        services: Iterable[Service],
        *,
        options: ExecutorOptions | None = None,
    ) -> None:
        """Store the node identity and its services, keeping the first of each type."""
        self.name = name
        self.address = address
        self.state_dir = state_dir
        self.options = options or ExecutorOptions()
        ordered: dict[ServiceType, Service] = {}
        for service in services:
            ordered.setdefault(service.identify(), service)
        self._services = ordered

    @classmethod
    def from_config(
        cls,
        name: str,
        address: str,
        config: AppConfig,
        service_types: Iterable[ServiceType],
        *,
        registry: Mapping[ServiceType, type[Service]] = SERVICE_REGISTRY,
    ) -> ServiceHandler:
        """Build a handler activating *service_types*.

        Raises :class:`ConfigurationError` when a requested backend is not
        installed on this node.
        """
        services: list[Service] = []
        for service_type in dict.fromkeys(service_types):
            settings = ServiceSettings.from_config(config, service_type, local_name=name)
            service = registry[service_type](settings)
            if not service.installed():
                raise ConfigurationError(
                    f"{service_type.label} is not installed on this node "
                    f"(missing {settings.state_dir})."
                )
            services.append(service)
        LOGGER.debug(
            "Activated services for %s: %s",
            name,
            ", ".join(service.identify().value for service in services),
        )
        options = ExecutorOptions(
            max_concurrency=config.executor.max_concurrency,
            call_timeout=config.executor.call_timeout,
        )
        return cls(name, address, config.state_dir, services, options=options)

    @property
    def services(self) -> Sequence[Service]:
        """Return the services in registration order."""
        return tuple(self._services.values())

    @property
    def service_types(self) -> tuple[ServiceType, ...]:
        """Return the active service types in registration order."""
        return tuple(self._services)

    def has(self, service_type: ServiceType) -> bool:
        """Return ``True`` when *service_type* is active on this node."""
        return service_type in self._services

    def service(self, service_type: ServiceType) -> Service:
        """Return the active service for *service_type*."""
        try:
            return self._services[service_type]
        except KeyError as exc:
            raise ConfigurationError(
                f"{service_type.label} is not configured on {self.name}."
            ) from exc

    def context(self) -> ServiceContext:
        """Return the per-call context used for client acquisition."""
        return ServiceContext(timeout=self.options.call_timeout)

    def run_concurrent(
        self,
        operation: Callable[[Service], T],
        *,
        mode: AggregationMode = AggregationMode.FAIL_FAST,
        default: T | None = None,
    ) -> dict[ServiceType, T | None]:
        """Run *operation* against every service concurrently."""
        return run_concurrent(
            self.services,
            operation,
            mode=mode,
            max_concurrency=self.options.max_concurrency,
            default=default,
        )

    def versions(self) -> dict[ServiceType, str]:
        """Return the version of every local service."""
        context = self.context()
        results = self.run_concurrent(lambda service: service.version(context))
        return {service_type: version or "" for service_type, version in results.items()}


__all__ = ["ServiceHandler"]
