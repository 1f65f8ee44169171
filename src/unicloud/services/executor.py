"""Concurrent fan-out of one operation across every configured service."""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from ..errors import UnavailableError
from .types import ServiceType

if TYPE_CHECKING:
    from .service import Service

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class AggregationMode(str, Enum):
    """How task failures affect the aggregate call."""

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass(slots=True, frozen=True)
class ExecutorOptions:
    """Runtime tunables for backend fan-out."""

    max_concurrency: int = 8
    call_timeout: float = 30.0


def _invoke(
    service: Service,
    operation: Callable[[Service], T],
    mode: AggregationMode,
    default: T | None,
) -> T | None:
    try:
        return operation(service)
    except UnavailableError as exc:
        if mode is not AggregationMode.BEST_EFFORT:
            raise
        LOGGER.debug("%s unavailable, using empty result: %s", service.identify().label, exc)
        return default


def run_concurrent(
    services: Sequence[Service],
    operation: Callable[[Service], T],
    *,
    mode: AggregationMode = AggregationMode.FAIL_FAST,
    max_concurrency: int = 8,
    default: T | None = None,
) -> dict[ServiceType, T | None]:
    """Run *operation* once per service and aggregate results by service type.

    Each task hands its result back through its future; the mapping is built
    by the caller's thread after every task has finished, so no structure is
    shared between tasks.

    In fail-fast mode the first error cancels the tasks that have not started
    yet, waits for the ones already running and is then raised. Which error
    wins when several tasks fail together is unspecified. In best-effort mode
    an :class:`~unicloud.errors.UnavailableError` yields *default* for that
    service instead of failing the call.
    """
    if not services:
        return {}

    max_workers = max(1, min(max_concurrency, len(services)))
    first_error: BaseException | None = None
    futures: dict[concurrent.futures.Future[T | None], Service] = {}
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers,
        thread_name_prefix="unicloud-fanout",
    ) as executor:
        for service in services:
            future = executor.submit(_invoke, service, operation, mode, default)
            futures[future] = service

        for future in concurrent.futures.as_completed(futures):
            error = future.exception()
            if error is None:
                continue
            first_error = error
            cancelled = sum(1 for pending in futures if pending.cancel())
            LOGGER.debug(
                "Aborting fan-out after %s failed (%d pending tasks cancelled): %s",
                futures[future].identify().label,
                cancelled,
                error,
            )
            break
        # Leaving the executor block joins every task already in flight.

    if first_error is not None:
        raise first_error

    return {service.identify(): future.result() for future, service in futures.items()}


__all__ = ["AggregationMode", "ExecutorOptions", "run_concurrent"]
