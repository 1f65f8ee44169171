"""Error taxonomy shared by the service orchestration layers.

Every error maps onto an :class:`~unicloud.exit_codes.ExitCode` so the CLI can
terminate with a meaningful status without inspecting message text.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class UnicloudError(RuntimeError):
    """Base class for orchestration failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ConfigurationError(UnicloudError):
    """Raised when a requested backend is not installed on the local node."""

    exit_code = ExitCode.VALIDATION


class UnavailableError(UnicloudError):
    """Raised when a backend is present but cannot serve the request yet.

    Covers both an unreachable control socket and a backend answering
    "service unavailable" because it has not been clustered.
    """


class UnreachableError(UnicloudError):
    """Raised when a candidate node cannot be contacted at all."""


class BackendError(UnicloudError):
    """Raised when a backend answers with an unexpected failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Store the HTTP status returned by the backend, if any."""
        super().__init__(message)
        self.status_code = status_code


class InconsistentClusterError(UnicloudError):
    """Raised when candidate nodes disagree on virtualization membership."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, message: str, *, node: str | None = None) -> None:
        """Record the node that failed the consistency gate."""
        super().__init__(message)
        self.node = node


class AlreadyConfiguredError(UnicloudError):
    """Raised when there are no services left to add."""

    exit_code = ExitCode.VALIDATION


class PhaseError(UnicloudError):
    """Raised when an external setup or join phase fails."""

    def __init__(self, message: str, *, phase: str, returncode: int | None = None) -> None:
        """Record the failing phase and its exit status."""
        super().__init__(message)
        self.phase = phase
        self.returncode = returncode


__all__ = [
    "AlreadyConfiguredError",
    "BackendError",
    "ConfigurationError",
    "InconsistentClusterError",
    "PhaseError",
    "UnavailableError",
    "UnicloudError",
    "UnreachableError",
]
