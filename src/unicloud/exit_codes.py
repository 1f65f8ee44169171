"""Process exit codes shared by every ``unicloud`` command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit statuses mapped from :class:`~unicloud.errors.UnicloudError` subclasses."""

    OK = 0
    # Bad configuration, bad flags, or nothing left to add.
    VALIDATION = 2
    # Nodes disagree on cluster membership or the local node is not ready.
    ENVIRONMENT = 3
    # A backend, a peer or a setup command failed.
    PROVIDER = 4
