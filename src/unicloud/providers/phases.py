"""External setup and join phases driven by configured commands."""
from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from ..config import PhasesConfig
from ..errors import PhaseError
from ..services.handler import ServiceHandler
from ..services.types import ServiceType

LOGGER = logging.getLogger(__name__)

ConfirmCallback = Callable[[Mapping[ServiceType, str]], Mapping[ServiceType, str]]


def _accept_all(delta: Mapping[ServiceType, str]) -> Mapping[ServiceType, str]:
    return dict(delta)


@dataclass(slots=True)
class CommandPhaseRunner:
    """Run each workflow phase as an external command.

    The command receives the local node identity and the services involved
    through ``UNICLOUD_NAME``, ``UNICLOUD_ADDRESS``, ``UNICLOUD_PHASE`` and
    ``UNICLOUD_SERVICES`` (a JSON object of service name to version).
    In dry-run mode nothing is executed; each command is recorded in
    :attr:`planned` instead.
    """

    commands: PhasesConfig
    confirm: ConfirmCallback = _accept_all
    dry_run: bool = False
    confirmed: dict[ServiceType, str] = field(default_factory=dict)
    planned: list[tuple[str, list[str]]] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def confirm_services(self, delta: Mapping[ServiceType, str]) -> Mapping[ServiceType, str]:
        """Delegate confirmation to the configured callback and keep the answer."""
        answer = self.confirm(delta)
        self.confirmed = dict(answer)
        return answer

    def setup_storage(self, handler: ServiceHandler) -> None:
        """Run the storage setup command."""
        self._run_phase("setup_storage", handler, self._confirmed_only(ServiceType.STORAGE))

    def setup_networking(self, handler: ServiceHandler) -> None:
        """Run the networking setup command."""
        self._run_phase("setup_networking", handler, self._confirmed_only(ServiceType.NETWORKING))

    def join_cluster(self, handler: ServiceHandler, services: Mapping[ServiceType, str]) -> None:
        """Run the cluster join command for *services*."""
        self._run_phase("join_cluster", handler, services)

    # ------------------------------------------------------------------
    def _confirmed_only(self, service_type: ServiceType) -> dict[ServiceType, str]:
        return {service_type: self.confirmed.get(service_type, "")}

    def _run_phase(
        self,
        phase: str,
        handler: ServiceHandler,
        services: Mapping[ServiceType, str],
    ) -> None:
        command = self.commands.command_for(phase)
        if not command:
            LOGGER.warning("No command configured for phase '%s'; skipping.", phase)
            self.skipped.append(phase)
            return
        env = dict(os.environ)
        env.update(
            {
                "UNICLOUD_NAME": handler.name,
                "UNICLOUD_ADDRESS": handler.address,
                "UNICLOUD_PHASE": phase,
                "UNICLOUD_SERVICES": json.dumps(
                    {service_type.value: version for service_type, version in services.items()},
                    sort_keys=True,
                ),
            }
        )
        self._run_command(command, phase=phase, env=env)
        self.completed.append(phase)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        phase: str,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            LOGGER.info("Dry run: would execute %s", " ".join(args))
            self.planned.append((phase, list(args)))
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise PhaseError(f"{args[0]} not found: {exc}", phase=phase) from exc
        if result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise PhaseError(
                f"Phase '{phase}' failed (exit {result.returncode}): {message}",
                phase=phase,
                returncode=result.returncode,
            )
        return result


__all__ = ["CommandPhaseRunner", "ConfirmCallback"]
