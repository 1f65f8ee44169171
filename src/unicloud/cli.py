"""Typer-powered command line interface for ``unicloud``.

Commands assemble a runtime (config plus structured logger), resolve the
local node through its orchestrator daemon and hand off to the service
orchestration core in :mod:`unicloud.services`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import UnicloudError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import CommandPhaseRunner, ConfirmCallback
from .services import (
    REQUIRED_SERVICES,
    AddServicesWorkflow,
    ClusterMember,
    ServerInfo,
    ServiceContext,
    ServiceHandler,
    ServiceType,
    detect_installed_services,
    fetch_local_status,
    list_services,
)
from .services.types import host_of

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to unicloud's YAML config file.",
)

CALL_TIMEOUT_OPTION = typer.Option(
    None,
    "--call-timeout",
    min=0.1,
    help="Override the per-request timeout (seconds) for backend calls.",
)

CONFIG_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit configuration as JSON instead of a table.",
)

LIST_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit cluster members as JSON instead of tables.",
)

ADD_YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Add every missing service without prompting.",
)

ADD_PEER_OPTION = typer.Option(
    None,
    "--peer",
    metavar="NAME=ADDRESS",
    help="Extra candidate node to include (repeatable).",
)

ADD_DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Validate and confirm, but only print the setup commands.",
)

MEMBER_HEADER = ("NAME", "ADDRESS", "ROLE", "STATUS")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Unified cloud orchestrator.

        Assembles the virtualization, storage and networking backends of a set
        of nodes into one cloud and adds backends that are not clustered yet.
        """
    ).strip(),
)

config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")

service_app = typer.Typer(help="Manage cloud services.", no_args_is_help=True)
app.add_typer(service_app, name="service")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    call_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if call_timeout_override is not None:
        overrides["executor"] = {"call_timeout": call_timeout_override}

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the unicloud version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    call_timeout: float | None = CALL_TIMEOUT_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, call_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"unicloud {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, call_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _error_from(op: OperationScope, exc: UnicloudError) -> NoReturn:
    _command_error(op, str(exc), rc=exc.exit_code, errors=[type(exc).__name__, str(exc)])


def _local_handler(runtime: RuntimeContext, op: OperationScope) -> ServiceHandler:
    """Resolve the local node and activate every service installed on it."""
    config = runtime.config
    context = ServiceContext(timeout=config.executor.call_timeout)
    try:
        status = fetch_local_status(config, context)
    except UnicloudError as exc:
        _command_error(
            op,
            f"Failed to get UniCloud status: {exc}",
            rc=exc.exit_code,
        )
    if not status.ready:
        _command_error(
            op,
            "UniCloud is uninitialized; bootstrap the cluster before managing services.",
            rc=ExitCode.ENVIRONMENT,
        )

    service_types = [*REQUIRED_SERVICES, *detect_installed_services(config)]
    try:
        return ServiceHandler.from_config(status.name, status.address, config, service_types)
    except UnicloudError as exc:
        _error_from(op, exc)


def _parse_peers(raw: Sequence[str] | None, op: OperationScope) -> list[ServerInfo]:
    peers: list[ServerInfo] = []
    for entry in raw or ():
        name, sep, address = entry.partition("=")
        if not sep or not name.strip() or not address.strip():
            _command_error(op, f"Invalid --peer value '{entry}'. Expected NAME=ADDRESS.")
        peers.append(ServerInfo(name=name.strip(), address=host_of(address.strip())))
    return peers


def _members_payload(
    clusters: Mapping[ServiceType, Sequence[ClusterMember]],
) -> dict[str, list[dict[str, str]]]:
    return {
        service_type.value: [
            {
                "name": member.name,
                "address": member.address,
                "role": member.role,
                "status": member.status,
            }
            for member in members
        ]
        for service_type, members in clusters.items()
    }


def _render_members(clusters: Mapping[ServiceType, Sequence[ClusterMember]]) -> None:
    for service_type, members in clusters.items():
        if not members:
            console.print(f"{service_type.label}: Not initialized")
            continue
        console.print(f"{service_type.label}:")
        table = Table(show_header=True, header_style="bold magenta")
        for column in MEMBER_HEADER:
            table.add_column(column, style="bold" if column == "NAME" else None)
        for member in members:
            table.add_row(*member.as_row())
        console.print(table)


def _render_delta(delta: Mapping[ServiceType, str]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("Version")
    for service_type, version in delta.items():
        table.add_row(service_type.label, version or "(unknown)")
    console.print(table)


def _confirm_callback(assume_yes: bool) -> ConfirmCallback:
    def _confirm(delta: Mapping[ServiceType, str]) -> Mapping[ServiceType, str]:
        console.print("The following services are not clustered on any node yet:")
        _render_delta(delta)
        if assume_yes:
            return dict(delta)
        return {
            service_type: version
            for service_type, version in delta.items()
            if typer.confirm(f"Add {service_type.label} to the cloud?", default=True)
        }

    return _confirm


def _config_rows(data: Mapping[str, object], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested settings into dotted ``(name, value)`` rows."""
    rows: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            rows.extend(_config_rows(value, f"{name}."))
        elif isinstance(value, list):
            rows.append((name, " ".join(str(item) for item in value) or "(not set)"))
        else:
            rows.append((name, str(value)))
    return rows


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = CONFIG_JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        for name, rendered in _config_rows(data):
            table.add_row(name, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@service_app.command("list")
def service_list(
    ctx: typer.Context,
    json_output: bool = LIST_JSON_OPTION,
) -> None:
    """List cloud services and their cluster members."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "service list",
        args={"json": json_output},
        target={"kind": "services"},
    ) as op:
        handler = _local_handler(runtime, op)
        try:
            clusters = list_services(handler)
        except UnicloudError as exc:
            _error_from(op, exc)

        context = {
            service_type.value: len(members) for service_type, members in clusters.items()
        }
        if json_output:
            console.print_json(data={"services": _members_payload(clusters)})
            op.success("Reported cluster members as JSON.", changed=0, context=context)
            return

        _render_members(clusters)
        op.success("Reported cluster members.", changed=0, context=context)


@service_app.command("add")
def service_add(
    ctx: typer.Context,
    assume_yes: bool = ADD_YES_OPTION,
    peer: list[str] | None = ADD_PEER_OPTION,
    dry_run: bool = ADD_DRY_RUN_OPTION,
) -> None:
    """Add services that are installed but not yet clustered to the cloud."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "service add",
        args={"yes": assume_yes, "peer": list(peer or []), "dry_run": dry_run},
        target={"kind": "services"},
    ) as op:
        peers = _parse_peers(peer, op)
        console.print("Waiting for services to start ...")
        handler = _local_handler(runtime, op)

        runner = CommandPhaseRunner(
            commands=runtime.config.phases,
            confirm=_confirm_callback(assume_yes),
            dry_run=dry_run,
        )
        workflow = AddServicesWorkflow(handler, runner, peers=peers)
        try:
            session = workflow.run()
        except UnicloudError as exc:
            _error_from(op, exc)

        context: dict[str, object] = {
            "candidates": sorted(session.candidates),
            "delta": {key.value: value for key, value in session.delta.items()},
            "confirmed": {key.value: value for key, value in session.confirmed.items()},
            "phases": [str(transition) for transition in workflow.history],
        }
        if not session.confirmed:
            console.print("No services selected; nothing was changed.")
            op.success("No services selected.", changed=0, context=context)
            return

        if dry_run:
            context["planned"] = {phase: args for phase, args in runner.planned}
            for phase, args in runner.planned:
                console.print(f"[yellow]Dry run[/yellow]: {phase}: {escape(' '.join(args))}")

        added = ", ".join(service_type.label for service_type in session.confirmed)
        if runner.skipped:
            skipped = ", ".join(runner.skipped)
            console.print(f"[yellow]No command configured for: {skipped}[/yellow]")
            op.warning(
                f"Added services with skipped phases: {added}.",
                changed=0 if dry_run else len(session.confirmed),
                warnings=[f"phase-skipped:{phase}" for phase in runner.skipped],
                context=context,
            )
            return

        prefix = "[yellow]Dry run[/yellow]: would add" if dry_run else "Added"
        console.print(f"{prefix} {added} across {len(session.candidates)} node(s).")
        op.success(
            f"Added services: {added}.",
            changed=0 if dry_run else len(session.confirmed),
            context=context,
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
