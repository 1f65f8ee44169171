"""Configuration loader for unicloud.

Settings come from four layers, later ones winning:

1. Built-in :data:`DEFAULTS`.
2. ``/etc/unicloud/config.yml``, or the file named by ``UNICLOUD_CONFIG_FILE``
   or ``--config-file``.
3. ``UNICLOUD_*`` environment variables, with ``__`` separating nested keys::

       export UNICLOUD_EXECUTOR__CALL_TIMEOUT=10
       export UNICLOUD_SERVICES__MICROCEPH__STATE_DIR=/srv/microceph/state

   Values go through ``yaml.safe_load``, so ``10`` is an int and ``false`` a
   bool.
4. Programmatic overrides (CLI flags).

``UNICLOUD_NAME``, ``UNICLOUD_ADDRESS``, ``UNICLOUD_PHASE`` and
``UNICLOUD_SERVICES`` are handed to phase commands and never read as settings.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from .services.types import ServiceType

ENV_PREFIX = "UNICLOUD_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}NAME",
    f"{ENV_PREFIX}ADDRESS",
    f"{ENV_PREFIX}PHASE",
    f"{ENV_PREFIX}SERVICES",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ExecutorConfig:
    """Concurrency limits for backend fan-out."""

    max_concurrency: int = 8
    call_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency, "call_timeout": self.call_timeout}


@dataclass(frozen=True)
class ClusterConfig:
    """Endpoint and credentials used to reach peer nodes."""

    port: int
    cert: Path
    key: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"port": self.port, "cert": str(self.cert), "key": str(self.key)}


@dataclass(frozen=True)
class ServiceConfig:
    """Where one backend keeps its state and control socket."""

    state_dir: Path
    socket: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"state_dir": str(self.state_dir), "socket": str(self.socket)}


@dataclass(frozen=True)
class PhasesConfig:
    """External commands run for each setup phase."""

    setup_storage: tuple[str, ...] = ()
    setup_networking: tuple[str, ...] = ()
    join_cluster: tuple[str, ...] = ()

    def command_for(self, phase: str) -> tuple[str, ...]:
        """Return the command configured for *phase* (empty when unset)."""
        return cast(tuple[str, ...], getattr(self, phase))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "setup_storage": list(self.setup_storage),
            "setup_networking": list(self.setup_networking),
            "join_cluster": list(self.join_cluster),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for unicloud."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    executor: ExecutorConfig
    cluster: ClusterConfig
    services: Mapping[ServiceType, ServiceConfig] = field(default_factory=dict)
    phases: PhasesConfig = PhasesConfig()

    def service(self, service_type: ServiceType) -> ServiceConfig:
        """Return the settings for *service_type*."""
        try:
            return self.services[service_type]
        except KeyError as exc:
            raise ConfigError(f"No configuration for service '{service_type.value}'.") from exc

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "executor": self.executor.to_dict(),
            "cluster": self.cluster.to_dict(),
            "services": {
                service_type.value: service.to_dict()
                for service_type, service in self.services.items()
            },
            "phases": self.phases.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/unicloud/config.yml",
    "state_dir": "/var/lib/unicloud",
    "logs_dir": "/var/log/unicloud",
    "executor": {
        "max_concurrency": 8,
        "call_timeout": 30.0,
    },
    "cluster": {
        "port": 9443,
        "cert": None,  # derived from state_dir when absent
        "key": None,
    },
    "services": {
        # unicloud's own state_dir falls back to the top-level state_dir.
        "unicloud": {"state_dir": None, "socket": None},
        "lxd": {"state_dir": "/var/snap/lxd/common/lxd", "socket": None},
        "microceph": {"state_dir": "/var/snap/microceph/common/state", "socket": None},
        "microovn": {"state_dir": "/var/snap/microovn/common/state", "socket": None},
    },
    "phases": {
        "setup_storage": [],
        "setup_networking": [],
        "join_cluster": [],
    },
}

PHASE_NAMES: tuple[str, ...] = ("setup_storage", "setup_networking", "join_cluster")

_SECTION_KEYS: Mapping[str, frozenset[str]] = {
    "executor": frozenset({"max_concurrency", "call_timeout"}),
    "cluster": frozenset({"port", "cert", "key"}),
    "phases": frozenset(PHASE_NAMES),
}
_SERVICE_KEYS = frozenset({"state_dir", "socket"})

_SOCKET_NAMES: Mapping[ServiceType, str] = {
    ServiceType.ORCHESTRATOR: "control.socket",
    ServiceType.VIRTUALIZATION: "unix.socket",
    ServiceType.STORAGE: "control.socket",
    ServiceType.NETWORKING: "control.socket",
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Resolve every configuration layer into an :class:`AppConfig`.

    *env* defaults to ``os.environ``; *overrides* carries CLI flags and wins
    over every other layer.
    """
    environ = os.environ if env is None else env
    path = _config_path(config_file, environ)

    raw: dict[str, object] = copy.deepcopy(DEFAULTS)
    for layer in (_read_config_file(path), _env_layer(environ), dict(overrides or {})):
        _merge(raw, layer)
    raw["config_file"] = str(path)

    _check_keys(raw)
    return _build(raw)


def _config_path(explicit: str | os.PathLike[str] | None, env: Mapping[str, str]) -> Path:
    if explicit:
        return Path(explicit)
    return Path(env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path} must contain a mapping at the top level.")
    return _section(data, str(path))


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``UNICLOUD_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} conflicts with another UNICLOUD_ variable.")
            node = child
        node[path[-1]] = _parse_env_value(value)
    return layer


def _parse_env_value(value: str) -> object:
    try:
        return yaml.safe_load(value.strip())
    except yaml.YAMLError:
        return value.strip()


def _merge(base: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = base.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            base[key] = value


def _unknown(keys: Iterable[str], allowed: Iterable[str]) -> str:
    return ", ".join(sorted(set(keys) - set(allowed)))


def _check_keys(raw: Mapping[str, object]) -> None:
    extra = _unknown(raw, DEFAULTS)
    if extra:
        raise ConfigError(f"Unknown configuration keys: {extra}.")

    for name, allowed in _SECTION_KEYS.items():
        extra = _unknown(_section(raw.get(name), name), allowed)
        if extra:
            raise ConfigError(f"Unknown {name} configuration keys: {extra}.")

    services = _section(raw.get("services"), "services")
    known = [service_type.value for service_type in ServiceType]
    extra = _unknown(services, known)
    if extra:
        raise ConfigError(f"Unknown services: {extra}. Known: {', '.join(known)}.")
    for name, value in services.items():
        extra = _unknown(_section(value, f"services.{name}"), _SERVICE_KEYS)
        if extra:
            raise ConfigError(f"Unknown keys for services.{name}: {extra}.")


def _build(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _path(raw["state_dir"], "state_dir")

    executor_raw = _section(raw.get("executor"), "executor")
    executor = ExecutorConfig(
        max_concurrency=_integer(
            executor_raw.get("max_concurrency"), "executor.max_concurrency", 8
        ),
        call_timeout=_seconds(executor_raw.get("call_timeout"), "executor.call_timeout", 30.0),
    )
    if executor.max_concurrency < 1:
        raise ConfigError("executor.max_concurrency must be at least 1.")

    cluster_raw = _section(raw.get("cluster"), "cluster")
    port = _integer(cluster_raw.get("port"), "cluster.port", 9443)
    if not 0 < port < 65536:
        raise ConfigError(f"cluster.port must be between 1 and 65535, not {port}.")
    cert = cluster_raw.get("cert")
    key = cluster_raw.get("key")
    cluster = ClusterConfig(
        port=port,
        cert=_path(cert, "cluster.cert") if cert else state_dir / "cluster.crt",
        key=_path(key, "cluster.key") if key else state_dir / "cluster.key",
    )

    services_raw = _section(raw.get("services"), "services")
    services = {
        service_type: _service(
            service_type,
            _section(services_raw.get(service_type.value), f"services.{service_type.value}"),
            state_dir,
        )
        for service_type in ServiceType
    }

    phases_raw = _section(raw.get("phases"), "phases")
    phases = PhasesConfig(
        **{name: _command(phases_raw.get(name), f"phases.{name}") for name in PHASE_NAMES}
    )

    return AppConfig(
        config_file=_path(raw["config_file"], "config_file"),
        state_dir=state_dir,
        logs_dir=_path(raw["logs_dir"], "logs_dir"),
        executor=executor,
        cluster=cluster,
        services=services,
        phases=phases,
    )


def _service(
    service_type: ServiceType,
    raw: Mapping[str, object],
    state_dir: Path,
) -> ServiceConfig:
    label = f"services.{service_type.value}"
    if raw.get("state_dir"):
        root = _path(raw["state_dir"], f"{label}.state_dir")
    elif service_type is ServiceType.ORCHESTRATOR:
        root = state_dir
    else:
        raise ConfigError(f"{label}.state_dir must be set.")
    socket = raw.get("socket")
    return ServiceConfig(
        state_dir=root,
        socket=_path(socket, f"{label}.socket") if socket else root / _SOCKET_NAMES[service_type],
    )


def _section(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping, not {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"{label} must only use string keys.")
    return dict(value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path, not {value!r}.")


def _integer(value: object, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an integer, not {value!r}.") from exc
    raise ConfigError(f"{label} must be an integer, not {type(value).__name__}.")


def _seconds(value: object, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{label} must be a number of seconds, not {value!r}.")
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ConfigError(f"{label} must be a number of seconds, not {value!r}.") from exc
    if seconds <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {seconds}.")
    return seconds


def _command(value: object, label: str) -> tuple[str, ...]:
    """Accept a command as an argv list or as a whitespace-separated string."""
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{label} must be a command list, not {type(value).__name__}.")
    argv: list[str] = []
    for index, item in enumerate(value):
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ConfigError(f"{label}[{index}] must be a string.")
        argv.append(str(item))
    return tuple(argv)


__all__ = [
    "AppConfig",
    "ClusterConfig",
    "ConfigError",
    "ExecutorConfig",
    "PhasesConfig",
    "ServiceConfig",
    "load_config",
]
