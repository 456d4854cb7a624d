"""Application settings for osinstancectl.

Settings are layered, later layers replacing earlier ones key by key:

1. Built-in defaults (:data:`DEFAULTS`).
2. The YAML file ``/etc/osinstancectl.d/config.yml``, or the file named by
   ``--config-file`` or ``OSINSTANCECTL_CONFIG_FILE``.
3. ``OSINSTANCECTL_*`` environment variables; double underscores address
   nested keys::

       export OSINSTANCECTL_PORTS__BASE=62000
       export OSINSTANCECTL_LISTING__PARALLEL=false

4. Programmatic overrides.

Environment values go through ``yaml.safe_load``, so ``false`` and ``8`` are
read as a boolean and an integer. Unknown keys are rejected. The merged
result is a tree of frozen dataclasses rooted at :class:`AppConfig`.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "OSINSTANCECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Services of a stack known to the autoscaler; used for the fallback table.
KNOWN_SERVICES: tuple[str, ...] = (
    "auth",
    "autoupdate",
    "backend",
    "backendAction",
    "backendPresenter",
    "backendManage",
    "client",
    "datastoreReader",
    "datastoreWriter",
    "icc",
    "manage",
    "media",
    "proxy",
    "redis",
    "vote",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 61000
    max_probes: int = 25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "max_probes": self.max_probes}


@dataclass(frozen=True)
class ManagementConfig:
    """Location and conventions of the external management tool."""

    bindir: Path = Path("/usr/local/lib/openslides-manage/versions")
    default_version: str = "latest"
    backend_service: str = "backendManage"
    backend_image: str = "openslides-backend"
    check_timeout: str = "1s"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bindir": str(self.bindir),
            "default_version": self.default_version,
            "backend_service": self.backend_service,
            "backend_image": self.backend_image,
            "check_timeout": self.check_timeout,
        }


@dataclass(frozen=True)
class HaproxyConfig:
    """Reverse proxy configuration file and reload command."""

    config_file: Path = Path("/etc/haproxy/haproxy.cfg")
    haproxy_bin: str = "haproxy"
    reload_command: tuple[str, ...] = ("systemctl", "reload", "haproxy")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "haproxy_bin": self.haproxy_bin,
            "reload_command": list(self.reload_command),
        }


@dataclass(frozen=True)
class HttpConfig:
    """Timeouts and retries used for health and version requests."""

    timeout: float = 1.0
    retries: int = 2
    retry_delay: float = 1.0
    patient_timeout: float = 60.0
    patient_retries: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
            "patient_timeout": self.patient_timeout,
            "patient_retries": self.patient_retries,
        }


@dataclass(frozen=True)
class WaitConfig:
    """Polling behaviour while waiting for services to become ready."""

    interval: float = 5.0
    max_progress: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"interval": self.interval, "max_progress": self.max_progress}


@dataclass(frozen=True)
class ListingConfig:
    """Parallelism settings for ``ls``."""

    parallel: bool = True
    max_workers: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"parallel": self.parallel, "max_workers": self.max_workers}


@dataclass(frozen=True)
class SetupConfig:
    """Optional payloads applied to new instances."""

    legal_notice_file: Path | None = None
    privacy_policy_file: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "legal_notice_file": _path_or_none(self.legal_notice_file),
            "privacy_policy_file": _path_or_none(self.privacy_policy_file),
        }


@dataclass(frozen=True)
class AutoscaleConfig:
    """Raw autoscale threshold tables (parsed by :mod:`osinstancectl.autoscale`)."""

    active: Mapping[object, object] = field(default_factory=dict)
    idle: Mapping[object, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"active": dict(self.active), "idle": dict(self.idle)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for osinstancectl."""

    config_file: Path
    instances_dir: Path
    legacy_instances_dir: Path
    config_template: Path
    compose_template: Path | None
    hooks_dir: Path | None
    hooks_fail_on_error: bool
    templates_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lease_timeout: float
    stack_file_name: str
    docker_bin: str
    ports: PortsConfig
    management: ManagementConfig
    haproxy: HaproxyConfig
    http: HttpConfig
    wait: WaitConfig
    listing: ListingConfig
    setup: SetupConfig
    autoscale: AutoscaleConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_dir": str(self.instances_dir),
            "legacy_instances_dir": str(self.legacy_instances_dir),
            "config_template": str(self.config_template),
            "compose_template": _path_or_none(self.compose_template),
            "hooks_dir": _path_or_none(self.hooks_dir),
            "hooks_fail_on_error": self.hooks_fail_on_error,
            "templates_dir": str(self.templates_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lease_timeout": self.lease_timeout,
            "stack_file_name": self.stack_file_name,
            "docker_bin": self.docker_bin,
            "ports": self.ports.to_dict(),
            "management": self.management.to_dict(),
            "haproxy": self.haproxy.to_dict(),
            "http": self.http.to_dict(),
            "wait": self.wait.to_dict(),
            "listing": self.listing.to_dict(),
            "setup": self.setup.to_dict(),
            "autoscale": self.autoscale.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/osinstancectl.d/config.yml",
    "instances_dir": "/srv/openslides/os4-instances",
    "legacy_instances_dir": "/srv/openslides/docker-instances",
    "config_template": "/etc/osinstancectl.d/config.yml.template",
    "compose_template": None,
    "hooks_dir": None,
    "hooks_fail_on_error": False,
    "templates_dir": "/etc/osinstancectl.d/templates",
    "logs_dir": "/var/log/osinstancectl",
    "runtime_dir": "/run/osinstancectl",
    "lease_timeout": 10.0,
    "stack_file_name": "docker-stack.yml",
    "docker_bin": "docker",
    "ports": {
        "base": 61000,
        "max_probes": 25,
    },
    "management": {
        "bindir": "/usr/local/lib/openslides-manage/versions",
        "default_version": "latest",
        "backend_service": "backendManage",
        "backend_image": "openslides-backend",
        "check_timeout": "1s",
    },
    "haproxy": {
        "config_file": "/etc/haproxy/haproxy.cfg",
        "haproxy_bin": "haproxy",
        "reload_command": ["systemctl", "reload", "haproxy"],
    },
    "http": {
        "timeout": 1.0,
        "retries": 2,
        "retry_delay": 1.0,
        "patient_timeout": 60.0,
        "patient_retries": 5,
    },
    "wait": {
        "interval": 5.0,
        "max_progress": 30,
    },
    "listing": {
        "parallel": True,
        "max_workers": 8,
    },
    "setup": {
        "legal_notice_file": None,
        "privacy_policy_file": None,
    },
    "autoscale": {
        "active": {},
        "idle": {},
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping) and section != "autoscale"
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`.

    Later layers win: built-in defaults, the YAML file, ``OSINSTANCECTL_*``
    environment variables and finally *overrides*.
    """
    source_env = os.environ if env is None else env
    config_path = Path(
        config_file or source_env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"])
    )

    merged = copy.deepcopy(DEFAULTS)
    for layer in (
        _read_config_file(config_path),
        _environment_layer(source_env),
        dict(overrides or {}),
    ):
        _merge_into(merged, layer)
    merged["config_file"] = str(config_path)

    _validate_structure(merged)
    return _build_app_config(merged)


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, str(path))


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    autoscale = _as_dict(raw.get("autoscale"), "autoscale")
    unknown_autoscale = set(autoscale.keys()) - {"active", "idle"}
    if unknown_autoscale:
        joined = ", ".join(sorted(unknown_autoscale))
        raise ConfigError(f"Unknown autoscale configuration keys: {joined}.")
    for scenario in ("active", "idle"):
        table = autoscale.get(scenario)
        if table is not None and not isinstance(table, Mapping):
            raise ConfigError(f"autoscale.{scenario} must be a mapping of thresholds.")

    ports = _as_dict(raw.get("ports"), "ports")
    base = _integer(ports.get("base"), "ports.base", default=61000)
    if not 1 <= base <= 65535:
        raise ConfigError(f"ports.base must be a valid TCP port. Got {base}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_integer(ports_mapping.get("base"), "ports.base", default=61000),
        max_probes=_integer(ports_mapping.get("max_probes"), "ports.max_probes", default=25),
    )

    management_mapping = _as_dict(raw.get("management"), "management")
    management = ManagementConfig(
        bindir=_path(
            management_mapping.get("bindir", "/usr/local/lib/openslides-manage/versions")
        ),
        default_version=str(management_mapping.get("default_version", "latest")),
        backend_service=str(management_mapping.get("backend_service", "backendManage")),
        backend_image=str(management_mapping.get("backend_image", "openslides-backend")),
        check_timeout=str(management_mapping.get("check_timeout", "1s")),
    )

    haproxy_mapping = _as_dict(raw.get("haproxy"), "haproxy")
    reload_raw = haproxy_mapping.get("reload_command", ["systemctl", "reload", "haproxy"])
    if isinstance(reload_raw, str):
        reload_command = tuple(reload_raw.split())
    elif isinstance(reload_raw, Sequence):
        reload_command = tuple(str(part) for part in reload_raw)
    else:
        raise ConfigError(
            f"haproxy.reload_command must be a list or a string. Got {reload_raw!r}."
        )
    haproxy = HaproxyConfig(
        config_file=_path(haproxy_mapping.get("config_file", "/etc/haproxy/haproxy.cfg")),
        haproxy_bin=str(haproxy_mapping.get("haproxy_bin", "haproxy")),
        reload_command=reload_command,
    )

    http_mapping = _as_dict(raw.get("http"), "http")
    http = HttpConfig(
        timeout=_seconds(http_mapping.get("timeout"), "http.timeout", default=1.0),
        retries=_integer(http_mapping.get("retries"), "http.retries", default=2),
        retry_delay=_seconds(
            http_mapping.get("retry_delay"), "http.retry_delay", default=1.0
        ),
        patient_timeout=_seconds(
            http_mapping.get("patient_timeout"), "http.patient_timeout", default=60.0
        ),
        patient_retries=_integer(
            http_mapping.get("patient_retries"), "http.patient_retries", default=5
        ),
    )

    wait_mapping = _as_dict(raw.get("wait"), "wait")
    wait = WaitConfig(
        interval=_seconds(wait_mapping.get("interval"), "wait.interval", default=5.0),
        max_progress=_integer(wait_mapping.get("max_progress"), "wait.max_progress", default=30),
    )

    listing_mapping = _as_dict(raw.get("listing"), "listing")
    listing = ListingConfig(
        parallel=bool(listing_mapping.get("parallel", True)),
        max_workers=max(
            1, _integer(listing_mapping.get("max_workers"), "listing.max_workers", default=8)
        ),
    )

    setup_mapping = _as_dict(raw.get("setup"), "setup")
    setup = SetupConfig(
        legal_notice_file=_optional_path(setup_mapping.get("legal_notice_file")),
        privacy_policy_file=_optional_path(setup_mapping.get("privacy_policy_file")),
    )

    autoscale_mapping = _as_dict(raw.get("autoscale"), "autoscale")
    autoscale = AutoscaleConfig(
        active=dict(cast(Mapping[object, object], autoscale_mapping.get("active") or {})),
        idle=dict(cast(Mapping[object, object], autoscale_mapping.get("idle") or {})),
    )

    return AppConfig(
        config_file=_path(raw.get("config_file")),
        instances_dir=_path(raw.get("instances_dir")),
        legacy_instances_dir=_path(raw.get("legacy_instances_dir")),
        config_template=_path(raw.get("config_template")),
        compose_template=_optional_path(raw.get("compose_template")),
        hooks_dir=_optional_path(raw.get("hooks_dir")),
        hooks_fail_on_error=bool(raw.get("hooks_fail_on_error", False)),
        templates_dir=_path(raw.get("templates_dir")),
        logs_dir=_path(raw.get("logs_dir")),
        runtime_dir=_path(raw.get("runtime_dir")),
        lease_timeout=_seconds(raw.get("lease_timeout"), "lease_timeout", default=10.0),
        stack_file_name=str(raw.get("stack_file_name", "docker-stack.yml")),
        docker_bin=str(raw.get("docker_bin", "docker")),
        ports=ports,
        management=management,
        haproxy=haproxy,
        http=http,
        wait=wait,
        listing=listing,
        setup=setup,
        autoscale=autoscale,
    )


def _environment_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``OSINSTANCECTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for key, raw in env.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"{key} conflicts with the scalar value at {'.'.join(path)}."
                )
            node = child
        node[path[-1]] = _parse_env_value(raw)
    return layer


def _parse_env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_into(base: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = base.get(key)
        # Empty defaults (the autoscale tables) are replaced wholesale; their
        # threshold keys are not strings.
        if current and isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, _as_dict(value, key))
        else:
            base[key] = value


def _path(value: object) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path. Got {value!r}.")


def _optional_path(value: object) -> Path | None:
    return None if value in (None, "") else _path(value)


def _path_or_none(value: Path | None) -> str | None:
    return None if value is None else str(value)


def _integer(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an integer. Got {value!r}.") from exc
    raise ConfigError(f"{label} must be an integer. Got {value!r}.")


def _seconds(value: object | None, label: str, *, default: float) -> float:
    """Parse a positive duration or timeout given in seconds."""
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"{label} must be a number. Got {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    for key in value:
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "AutoscaleConfig",
    "ConfigError",
    "HaproxyConfig",
    "HttpConfig",
    "KNOWN_SERVICES",
    "ListingConfig",
    "ManagementConfig",
    "PortsConfig",
    "SetupConfig",
    "WaitConfig",
    "load_config",
]
