"""Enumerate and validate managed instance directories.

Each instance lives in ``<instances_dir>/<name>`` where ``<name>`` is the
lower-cased domain under which the instance is served. A directory counts as
a managed instance only when it holds both the deployment descriptor
(``docker-stack.yml`` by default) and ``config.yml``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .instance_config import InstanceConfig, InstanceConfigStore

MARKER_FILE = ".osinstancectl-marker"
LOCK_FILE = ".osinstancectl-locks"
METADATA_FILE = "metadata.txt"
CONFIG_FILE = "config.yml"
SECRETS_DIR = "secrets"
SETUP_DIR = "setup"
ADMIN_SECRET_FILE = "superadmin"
MANAGE_SECRET_FILE = "manage_auth_password"
DB_SECRET_FILE = "postgres_password"
USER_SETUP_FILE = "user.yml"
ORGANIZATION_SETUP_FILE = "organization.yml"


class InstanceRegistryError(RuntimeError):
    """Base error for registry lookups."""


class InstanceNotFoundError(InstanceRegistryError):
    """Raised when an instance directory does not exist."""


class InvalidInstanceError(InstanceRegistryError):
    """Raised when a directory exists but is not a managed instance."""


def normalize_name(name: str) -> str:
    """Return the canonical (lower-case) instance name."""
    normalized = name.strip().rstrip("/").lower()
    if not normalized or "/" in normalized or normalized in {".", ".."}:
        raise InstanceRegistryError(f"Invalid instance name: {name!r}.")
    return normalized


def stack_name_for(name: str) -> str:
    """Derive the orchestration stack name (instance name without dots)."""
    return normalize_name(name).replace(".", "")


@dataclass(frozen=True)
class Instance:
    """A managed instance directory."""

    name: str
    directory: Path
    stack_file_name: str = "docker-stack.yml"
    config_template: Path | None = None

    @property
    def config_file(self) -> Path:
        return self.directory / CONFIG_FILE

    @property
    def stack_file(self) -> Path:
        return self.directory / self.stack_file_name

    @property
    def marker_file(self) -> Path:
        return self.directory / MARKER_FILE

    @property
    def lock_file(self) -> Path:
        return self.directory / LOCK_FILE

    @property
    def metadata_file(self) -> Path:
        return self.directory / METADATA_FILE

    @property
    def secrets_dir(self) -> Path:
        return self.directory / SECRETS_DIR

    @property
    def setup_dir(self) -> Path:
        return self.directory / SETUP_DIR

    @property
    def admin_secret_file(self) -> Path:
        return self.secrets_dir / ADMIN_SECRET_FILE

    @property
    def manage_secret_file(self) -> Path:
        return self.secrets_dir / MANAGE_SECRET_FILE

    @property
    def config_store(self) -> InstanceConfigStore:
        return InstanceConfigStore(self.config_file, self.config_template)

    @property
    def config(self) -> InstanceConfig:
        """Freshly loaded configuration (instance document plus template)."""
        return self.config_store.load()

    @property
    def stack_name(self) -> str:
        """Configured ``stackName`` or the name-derived default."""
        return self.config.stack_name or stack_name_for(self.name)

    @property
    def has_marker(self) -> bool:
        return self.marker_file.exists()


class InstanceRegistry:
    """Filesystem view over the instances directory."""

    def __init__(
        self,
        instances_dir: Path,
        *,
        legacy_instances_dir: Path | None = None,
        config_template: Path | None = None,
        stack_file_name: str = "docker-stack.yml",
    ) -> None:
        self.instances_dir = Path(instances_dir)
        self.legacy_instances_dir = legacy_instances_dir
        self.config_template = config_template
        self.stack_file_name = stack_file_name

    def path_for(self, name: str) -> Path:
        """Return the directory an instance called *name* would occupy."""
        return self.instances_dir / normalize_name(name)

    def instance_for(self, name: str) -> Instance:
        """Return an :class:`Instance` handle without validating it."""
        normalized = normalize_name(name)
        return Instance(
            name=normalized,
            directory=self.instances_dir / normalized,
            stack_file_name=self.stack_file_name,
            config_template=self.config_template,
        )

    def is_valid(self, path: Path) -> bool:
        """Return ``True`` when *path* holds a descriptor and a config file."""
        return (path / self.stack_file_name).is_file() and (path / CONFIG_FILE).is_file()

    def exists(self, name: str) -> bool:
        """Return ``True`` when the instance directory exists."""
        return self.path_for(name).is_dir()

    def name_taken(self, name: str) -> bool:
        """Return ``True`` when *name* exists here or in the legacy directory."""
        if self.exists(name):
            return True
        if self.legacy_instances_dir is None:
            return False
        return (self.legacy_instances_dir / normalize_name(name)).exists()

    def has_marker(self, name: str) -> bool:
        """Return ``True`` when the instance was created by this tool."""
        return self.instance_for(name).has_marker

    def get(self, name: str) -> Instance:
        """Return a validated :class:`Instance`."""
        instance = self.instance_for(name)
        if not instance.directory.is_dir():
            raise InstanceNotFoundError(f"Instance {instance.name} does not exist.")
        if not self.is_valid(instance.directory):
            raise InvalidInstanceError(
                f"{instance.directory} is not a valid instance "
                f"(missing {self.stack_file_name} or {CONFIG_FILE})."
            )
        return instance

    def list_instances(
        self,
        pattern: str | None = None,
        *,
        search_metadata: bool = False,
    ) -> list[Instance]:
        """Return valid instances sorted by name, optionally filtered.

        *pattern* is a case-insensitive regular expression matched against the
        instance name and, when *search_metadata* is set, additionally against
        ``metadata.txt``.
        """
        if not self.instances_dir.is_dir():
            return []
        try:
            regex = re.compile(pattern, re.IGNORECASE) if pattern else None
        except re.error as exc:
            raise InstanceRegistryError(f"Invalid search pattern {pattern!r}: {exc}") from exc

        instances: list[Instance] = []
        for path in sorted(self.instances_dir.iterdir()):
            if not path.is_dir() or not self.is_valid(path):
                continue
            instance = Instance(
                name=path.name,
                directory=path,
                stack_file_name=self.stack_file_name,
                config_template=self.config_template,
            )
            if regex is not None and not _matches(instance, regex, search_metadata):
                continue
            instances.append(instance)
        return instances


def _matches(instance: Instance, regex: re.Pattern[str], search_metadata: bool) -> bool:
    if regex.search(instance.name) is not None:
        return True
    if not search_metadata or not instance.metadata_file.is_file():
        return False
    text = instance.metadata_file.read_text(encoding="utf-8", errors="replace")
    return regex.search(text) is not None


__all__ = [
    "ADMIN_SECRET_FILE",
    "CONFIG_FILE",
    "DB_SECRET_FILE",
    "Instance",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "InstanceRegistryError",
    "InvalidInstanceError",
    "LOCK_FILE",
    "MANAGE_SECRET_FILE",
    "MARKER_FILE",
    "METADATA_FILE",
    "ORGANIZATION_SETUP_FILE",
    "SECRETS_DIR",
    "SETUP_DIR",
    "USER_SETUP_FILE",
    "normalize_name",
    "stack_name_for",
]
