"""Wrapper around the external management tool.

The management tool has two kinds of commands:

* ``setup`` and ``config`` operate on an instance directory and render the
  deployment descriptor from ``config.yml`` (no live connection);
* everything else talks to the instance's running ``manage`` service at
  ``127.0.0.1:<port>``, authenticated with the secret stored in
  ``secrets/manage_auth_password``.

Several tool versions can be installed side by side in ``management.bindir``.
Each instance records the SHA-256 hash of the binary it is compatible with in
``managementToolHash``; ``*`` means "follow the latest version".
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from ..state.registry import Instance

LOGGER = logging.getLogger(__name__)

KEEP_CURRENT = "-"
FOLLOW_LATEST = "*"

DIRECTORY_COMMANDS = frozenset({"setup", "config"})
UNSCOPED_COMMANDS = frozenset({"config-create-default", "help"})

# ``initial-data`` exits with 2 when the datastore already holds data.
INITIAL_DATA_OK_CODES = frozenset({0, 2})


class ManagementError(RuntimeError):
    """Raised when the management tool cannot be found or fails."""


class ManagementAccessError(ManagementError):
    """Raised when the management secret of an instance is not readable."""


def hash_file(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
    except OSError as exc:
        raise ManagementError(f"{path} not found.") from exc
    return digest.hexdigest()


@dataclass(slots=True)
class ManagementTool:
    """A selected management tool binary."""

    path: Path
    hash: str
    config_template: Path | None = None
    compose_template: Path | None = None
    check_timeout: str = "1s"

    # Directory-scoped commands ------------------------------------------
    def setup(self, directory: Path) -> subprocess.CompletedProcess[str]:
        """Populate *directory* with a fresh instance skeleton."""
        return self._run(self._directory_args("setup", directory), check=True)

    def render_config(self, directory: Path) -> subprocess.CompletedProcess[str]:
        """Regenerate the deployment descriptor of *directory*."""
        return self._run(self._directory_args("config", directory), check=True)

    # Connected commands -------------------------------------------------
    def call(
        self,
        instance: Instance,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command against the instance's ``manage`` service."""
        if args and args[0] in DIRECTORY_COMMANDS:
            return self._run(self._directory_args(args[0], instance.directory), check=check)
        return self._run(self._connected_args(instance, args), check=check)

    def get(
        self,
        instance: Instance,
        collection: str,
        fields: Sequence[str] = (),
        *,
        filter_expr: str | None = None,
    ) -> dict[str, object]:
        """Query a collection and return the decoded JSON mapping."""
        args = ["get", collection]
        if fields:
            args.append(f"--fields={','.join(fields)}")
        if filter_expr:
            args.append(f"--filter={filter_expr}")
        result = self.call(instance, *args)
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError as exc:
            raise ManagementError(f"Unexpected output from get {collection}: {exc}") from exc
        if isinstance(data, list):
            return {str(index): item for index, item in enumerate(data)}
        if not isinstance(data, Mapping):
            raise ManagementError(f"Unexpected output from get {collection}.")
        return dict(data)

    def count(self, instance: Instance, collection: str, *, filter_expr: str | None = None) -> int:
        """Return the number of entries of *collection* (optionally filtered)."""
        return len(self.get(instance, collection, ("id",), filter_expr=filter_expr))

    def create_user(self, instance: Instance, payload: Path) -> subprocess.CompletedProcess[str]:
        return self.call(instance, "create-user", "-f", str(payload))

    def set_organization(self, instance: Instance, payload: Path) -> subprocess.CompletedProcess[str]:
        return self.call(instance, "set", "organization", "-f", str(payload))

    def initial_data(self, instance: Instance) -> int:
        """Run ``initial-data``; returns the exit code."""
        return self.call(instance, "initial-data", check=False).returncode

    def check_server(self, instance: Instance) -> bool:
        """Return ``True`` when the manage service answers ``check-server``."""
        try:
            result = self.call(instance, "check-server", "-t", self.check_timeout, check=False)
        except ManagementAccessError:
            return False
        return result.returncode == 0

    def migration_stats(self, instance: Instance) -> dict[str, object]:
        """Return the decoded ``migrations stats`` document."""
        result = self.call(instance, "migrations", "stats")
        try:
            data = yaml.safe_load(result.stdout or "")
        except yaml.YAMLError as exc:
            raise ManagementError(f"Unexpected output from migrations stats: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ManagementError("migrations stats command returned no data.")
        return dict(data)

    def migrate(self, instance: Instance) -> subprocess.CompletedProcess[str]:
        return self.call(instance, "migrations", "migrate")

    def finalize(self, instance: Instance) -> subprocess.CompletedProcess[str]:
        return self.call(instance, "migrations", "finalize")

    # ------------------------------------------------------------------
    def _directory_args(self, command: str, directory: Path) -> list[str]:
        args = [str(self.path), command]
        if self.compose_template is not None and os.access(self.compose_template, os.R_OK):
            args.append(f"--template={self.compose_template}")
        if self.config_template is not None and os.access(self.config_template, os.R_OK):
            args.append(f"--config={self.config_template}")
        local_config = directory / "config.yml"
        if os.access(local_config, os.R_OK):
            args.append(f"--config={local_config}")
        args.append(str(directory))
        return args

    def _connected_args(self, instance: Instance, command: Sequence[str]) -> list[str]:
        if command and command[0] in UNSCOPED_COMMANDS:
            return [str(self.path), *command]
        port = instance.config.port
        if port is None:
            raise ManagementError(f"No port configured for {instance.name}.")
        secret = instance.manage_secret_file
        if not os.access(secret, os.R_OK):
            raise ManagementAccessError(f"Cannot read management secret {secret}.")
        return [
            str(self.path),
            *command,
            "-a",
            f"127.0.0.1:{port}",
            "--password-file",
            str(secret),
            "--no-ssl",
        ]

    def _run(self, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Executing %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ManagementError(f"{args[0]} not found: {exc}") from exc
        LOGGER.debug("management tool exit code: %s; output: %s", result.returncode, result.stdout)
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            command = " ".join(args[1:3])
            raise ManagementError(
                f"Management command '{command}' failed (exit {result.returncode}): {message}"
            )
        return result


@dataclass(slots=True)
class ManagementToolResolver:
    """Pick the management tool binary for an instance."""

    bindir: Path
    default_version: str = "latest"
    config_template: Path | None = None
    compose_template: Path | None = None
    check_timeout: str = "1s"

    def resolve(self, option: str | None = None, configured_hash: str | None = None) -> ManagementTool:
        """Return the tool selected by *option* or by the instance configuration.

        ``option`` follows the command-line conventions: ``-`` keeps the
        configured version, ``*`` follows the latest version, a value with a
        slash is a path and anything else names a file inside ``bindir``.
        """
        path = self._select_path(option, configured_hash)
        if not path.is_file() or not os.access(path, os.X_OK):
            raise ManagementError(f"{path} not found.")
        tool = ManagementTool(
            path=path,
            hash=hash_file(path),
            config_template=self.config_template,
            compose_template=self.compose_template,
            check_timeout=self.check_timeout,
        )
        LOGGER.debug("Using management tool %s.", path)
        return tool

    def for_instance(self, instance: Instance, option: str | None = None) -> ManagementTool:
        return self.resolve(option, instance.config.management_tool_hash)

    def _select_path(self, option: str | None, configured_hash: str | None) -> Path:
        if option:
            if option == KEEP_CURRENT:
                version = configured_hash or self.default_version
                if version == FOLLOW_LATEST:
                    version = self.default_version
                return self.bindir / version
            if option == FOLLOW_LATEST:
                return self.bindir / self.default_version
            if "/" in option:
                return Path(option).expanduser().resolve()
            return self.bindir / option
        if configured_hash and configured_hash != FOLLOW_LATEST:
            return self.bindir / configured_hash
        return self.bindir / self.default_version


__all__ = [
    "FOLLOW_LATEST",
    "INITIAL_DATA_OK_CODES",
    "KEEP_CURRENT",
    "ManagementAccessError",
    "ManagementError",
    "ManagementTool",
    "ManagementToolResolver",
    "hash_file",
]
