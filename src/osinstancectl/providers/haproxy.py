"""HAProxy provider for registering instances with the reverse proxy.

Instances are listed inside an automatically managed block of
``haproxy.cfg``::

    -----BEGIN AUTOMATIC OPENSLIDES CONFIG-----
    \tuse-server example.org if { hdr_reg(Host) -i ^example.org$ }
    \tserver     example.org 127.0.0.1:61001  weight 0 check
    -----END AUTOMATIC OPENSLIDES CONFIG-----

Every edit keeps a ``.osbak`` copy of the previous file, validates the new
configuration and reloads the proxy. A configuration that fails validation is
rolled back before anything is reloaded.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

BEGIN_MARKER = "-----BEGIN AUTOMATIC OPENSLIDES CONFIG-----"
END_MARKER = "-----END AUTOMATIC OPENSLIDES CONFIG-----"
BACKUP_SUFFIX = ".osbak"


class HaproxyError(RuntimeError):
    """Raised when the HAProxy configuration cannot be updated."""


@dataclass(slots=True)
class HaproxyResult:
    """Outcome of an HAProxy configuration edit."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class HaproxyProvider:
    """Edit the automatic block of ``haproxy.cfg`` and reload the proxy."""

    templates: TemplateEngine
    config_file: Path = Path("/etc/haproxy/haproxy.cfg")
    haproxy_bin: str = "haproxy"
    reload_command: Sequence[str] = ("systemctl", "reload", "haproxy")

    @property
    def backup_file(self) -> Path:
        return self.config_file.with_name(self.config_file.name + BACKUP_SUFFIX)

    def is_prepared(self) -> bool:
        """Return ``True`` when the config file contains the managed block."""
        try:
            text = self.config_file.read_text(encoding="utf-8")
        except OSError:
            return False
        return BEGIN_MARKER in text and END_MARKER in text

    def entries(self) -> list[str]:
        """Return the instance names registered inside the managed block."""
        names: list[str] = []
        for line in self._block_lines(self._read_lines()):
            fields = line.split()
            if len(fields) >= 2 and fields[0] == "server" and fields[1] not in names:
                names.append(fields[1])
        return names

    def has_entry(self, name: str) -> bool:
        return name in self.entries()

    def add(self, name: str, port: int) -> HaproxyResult:
        """Register *name* on *port* right before the end of the managed block."""
        lines = self._read_lines()
        self._require_block(lines)
        if self.has_entry(name):
            LOGGER.debug("HAProxy entry for %s already present.", name)
            return HaproxyResult(changed=False)
        entry = self.templates.render_to_string("haproxy/entry.j2", {"name": name, "port": port})
        updated: list[str] = []
        inside = False
        for line in lines:
            if BEGIN_MARKER in line:
                inside = True
            if inside and END_MARKER in line:
                updated.extend(entry.splitlines(keepends=True))
                inside = False
            updated.append(line)
        return self._apply(lines, updated)

    def remove(self, name: str) -> HaproxyResult:
        """Drop every line of the managed block whose second field is *name*."""
        lines = self._read_lines()
        if not lines:
            return HaproxyResult(changed=False)
        updated: list[str] = []
        inside = False
        for line in lines:
            if BEGIN_MARKER in line:
                inside = True
            elif END_MARKER in line:
                inside = False
            elif inside:
                fields = line.split()
                if len(fields) >= 2 and fields[1] == name:
                    continue
            updated.append(line)
        if updated == lines:
            LOGGER.debug("No HAProxy entry for %s.", name)
            return HaproxyResult(changed=False)
        return self._apply(lines, updated)

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Validate the configuration with ``haproxy -c``."""
        try:
            return self._run_command(
                [self.haproxy_bin, "-c", "-f", str(self.config_file)],
                error_prefix=f"{self.haproxy_bin} -c",
            )
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.haproxy_bin, "-c"], returncode=0)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Ask the service manager to reload the proxy."""
        try:
            return self._run_command(list(self.reload_command), error_prefix="Reloading HAProxy")
        except FileNotFoundError as exc:
            raise HaproxyError(f"{self.reload_command[0]} not found: {exc}") from exc

    # ------------------------------------------------------------------
    def _apply(self, previous: list[str], updated: list[str]) -> HaproxyResult:
        if updated == previous:
            return HaproxyResult(changed=False)
        try:
            shutil.copy2(self.config_file, self.backup_file)
            self.config_file.write_text("".join(updated), encoding="utf-8")
        except OSError as exc:
            raise HaproxyError(f"Unable to update {self.config_file}: {exc}") from exc
        try:
            validation = self.test_config()
        except HaproxyError:
            self.config_file.write_text("".join(previous), encoding="utf-8")
            raise
        reload_result = self.reload()
        return HaproxyResult(changed=True, validation=validation, reload=reload_result)

    def _read_lines(self) -> list[str]:
        try:
            return self.config_file.read_text(encoding="utf-8").splitlines(keepends=True)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise HaproxyError(f"Unable to read {self.config_file}: {exc}") from exc

    def _require_block(self, lines: Sequence[str]) -> None:
        text = "".join(lines)
        if BEGIN_MARKER not in text or END_MARKER not in text:
            raise HaproxyError(
                f"{self.config_file} has not been set up for osinstancectl "
                "(automatic config block missing)."
            )

    @staticmethod
    def _block_lines(lines: Sequence[str]) -> list[str]:
        block: list[str] = []
        inside = False
        for line in lines:
            if BEGIN_MARKER in line:
                inside = True
                continue
            if END_MARKER in line:
                inside = False
                continue
            if inside:
                block.append(line)
        return block

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Executing %s", " ".join(args))
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise HaproxyError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["BEGIN_MARKER", "END_MARKER", "HaproxyError", "HaproxyProvider", "HaproxyResult"]
