"""Host prerequisite checks for the ``setup`` command."""
from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .providers.haproxy import HaproxyProvider
from .providers.manage import ManagementError, ManagementToolResolver
from .providers.stack import StackError, StackProvider

Confirm = Callable[[str], bool]

HAPROXY_HINT = "See haproxy.cfg.example in the repository for an example configuration."


@dataclass(slots=True)
class SetupCheck:
    """Outcome of one prerequisite check."""

    section: str
    ok: bool
    message: str
    hints: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SetupReport:
    """All checks in the order they ran."""

    checks: list[SetupCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)

    def sections(self) -> list[tuple[str, list[SetupCheck]]]:
        grouped: list[tuple[str, list[SetupCheck]]] = []
        for check in self.checks:
            if not grouped or grouped[-1][0] != check.section:
                grouped.append((check.section, []))
            grouped[-1][1].append(check)
        return grouped

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "checks": [
                {
                    "section": check.section,
                    "ok": check.ok,
                    "message": check.message,
                    "hints": list(check.hints),
                }
                for check in self.checks
            ],
        }


def _command_exists(command: str) -> bool:
    path = Path(command)
    if path.is_absolute():
        return path.exists() and os.access(path, os.X_OK)
    return shutil.which(command) is not None


class SetupAssistant:
    """Check that the host can run osinstancectl and offer simple fixes.

    *confirm* is asked before creating missing directories or the config
    template; without it nothing is created.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        stack: StackProvider,
        tools: ManagementToolResolver,
        haproxy: HaproxyProvider,
        create_template: Callable[[], bool],
        confirm: Confirm | None = None,
        command_exists: Callable[[str], bool] = _command_exists,
        user: str | None = None,
    ) -> None:
        self.config = config
        self.stack = stack
        self.tools = tools
        self.haproxy = haproxy
        self.create_template = create_template
        self.confirm = confirm
        self.command_exists = command_exists
        self.user = user if user is not None else os.environ.get("LOGNAME", "")

    def run(self) -> SetupReport:
        report = SetupReport()
        report.checks.extend(self._dependencies())
        report.checks.extend(self._permissions())
        report.checks.extend(self._directories())
        report.checks.extend(self._configuration())
        report.checks.extend(self._management_tool())
        report.checks.extend(self._haproxy())
        return report

    def _dependencies(self) -> Sequence[SetupCheck]:
        section = "Checking dependencies"
        checks = []
        for command in (self.config.docker_bin, self.config.haproxy.haproxy_bin):
            if self.command_exists(command):
                checks.append(SetupCheck(section, True, f"Found:     {command}"))
            else:
                checks.append(SetupCheck(section, False, f"Not found: {command}"))
        return checks

    def _permissions(self) -> Sequence[SetupCheck]:
        section = "Checking permissions"
        checks = []
        if self.user != "root":
            checks.append(
                SetupCheck(
                    section, False, "Not running as root.  root privileges are usually required."
                )
            )
        try:
            self.stack.list_stacks()
        except StackError:
            checks.append(SetupCheck(section, False, "You don't have access to docker."))
            return checks
        checks.append(SetupCheck(section, True, "Docker access succeeded."))
        if self.stack.swarm_active():
            checks.append(SetupCheck(section, True, "Docker Swarm is set up."))
        else:
            checks.append(
                SetupCheck(
                    section, False, "Docker Swarm is not set up which is required for osinstancectl."
                )
            )
        return checks

    def _directories(self) -> Sequence[SetupCheck]:
        section = "Checking directories"
        path = self.config.instances_dir
        if path.is_dir():
            return [SetupCheck(section, True, f"The instance directory {path}/ exists.")]
        if self.confirm is not None and self.confirm("Create the instance directory now?"):
            path.mkdir(mode=0o750, parents=True, exist_ok=True)
            return [SetupCheck(section, True, f"Created the instance directory {path}/.")]
        return [SetupCheck(section, False, f"The instance directory '{path}/' does not exist.")]

    def _configuration(self) -> Sequence[SetupCheck]:
        section = "Checking osinstancectl configuration"
        template = self.config.config_template
        if template.is_file():
            return [SetupCheck(section, True, f"Found configuration template file {template}.")]
        if self.confirm is not None and self.confirm("Create a minimal template now?"):
            try:
                self.create_template()
            except OSError as exc:
                return [SetupCheck(section, False, f"Could not create {template}: {exc}")]
            return [SetupCheck(section, True, f"Created configuration template {template}.")]
        return [SetupCheck(section, False, f"Configuration template {template} not found.")]

    def _management_tool(self) -> Sequence[SetupCheck]:
        section = "Checking external OpenSlides management tool"
        try:
            tool = self.tools.resolve()
        except ManagementError:
            return [
                SetupCheck(
                    section,
                    False,
                    "The management tool is not installed.",
                    hints=[
                        "Install the 'openslides' binary into "
                        f"{self.tools.bindir}/ (e.g. with openslides-bin-installer)."
                    ],
                )
            ]
        return [
            SetupCheck(
                section, True, f"The 'openslides' management tool is installed ({tool.path})."
            )
        ]

    def _haproxy(self) -> Sequence[SetupCheck]:
        section = "Checking HAProxy setup"
        config_file = self.haproxy.config_file
        if not (config_file.is_file() and os.access(config_file, os.W_OK)):
            return [
                SetupCheck(
                    section,
                    False,
                    f"{config_file} not found or writeable.",
                    hints=[
                        HAPROXY_HINT,
                        "Alternatively, you may create instances with the --local-only option.",
                    ],
                )
            ]
        checks = [SetupCheck(section, True, f"Found writable {config_file}.")]
        if self.haproxy.is_prepared():
            checks.append(SetupCheck(section, True, f"{config_file} has been set up for osinstancectl."))
        else:
            checks.append(
                SetupCheck(
                    section,
                    False,
                    f"{config_file} has not been set up for osinstancectl yet.",
                    hints=[HAPROXY_HINT],
                )
            )
        return checks


__all__ = ["SetupAssistant", "SetupCheck", "SetupReport"]
