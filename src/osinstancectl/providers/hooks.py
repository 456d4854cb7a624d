"""Run operator-supplied hook scripts.

Hooks are executables in ``hooks_dir`` named after the event, e.g.
``pre-update``, ``post-create`` or ``mid-erase``. A missing directory or a
non-executable file means "no hook". Hooks run with the instance directory
as working directory and receive the instance details through the
environment.
"""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..state.registry import Instance

LOGGER = logging.getLogger(__name__)


class HookError(RuntimeError):
    """Raised when a hook script exits with a non-zero status."""


@dataclass(slots=True)
class HookResult:
    """Outcome of a hook invocation."""

    name: str
    ran: bool
    returncode: int = 0
    output: str = ""


@dataclass(slots=True)
class HookRunner:
    """Locate and execute hook scripts."""

    hooks_dir: Path | None = None
    fail_on_error: bool = False

    def path_for(self, name: str) -> Path | None:
        if self.hooks_dir is None:
            return None
        return self.hooks_dir / name

    def available(self, name: str) -> bool:
        path = self.path_for(name)
        return path is not None and path.is_file() and os.access(path, os.X_OK)

    def run(
        self,
        name: str,
        instance: Instance,
        *,
        extra_env: Mapping[str, str] | None = None,
    ) -> HookResult:
        """Run hook *name* for *instance* if it exists."""
        path = self.path_for(name)
        if path is None or not self.available(name):
            LOGGER.debug("No %s hook configured.", name)
            return HookResult(name=name, ran=False)
        env = dict(os.environ)
        env.update(
            {
                "PROJECT_NAME": instance.name,
                "PROJECT_DIR": str(instance.directory),
                "PROJECT_STACK_NAME": instance.stack_name,
                "HOOK_NAME": name,
            }
        )
        port = instance.config.port if instance.config_file.exists() else None
        if port is not None:
            env["PORT"] = str(port)
        if extra_env:
            env.update(extra_env)
        LOGGER.info("Running %s hook...", name)
        try:
            result = subprocess.run(  # noqa: S603
                [str(path)],
                cwd=str(instance.directory),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise HookError(f"Unable to run {name} hook {path}: {exc}") from exc
        output = (result.stdout or "") + (result.stderr or "")
        LOGGER.info("End of %s hook.", name)
        if result.returncode != 0:
            message = f"{name} hook exited with status {result.returncode}"
            if self.fail_on_error:
                raise HookError(message)
            LOGGER.warning(message)
        return HookResult(name=name, ran=True, returncode=result.returncode, output=output)


__all__ = ["HookError", "HookResult", "HookRunner"]
