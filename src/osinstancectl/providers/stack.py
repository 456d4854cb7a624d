"""Container orchestration provider (``docker stack`` / ``docker service``)."""
from __future__ import annotations

import logging
import re
import subprocess
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_REPLICAS_PATTERN = re.compile(r"(\d+)/(\d+)")
SKIPPED_IMAGES = frozenset({"redis"})


class StackError(RuntimeError):
    """Raised when orchestration commands fail."""


@dataclass(frozen=True)
class ServiceReplicas:
    """Replica counts reported for one service."""

    service: str
    running: int
    desired: int

    @property
    def display(self) -> str:
        return f"{self.running}/{self.desired}"


@dataclass(frozen=True)
class ImageRef:
    """An image reference split into registry, repository and tag."""

    registry: str
    repository: str
    tag: str

    @classmethod
    def parse(cls, image: str) -> ImageRef:
        image = image.split("@", 1)[0].strip()
        name, _, tag = image.rpartition(":")
        if not name or "/" in tag:
            name, tag = image, "latest"
        registry, _, repository = name.rpartition("/")
        return cls(registry=registry, repository=repository, tag=tag)


def summarize_image_versions(images: Sequence[str]) -> str:
    """Condense the running images of a stack into a version string.

    A single tag is returned as-is. Mixed tags are listed with their counts,
    most common first (``4.1.0(12)/4.0.9(2)``), followed by
    ``[<registries>:<tags>]`` when more than one registry or tag is in use.
    """
    refs = [ImageRef.parse(image) for image in images if image.strip()]
    refs = [ref for ref in refs if ref.repository not in SKIPPED_IMAGES]
    if not refs:
        return ""
    tags = Counter(ref.tag for ref in refs)
    registries = {ref.registry for ref in refs}
    ordered = sorted(tags.items(), key=lambda item: (-item[1], item[0]))
    if len(ordered) == 1:
        summary = ordered[0][0]
    else:
        summary = "/".join(f"{tag}({count})" for tag, count in ordered)
    if len(registries) > 1 or len(ordered) > 1:
        summary += f"[{len(registries)}:{len(ordered)}]"
    return summary


def parse_replicas(output: str) -> dict[str, ServiceReplicas]:
    """Parse ``<name> <running>/<desired>`` lines into a mapping by service."""
    replicas: dict[str, ServiceReplicas] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        match = _REPLICAS_PATTERN.search(parts[1])
        if match is None:
            continue
        service = parts[0].rsplit("_", 1)[-1]
        replicas[service] = ServiceReplicas(
            service=service,
            running=int(match.group(1)),
            desired=int(match.group(2)),
        )
    return replicas


@dataclass(slots=True)
class StackProvider:
    """Thin wrapper around the orchestration runtime CLI."""

    docker_bin: str = "docker"

    def deploy(self, stack_name: str, stack_file: Path) -> subprocess.CompletedProcess[str]:
        """Deploy *stack_name* from *stack_file*."""
        return self._docker(
            ["stack", "deploy", "-c", str(stack_file), stack_name],
            error_prefix=f"Deploying stack {stack_name}",
        )

    def remove(self, stack_name: str) -> subprocess.CompletedProcess[str] | None:
        """Remove the stack; returns ``None`` when it was not deployed."""
        if not self.is_deployed(stack_name):
            LOGGER.debug("Stack %s is not deployed; nothing to remove.", stack_name)
            return None
        return self._docker(["stack", "rm", stack_name], error_prefix=f"Removing stack {stack_name}")

    def list_stacks(self) -> list[str]:
        result = self._docker(["stack", "ls", "--format", "{{ .Name }}"], error_prefix="Listing stacks")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_deployed(self, stack_name: str) -> bool:
        """Return ``True`` when the stack is known to the runtime."""
        return stack_name in self.list_stacks()

    def swarm_active(self) -> bool:
        """Return ``True`` when this host is a swarm node."""
        result = self._run_command(
            [self.docker_bin, "node", "inspect", "self"],
            check=False,
            error_prefix="Inspecting swarm node",
        )
        return result.returncode == 0

    def service_images(self, stack_name: str) -> list[str]:
        """Return the image reference of every service of the stack."""
        result = self._docker(
            ["stack", "services", "--format", "{{ .Image }}", stack_name],
            error_prefix=f"Listing services of {stack_name}",
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def running_version(self, stack_name: str) -> str:
        """Return the condensed image version string for *stack_name*."""
        return summarize_image_versions(self.service_images(stack_name))

    def backend_version_count(self, stack_name: str) -> int:
        """Return how many distinct tags backend images currently run."""
        tags = {
            ref.tag
            for ref in (ImageRef.parse(image) for image in self.service_images(stack_name))
            if "backend" in ref.repository or "backend" in ref.registry
        }
        return len(tags)

    def replicas(self, stack_name: str) -> dict[str, ServiceReplicas]:
        """Return current replica counts per service."""
        result = self._docker(
            ["stack", "services", "--format", "{{ .Name }} {{ .Replicas }}", stack_name],
            error_prefix=f"Listing replicas of {stack_name}",
        )
        return parse_replicas(result.stdout)

    def update_service_image(
        self,
        stack_name: str,
        service: str,
        image: str,
    ) -> subprocess.CompletedProcess[str]:
        """Switch one service of the stack to *image*."""
        return self._docker(
            ["service", "update", "-q", f"{stack_name}_{service}", "--image", image],
            error_prefix=f"Updating service {stack_name}_{service}",
        )

    def scale_command(self, stack_name: str, service: str, replicas: int) -> list[str]:
        return [self.docker_bin, "service", "scale", f"{stack_name}_{service}={replicas}"]

    def scale(self, stack_name: str, service: str, replicas: int) -> subprocess.CompletedProcess[str]:
        """Set the replica count of one service."""
        command = self.scale_command(stack_name, service, replicas)
        return self._run_command(
            command,
            check=True,
            error_prefix=f"Scaling {stack_name}_{service}",
        )

    # ------------------------------------------------------------------
    def _docker(self, args: Sequence[str], *, error_prefix: str) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.docker_bin, *args], check=True, error_prefix=error_prefix)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Executing %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise StackError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise StackError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "ImageRef",
    "ServiceReplicas",
    "StackError",
    "StackProvider",
    "parse_replicas",
    "summarize_image_versions",
]
