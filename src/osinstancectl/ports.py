"""Port allocation for new instances.

Ports are not tracked in a registry of their own: the highest port found in
any instance ``config.yml`` (and in legacy ``.env`` files) is the starting
point, and candidates above it are probed until one is actually free.
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import yaml

LOGGER = logging.getLogger(__name__)

MAX_PORT = 65535
LEGACY_PORT_KEY = "EXTERNAL_HTTP_PORT"


class PortAllocationError(RuntimeError):
    """Raised when no free port can be allocated."""


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` when nothing listens on *port* (TCP bind probe)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _config_ports(instances_dir: Path) -> Iterable[int]:
    if not instances_dir.is_dir():
        return
    for config_file in sorted(instances_dir.glob("*/config.yml")):
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            LOGGER.debug("Skipping unreadable %s: %s", config_file, exc)
            continue
        if not isinstance(data, dict):
            continue
        port = _as_port(data.get("port"))
        if port is not None:
            yield port


def _legacy_ports(legacy_dir: Path | None) -> Iterable[int]:
    if legacy_dir is None or not legacy_dir.is_dir():
        return
    for env_file in sorted(legacy_dir.rglob(".env")):
        try:
            lines = env_file.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            LOGGER.debug("Skipping unreadable %s: %s", env_file, exc)
            continue
        for line in lines:
            if LEGACY_PORT_KEY not in line or "=" not in line:
                continue
            value = line.split("=", 1)[1].strip().strip("\"'")
            port = _as_port(value)
            if port is not None:
                yield port


def _as_port(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass(slots=True)
class PortAllocator:
    """Select the next free port above every port already in use."""

    instances_dir: Path
    legacy_instances_dir: Path | None = None
    base_port: int = 61000
    max_probes: int = 25
    probe: Callable[[int], bool] = port_is_free

    def used_ports(self) -> list[int]:
        """Return every configured port, legacy instances included."""
        return sorted(
            {*_config_ports(self.instances_dir), *_legacy_ports(self.legacy_instances_dir)}
        )

    def highest_port_in_use(self) -> int:
        used = self.used_ports()
        return used[-1] if used else self.base_port

    def next_free_port(self) -> int:
        """Return the first available port after the highest one in use."""
        port = self.highest_port_in_use() + 1
        attempts = 0
        while not self.probe(port):
            if attempts >= self.max_probes:
                raise PortAllocationError("Could not find free port")
            port += 1
            if port > MAX_PORT:
                raise PortAllocationError("Ran out of ports")
            attempts += 1
            LOGGER.debug("Port %s is taken, trying %s.", port - 1, port)
        if port > MAX_PORT:
            raise PortAllocationError("Ran out of ports")
        return port


__all__ = ["PortAllocationError", "PortAllocator", "port_is_free"]
