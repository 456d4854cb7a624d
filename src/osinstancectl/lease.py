"""Per-instance run leases.

A lease file ``<runtime_dir>/<instance>.lease`` is held with an exclusive
``flock`` while a process mutates the instance. Its content records the
holder for diagnostics::

    {"pid": 1234, "logname": "alice", "email": "...", "path": "...",
     "acquired_at": "..."}

The kernel drops the lock when the holder exits, so a lease file that can
be locked but still carries a payload was left behind by a crashed run.
Two invocations targeting different instances never block each other. When
enforcement is disabled (``--no-pid-file``) the lease is not taken and a
live holder only produces a warning.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class LeaseError(RuntimeError):
    """Base error for lease handling."""


class LeaseHeldError(LeaseError):
    """Raised when another live process holds the lease."""


class LeaseTimeoutError(LeaseHeldError):
    """Raised when the lease is still held after the timeout expired."""


@dataclass(slots=True)
class LeaseHandle:
    """Information about an acquired (or skipped) lease."""

    name: str
    path: Path
    acquired: bool
    wait_ms: int = 0
    warnings: list[str] = field(default_factory=list)


class LeaseManager:
    """Acquire and release per-instance lease files."""

    def __init__(
        self,
        runtime_dir: Path,
        *,
        enforce: bool = True,
        timeout: float = 0.0,
        poll_interval: float = 0.1,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.enforce = enforce
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._env = env

    def lease_path(self, name: str) -> Path:
        return self.runtime_dir / f"{name}.lease"

    def read(self, name: str) -> dict[str, object] | None:
        """Return the current lease payload for *name*, if any."""
        path = self.lease_path(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    @contextmanager
    def instance_lease(self, name: str, *, timeout: float | None = None) -> Iterator[LeaseHandle]:
        """Hold the lease for *name* while the block runs.

        A lease held by another process is waited for up to *timeout* seconds
        (the manager default when omitted) before :class:`LeaseTimeoutError`
        is raised.
        """
        started = time.monotonic()
        path = self.lease_path(name)
        handle = LeaseHandle(name=name, path=path, acquired=False)
        fd: int | None = None
        if self.enforce:
            limit = self.timeout if timeout is None else timeout
            fd = self._acquire(name, handle, started + max(0.0, limit))
        else:
            self._inspect(name, handle)
        handle.wait_ms = int((time.monotonic() - started) * 1000)
        for warning in handle.warnings:
            LOGGER.debug(warning)
        try:
            yield handle
        finally:
            if fd is not None:
                self._release(path, fd)

    def _acquire(self, name: str, handle: LeaseHandle, deadline: float) -> int:
        path = self.lease_path(name)
        while True:
            fd = self._open(path, create=True)
            try:
                locked = self._try_lock(fd, path)
            except LeaseError:
                os.close(fd)
                raise
            if locked:
                # The previous holder may have unlinked the file meanwhile.
                if _same_file(fd, path):
                    break
                os.close(fd)
                continue
            os.close(fd)
            if time.monotonic() >= deadline:
                raise LeaseTimeoutError(self._held_message(name))
            time.sleep(self.poll_interval)
        if self.read(name):
            handle.warnings.extend(["Stale lease file detected.", "overwriting"])
        try:
            self._write(fd, path)
        except OSError as exc:
            self._release(path, fd)
            raise LeaseError(f"Unable to write lease file {path}: {exc}") from exc
        handle.acquired = True
        return fd

    def _inspect(self, name: str, handle: LeaseHandle) -> None:
        path = self.lease_path(name)
        if not path.exists():
            return
        fd = self._open(path, create=False)
        try:
            if not self._try_lock(fd, path):
                handle.warnings.append(self._held_message(name))
                handle.warnings.append("continuing anyways (--no-pid-file)")
                return
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        if self.read(name):
            handle.warnings.extend(["Stale lease file detected.", "ignoring (--no-pid-file)"])

    def _open(self, path: Path, *, create: bool) -> int:
        flags = os.O_RDWR | (os.O_CREAT if create else 0)
        try:
            if create:
                self.runtime_dir.mkdir(parents=True, exist_ok=True)
            return os.open(path, flags, 0o644)
        except OSError as exc:
            raise LeaseError(f"Unable to open lease file {path}: {exc}") from exc

    @staticmethod
    def _try_lock(fd: int, path: Path) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        except OSError as exc:
            raise LeaseError(f"Unable to lock {path}: {exc}") from exc
        return True

    def _held_message(self, name: str) -> str:
        existing = self.read(name) or {}
        holder = str(existing.get("logname") or "unknown")
        if existing.get("email"):
            holder = f"{holder} [{existing['email']}]"
        return (
            f"{name} is already being managed by {holder} "
            f"(PID: {existing.get('pid', '?')}, lease file: {self.lease_path(name)})"
        )

    def _write(self, fd: int, path: Path) -> None:
        env = os.environ if self._env is None else self._env
        payload = {
            "pid": os.getpid(),
            "logname": env.get("LOGNAME") or "unknown",
            "email": env.get("EMAIL") or "",
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))

    @staticmethod
    def _release(path: Path, fd: int) -> None:
        try:
            if _same_file(fd, path):
                path.unlink()
        except OSError as exc:
            LOGGER.warning("Unable to remove lease file %s: %s", path, exc)
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)


def _same_file(fd: int, path: Path) -> bool:
    try:
        current = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (opened.st_dev, opened.st_ino) == (current.st_dev, current.st_ino)


__all__ = [
    "LeaseError",
    "LeaseHandle",
    "LeaseHeldError",
    "LeaseManager",
    "LeaseTimeoutError",
]
