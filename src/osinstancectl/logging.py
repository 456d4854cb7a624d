"""Structured operation logging for osinstancectl.

Every CLI operation is recorded as a single JSON line in
``<logs_dir>/operations.jsonl``. The record captures the command, its
arguments and target, the steps performed, time spent waiting for leases,
and the final outcome. Diagnostic messages from module loggers go to stderr
through :class:`rich.logging.RichHandler` (see :func:`configure_logging`).

The logger never aborts an operation: when the log directory cannot be
created or written, it disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

OPERATIONS_LOG_NAME = "operations.jsonl"

_ROOT_LOGGER_NAME = "osinstancectl"


def configure_logging(verbose: bool = False) -> None:
    """Route package diagnostics to stderr, at debug level when verbose."""
    package_logger = logging.getLogger(_ROOT_LOGGER_NAME)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(handler, RichHandler) for handler in package_logger.handlers):
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        package_logger.addHandler(handler)


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects the details of a single operation before it is written."""

    name: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_utc_now)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "timestamp": _utc_now()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int | float) -> None:
        """Record how long the operation waited for its lease."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings),
            errors=list(errors),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _json_safe(context)
        self.result = result


class StructuredLogger:
    """Write operation records as JSON lines."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        self._pid = os.getpid()
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Location of the JSON lines file."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Context manager yielding an :class:`OperationScope`.

        An exception escaping the block is recorded as an error (unless the
        scope already carries a result) and re-raised.
        """
        scope = OperationScope(name=name, args=dict(args or {}), target=target)
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("completed")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record: dict[str, object] = {
            "timestamp": scope.started_at,
            "op_id": scope.op_id,
            "pid": self._pid,
            "user": os.environ.get("LOGNAME", "unknown"),
            "command": scope.name,
            "args": _json_safe(scope.args),
            "target": _json_safe(scope.target),
            "steps": scope.steps,
            "lock_wait_ms": scope.lock_wait_ms,
            "duration_ms": duration_ms,
            "result": scope.result,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
