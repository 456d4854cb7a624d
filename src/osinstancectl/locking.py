"""Advisory per-action locks stored inside each instance directory.

Locks are rows in ``<instance>/.osinstancectl-locks``::

    <action>\\t<unix timestamp>\\t<actor name>\\t<actor contact>\\t<reason>

They are purely advisory: mutating commands consult them before running and
refuse to act on a locked action. The synthetic action ``all`` blocks every
action, and querying ``all`` reports any existing lock.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .metadata import MetadataLog, timestamp
from .state.registry import Instance

LOGGER = logging.getLogger(__name__)

ALL_ACTIONS = "all"
ALLOWED_ACTIONS: tuple[str, ...] = (
    "autoscale",
    "clone",
    "erase",
    "remove",
    "start",
    "stop",
    "update",
)


class LockError(RuntimeError):
    """Base error for lock handling."""


class UnknownActionError(LockError):
    """Raised when an action name is not part of the lockable set."""


class ActionLockedError(LockError):
    """Raised when a mutating action is attempted on a locked instance."""


@dataclass(frozen=True)
class LockRecord:
    """A single lock row."""

    action: str
    locked_at: int
    actor_name: str
    actor_contact: str
    reason: str

    def matches(self, query: str) -> bool:
        return self.action == query or self.action == ALL_ACTIONS or query == ALL_ACTIONS

    def describe(self) -> str:
        day = datetime.fromtimestamp(self.locked_at).date().isoformat()
        return (
            f"Action '{self.action}' locked by {self.actor_name} "
            f"({self.actor_contact}) on {day}: {self.reason}"
        )

    def to_line(self) -> str:
        reason = " ".join(self.reason.split())
        return "\t".join(
            (self.action, str(self.locked_at), self.actor_name, self.actor_contact, reason)
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action,
            "locked_at": self.locked_at,
            "actor_name": self.actor_name,
            "actor_contact": self.actor_contact,
            "reason": self.reason,
        }

    @classmethod
    def from_line(cls, line: str) -> LockRecord | None:
        fields = line.rstrip("\n").split("\t", 4)
        if not fields or not fields[0]:
            return None
        fields += [""] * (5 - len(fields))
        try:
            locked_at = int(fields[1])
        except ValueError:
            locked_at = 0
        return cls(
            action=fields[0],
            locked_at=locked_at,
            actor_name=fields[2] or "unknown",
            actor_contact=fields[3] or "unknown",
            reason=fields[4],
        )


@dataclass(frozen=True)
class LockCheck:
    """Outcome of :meth:`ActionLockManager.is_locked`."""

    locked: bool
    details: str
    record: LockRecord | None = None


@dataclass(frozen=True)
class LockChange:
    """Per-action outcome of a lock or unlock request."""

    action: str
    changed: bool
    message: str


@dataclass(frozen=True)
class Actor:
    """Identity recorded with lock rows."""

    name: str
    contact: str

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Actor:
        source = os.environ if env is None else env
        return cls(
            name=source.get("LOGNAME") or "unknown",
            contact=source.get("EMAIL") or "unknown",
        )


def validate_actions(actions: Iterable[str]) -> list[str]:
    """Return *actions* as a list, rejecting names outside the lockable set."""
    validated = list(actions)
    allowed = set(ALLOWED_ACTIONS) | {ALL_ACTIONS}
    unknown = [action for action in validated if action not in allowed]
    if unknown:
        joined = ", ".join(sorted(set(unknown)))
        choices = ", ".join((*ALLOWED_ACTIONS, ALL_ACTIONS))
        raise UnknownActionError(f"Unknown lock action(s): {joined}. Choose from: {choices}.")
    return validated


class ActionLockManager:
    """Read and mutate the advisory lock file of instances."""

    def __init__(
        self,
        *,
        actor: Actor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._actor = actor
        self._clock = clock

    @property
    def actor(self) -> Actor:
        return self._actor or Actor.from_env()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now()

    def list_locks(self, instance: Instance) -> list[LockRecord]:
        """Return all lock rows for *instance*."""
        path = instance.lock_file
        if not path.is_file():
            return []
        records: list[LockRecord] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            record = LockRecord.from_line(line)
            if record is not None:
                records.append(record)
        return records

    def is_locked(self, instance: Instance, action: str = ALL_ACTIONS) -> LockCheck:
        """Check whether *action* is locked on *instance*."""
        for record in self.list_locks(instance):
            if record.matches(action):
                return LockCheck(locked=True, details=record.describe(), record=record)
        return LockCheck(locked=False, details=f"Action '{action}' not locked.")

    def require_unlocked(self, instance: Instance, action: str) -> None:
        """Raise :class:`ActionLockedError` when *action* is locked."""
        check = self.is_locked(instance, action)
        if check.locked:
            raise ActionLockedError(f"Can not {action} instance: {check.details}")
        LOGGER.debug("%s action is not locked on %s.", action, instance.name)

    def lock(
        self,
        instance: Instance,
        reason: str,
        actions: Sequence[str] | None = None,
    ) -> list[LockChange]:
        """Lock each of *actions* (default ``all``) with *reason*."""
        requested = validate_actions(actions or [ALL_ACTIONS])
        if not reason or not reason.strip():
            raise LockError("Need a reason to lock instance.")
        actor = self.actor
        metadata = MetadataLog(instance.metadata_file)
        changes: list[LockChange] = []
        for action in requested:
            check = self.is_locked(instance, action)
            if check.locked:
                message = f"Already locked: {check.details}"
                LOGGER.debug(message)
                changes.append(LockChange(action=action, changed=False, message=message))
                continue
            now = self._now()
            record = LockRecord(
                action=action,
                locked_at=int(now.timestamp()),
                actor_name=actor.name,
                actor_contact=actor.contact,
                reason=reason.strip(),
            )
            with instance.lock_file.open("a", encoding="utf-8") as handle:
                handle.write(record.to_line() + "\n")
            metadata.append(
                f"{timestamp(now)}: {action} locked by {actor.name} "
                f"({actor.contact}): {record.reason}"
            )
            changes.append(
                LockChange(
                    action=action,
                    changed=True,
                    message=f"Action '{action}' has been locked on {instance.name}.",
                )
            )
        return changes

    def unlock(
        self,
        instance: Instance,
        actions: Sequence[str] | None = None,
    ) -> list[LockChange]:
        """Remove the locks for *actions* (default ``all``)."""
        requested = validate_actions(actions or [ALL_ACTIONS])
        actor = self.actor
        metadata = MetadataLog(instance.metadata_file)
        changes: list[LockChange] = []
        for action in requested:
            check = self.is_locked(instance, action)
            if not check.locked:
                LOGGER.debug(check.details)
                changes.append(LockChange(action=action, changed=False, message=check.details))
                continue
            if action == ALL_ACTIONS:
                instance.lock_file.unlink(missing_ok=True)
            else:
                remaining = [
                    record for record in self.list_locks(instance) if record.action != action
                ]
                if len(remaining) == len(self.list_locks(instance)):
                    message = f"Action '{action}' is still locked: {check.details}"
                    LOGGER.debug(message)
                    changes.append(LockChange(action=action, changed=False, message=message))
                    continue
                self._rewrite(instance.lock_file, remaining)
            metadata.append(
                f"{timestamp(self._now())}: {action} unlocked by {actor.name} ({actor.contact})"
            )
            changes.append(
                LockChange(
                    action=action,
                    changed=True,
                    message=f"Action '{action}' has been unlocked on {instance.name}.",
                )
            )
        return changes

    @staticmethod
    def _rewrite(path: Path, records: Sequence[LockRecord]) -> None:
        if not records:
            path.unlink(missing_ok=True)
            return
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                for record in records:
                    handle.write(record.to_line() + "\n")
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "ALLOWED_ACTIONS",
    "ALL_ACTIONS",
    "ActionLockManager",
    "ActionLockedError",
    "Actor",
    "LockChange",
    "LockCheck",
    "LockError",
    "LockRecord",
    "UnknownActionError",
    "validate_actions",
]
