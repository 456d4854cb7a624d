"""Scale service replicas according to today's meeting load.

Two threshold tables map account counts to replica counts per service:

* the *active* table applies while at least one meeting takes place today and
  is looked up with the number of accounts taking part in those meetings;
* the *idle* table applies otherwise and is looked up with the total number
  of accounts of the instance.

Thresholds are walked in ascending order and every threshold not above the
account count overrides the values of the previous ones. While meetings are
running, services are only ever scaled up.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from .config import KNOWN_SERVICES
from .console import NullReporter, Reporter
from .metadata import MetadataLog
from .providers.manage import ManagementTool
from .providers.stack import ServiceReplicas, StackError, StackProvider
from .state.registry import Instance

LOGGER = logging.getLogger(__name__)

# Meetings end at 00:00 of their final day; keep them active until 23:59:59.
END_OF_DAY_SECONDS = 86399
_SCALING_PATTERN = re.compile(r"^\s*([a-zA-Z0-9-]+)=([0-9]+)\s*")
_ROW_FORMAT = "{:<24} {:<12} {:<12}"


class AutoscaleError(RuntimeError):
    """Raised when an instance cannot be autoscaled."""


class ScaleTableError(AutoscaleError):
    """Raised when a configured scale table cannot be parsed."""


def parse_scalings(value: object) -> dict[str, int]:
    """Parse ``"svc=n svc=n"`` strings or ``{svc: n}`` mappings."""
    if isinstance(value, Mapping):
        scalings: dict[str, int] = {}
        for service, replicas in value.items():
            if isinstance(replicas, bool):
                raise ScaleTableError(f"Invalid replica count for {service}: {replicas!r}")
            try:
                scalings[str(service)] = int(str(replicas))
            except ValueError as exc:
                raise ScaleTableError(
                    f"Invalid replica count for {service}: {replicas!r}"
                ) from exc
        return scalings
    if not isinstance(value, str):
        raise ScaleTableError(f"scaling values could not be parsed, see: {value!r}")
    remaining = value
    scalings = {}
    while True:
        match = _SCALING_PATTERN.match(remaining)
        if match is None:
            break
        scalings[match.group(1)] = int(match.group(2))
        remaining = remaining[match.end():]
    if remaining:
        raise ScaleTableError(f"scaling values could not be parsed, see: {remaining}")
    return scalings


@dataclass(frozen=True)
class ScaleTable:
    """Thresholds (ascending) with the scalings that apply from each one."""

    thresholds: tuple[tuple[int, Mapping[str, int]], ...]

    @classmethod
    def fallback(cls) -> ScaleTable:
        """Every known service at a single replica."""
        return cls(thresholds=((0, {service: 1 for service in KNOWN_SERVICES}),))

    @classmethod
    def from_config(cls, raw: Mapping[object, object]) -> ScaleTable:
        """Build a table from config data; an empty mapping yields :meth:`fallback`."""
        if not raw:
            return cls.fallback()
        entries: list[tuple[int, Mapping[str, int]]] = []
        for threshold, scalings in raw.items():
            try:
                value = int(str(threshold))
            except ValueError as exc:
                raise ScaleTableError(f"Invalid threshold: {threshold!r}") from exc
            entries.append((value, parse_scalings(scalings)))
        entries.sort(key=lambda entry: entry[0])
        return cls(thresholds=tuple(entries))

    def targets(self, accounts: int) -> dict[str, int]:
        """Return the merged scalings of every threshold ``<= accounts``."""
        resolved: dict[str, int] = {}
        for threshold, scalings in self.thresholds:
            if accounts >= threshold:
                resolved.update(scalings)
        return resolved


@dataclass(frozen=True)
class MeetingActivity:
    """Meetings taking place today and the accounts taking part in them."""

    meetings_today: int
    accounts_today: int


def _timestamp(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


def count_active_meetings(meetings: Mapping[str, object], now: int) -> MeetingActivity:
    """Count meetings active at unix time *now*.

    Meetings without positive start and end times are ignored.
    """
    count = 0
    accounts = 0
    for meeting in meetings.values():
        if not isinstance(meeting, Mapping):
            continue
        start = _timestamp(meeting.get("start_time"))
        end = _timestamp(meeting.get("end_time"))
        if start is None or end is None or start <= 0 or end <= 0:
            continue
        if not start <= now <= end + END_OF_DAY_SECONDS:
            continue
        count += 1
        user_ids = meeting.get("user_ids")
        accounts += len(user_ids) if isinstance(user_ids, list) else 0
    return MeetingActivity(meetings_today=count, accounts_today=accounts)


def resolve_targets(
    current: Mapping[str, ServiceReplicas],
    table: ScaleTable,
    accounts: int,
) -> dict[str, int]:
    """Return the target replica count for every running service."""
    configured = table.targets(accounts)
    return {
        service: configured.get(service, replicas.desired)
        for service, replicas in current.items()
    }


@dataclass(frozen=True)
class ScaleChange:
    """A single service whose replica count changes."""

    service: str
    current: ServiceReplicas
    target: int

    @property
    def from_replicas(self) -> int:
        return self.current.desired


def decide_changes(
    current: Mapping[str, ServiceReplicas],
    targets: Mapping[str, int],
    meetings_today: int,
) -> list[ScaleChange]:
    """Return the services to scale.

    A service changes when its target differs from the desired count and it
    either scales up or no meeting takes place today.
    """
    changes: list[ScaleChange] = []
    for service in sorted(current):
        replicas = current[service]
        target = targets.get(service, replicas.desired)
        if target == replicas.desired:
            continue
        if target < replicas.desired and meetings_today != 0:
            continue
        changes.append(ScaleChange(service=service, current=replicas, target=target))
    return changes


@dataclass(slots=True)
class AutoscaleSnapshot:
    """Everything gathered from a running instance."""

    instance: str
    stack_name: str
    date: str
    activity: MeetingActivity
    total_accounts: int
    replicas: dict[str, ServiceReplicas]
    accounts_override: int | None = None


@dataclass(slots=True)
class AutoscalePlan:
    """Result of :meth:`AutoscaleEngine.plan`."""

    snapshot: AutoscaleSnapshot
    idle: bool
    accounts: int
    targets: dict[str, int]
    changes: list[ScaleChange] = field(default_factory=list)

    @property
    def headline(self) -> str:
        snapshot = self.snapshot
        if self.idle:
            return (
                f"Resetting scalings of {snapshot.instance} to handle {self.accounts} accounts "
                f"in idle mode. {snapshot.activity.meetings_today} meetings on {snapshot.date}."
            )
        return (
            f"Scaling {snapshot.instance} to handle {self.accounts} accounts in "
            f"{snapshot.activity.meetings_today} meetings on {snapshot.date}."
        )

    def table_lines(self) -> list[str]:
        lines = [_ROW_FORMAT.format("<service>", "<scale from>", "<scale to>")]
        for change in self.changes:
            lines.append(
                _ROW_FORMAT.format(change.service, change.current.display, change.target)
            )
        return lines

    def to_dict(self) -> dict[str, object]:
        return {
            "instance": self.snapshot.instance,
            "date": self.snapshot.date,
            "mode": "idle" if self.idle else "active",
            "meetings_today": self.snapshot.activity.meetings_today,
            "accounts": self.accounts,
            "services": {
                service: {
                    "running": replicas.running,
                    "desired": replicas.desired,
                    "target": self.targets.get(service, replicas.desired),
                }
                for service, replicas in sorted(self.snapshot.replicas.items())
            },
            "changes": [
                {"service": change.service, "from": change.from_replicas, "to": change.target}
                for change in self.changes
            ],
        }


class AutoscaleEngine:
    """Gather load figures, decide target scalings and apply them."""

    def __init__(
        self,
        stack: StackProvider,
        *,
        active: ScaleTable | None = None,
        idle: ScaleTable | None = None,
        reporter: Reporter | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.stack = stack
        self.active = active or ScaleTable.fallback()
        self.idle = idle or ScaleTable.fallback()
        self.reporter: Reporter = reporter or NullReporter()
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        stack: StackProvider,
        active: Mapping[object, object],
        idle: Mapping[object, object],
        *,
        reporter: Reporter | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> AutoscaleEngine:
        """Build an engine from the ``autoscale`` section of the app config."""
        return cls(
            stack,
            active=ScaleTable.from_config(active),
            idle=ScaleTable.from_config(idle),
            reporter=reporter,
            clock=clock,
        )

    def gather(
        self,
        instance: Instance,
        tool: ManagementTool,
        *,
        accounts_override: int | None = None,
    ) -> AutoscaleSnapshot:
        """Collect meetings, accounts and current replicas of a running instance."""
        stack_name = instance.stack_name
        if not self.stack.is_deployed(stack_name):
            raise AutoscaleError("Cannot autoscale stopped instance")
        now = self.clock()
        meetings = tool.get(instance, "meeting", ("start_time", "end_time", "user_ids"))
        activity = count_active_meetings(meetings, int(now.timestamp()))
        if accounts_override is not None:
            total = accounts_override
            activity = MeetingActivity(
                meetings_today=activity.meetings_today, accounts_today=accounts_override
            )
        else:
            total = tool.count(instance, "user")
        return AutoscaleSnapshot(
            instance=instance.name,
            stack_name=stack_name,
            date=now.date().isoformat(),
            activity=activity,
            total_accounts=total,
            replicas=self.stack.replicas(stack_name),
            accounts_override=accounts_override,
        )

    def plan(self, snapshot: AutoscaleSnapshot) -> AutoscalePlan:
        """Choose the table and compute targets and changes."""
        idle = snapshot.activity.meetings_today == 0
        table = self.idle if idle else self.active
        accounts = snapshot.total_accounts if idle else snapshot.activity.accounts_today
        targets = resolve_targets(snapshot.replicas, table, accounts)
        changes = decide_changes(snapshot.replicas, targets, snapshot.activity.meetings_today)
        return AutoscalePlan(
            snapshot=snapshot, idle=idle, accounts=accounts, targets=targets, changes=changes
        )

    def apply(self, instance: Instance, plan: AutoscalePlan, *, dry_run: bool = False) -> list[str]:
        """Print the plan and scale services; returns the scale commands."""
        self.reporter.echo(plan.headline)
        for line in plan.table_lines():
            self.reporter.echo(line)
        if not plan.changes:
            self.reporter.echo("No action required")
            return []
        commands = [
            " ".join(
                self.stack.scale_command(plan.snapshot.stack_name, change.service, change.target)
            )
            for change in plan.changes
        ]
        if dry_run:
            self.reporter.echo("!DRY RUN!")
            for command in commands:
                self.reporter.echo(command)
            return commands
        metadata = MetadataLog(instance.metadata_file)
        failed: list[str] = []
        for change in plan.changes:
            try:
                self.stack.scale(plan.snapshot.stack_name, change.service, change.target)
            except StackError as exc:
                self.reporter.warn(f"Scaling {change.service} failed: {exc}")
                failed.append(change.service)
                continue
            metadata.record(
                f"Autoscaled {change.service} from {change.from_replicas} to {change.target}",
                now=self.clock(),
            )
            LOGGER.debug("Scaled %s to %s.", change.service, change.target)
        if failed:
            raise AutoscaleError(f"Failed to scale {', '.join(failed)} of {plan.snapshot.instance}.")
        return commands

    def autoscale(
        self,
        instance: Instance,
        tool: ManagementTool,
        *,
        accounts_override: int | None = None,
        dry_run: bool = False,
    ) -> AutoscalePlan:
        """Gather, plan and apply in one go."""
        plan = self.plan(self.gather(instance, tool, accounts_override=accounts_override))
        self.apply(instance, plan, dry_run=dry_run)
        return plan


__all__ = [
    "AutoscaleEngine",
    "AutoscaleError",
    "AutoscalePlan",
    "AutoscaleSnapshot",
    "MeetingActivity",
    "ScaleChange",
    "ScaleTable",
    "ScaleTableError",
    "count_active_meetings",
    "decide_changes",
    "parse_scalings",
    "resolve_targets",
]
