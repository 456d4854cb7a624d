"""Collect and present the status of managed instances.

Every listed instance is probed independently:

* the reverse proxy port is checked with a TCP connect; an open port means
  the instance has been deployed;
* unless *fast* mode is requested, the health endpoint decides between
  ``OK`` and ``XX`` and the image versions are read from the orchestrator;
* a closed port shows ``__`` unless the stack is still deployed (``XX``).

Optional sections (services, secrets, metadata, stats) are only collected
when requested or when JSON output is produced. Probing runs on a thread
pool; results keep the order of the instance list.
"""
from __future__ import annotations

import concurrent.futures
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

import yaml

from .autoscale import AutoscaleEngine, AutoscaleError, AutoscalePlan
from .locking import ActionLockManager, LockRecord
from .metadata import MetadataLog
from .migrations import MigrationError, MigrationStatus
from .providers.manage import ManagementError, ManagementTool, ManagementToolResolver
from .providers.probes import HttpProbe
from .providers.stack import StackError, StackProvider
from .report import ReportNode
from .state.instance_config import InstanceConfigError
from .state.registry import USER_SETUP_FILE, Instance, InstanceRegistry, stack_name_for

LOGGER = logging.getLogger(__name__)

SYM_OK = "OK"
SYM_ERROR = "XX"
SYM_UNKNOWN = "??"
SYM_STOPPED = "__"

RUNNING_FILTERS: tuple[str, ...] = ("online", "stopped", "error")
LOCK_FILTERS: tuple[str, ...] = ("locked", "unlocked")
SKIPPED_VERSION = "[skipped]"
ACCESS_DENIED = "[Access denied]"
MANAGEMENT_TOOL_KEY = "management-tool"
MEETING_FIELDS: tuple[str, ...] = (
    "id",
    "name",
    "start_time",
    "end_time",
    "jitsi_domain",
    "jitsi_room_name",
    "jitsi_room_password",
)


class StatusError(RuntimeError):
    """Raised for invalid listing options."""


@dataclass(frozen=True)
class ListingOptions:
    """What to collect and which instances to keep."""

    long: bool = False
    services: bool = False
    secrets: bool = False
    metadata: bool = False
    stats: bool = False
    fast: bool = False
    json: bool = False
    running_state: str | None = None
    lock_state: str | None = None
    version_pattern: str | None = None

    def __post_init__(self) -> None:
        if self.running_state is not None and self.running_state not in RUNNING_FILTERS:
            raise StatusError(
                f"Unknown state filter {self.running_state!r}; "
                f"choose from {', '.join(RUNNING_FILTERS)}."
            )
        if self.lock_state is not None and self.lock_state not in LOCK_FILTERS:
            raise StatusError(
                f"Unknown lock filter {self.lock_state!r}; choose from {', '.join(LOCK_FILTERS)}."
            )
        if self.version_pattern:
            try:
                re.compile(self.version_pattern)
            except re.error as exc:
                raise StatusError(f"Invalid version pattern: {exc}") from exc

    @property
    def extended(self) -> bool:
        return self.long or self.services or self.secrets or self.metadata or self.stats

    def wants(self, section: str) -> bool:
        return self.json or bool(getattr(self, section))


@dataclass(slots=True)
class InstanceStatus:
    """Collected status of one instance."""

    name: str
    stack_name: str
    directory: Path
    port: int | None
    symbol: str = SYM_UNKNOWN
    running: bool = False
    version: str = ""
    version_image: str = ""
    management_access: bool = False
    locks: list[LockRecord] = field(default_factory=list)
    summary: str | None = None
    service_versions: dict[str, str] = field(default_factory=dict)
    scaling: AutoscalePlan | None = None
    superadmin: str | None = None
    user: dict[str, str] = field(default_factory=dict)
    metadata: list[str] = field(default_factory=list)
    stats: dict[str, object] | None = None
    meetings: list[dict[str, object]] = field(default_factory=list)
    pending_migration: bool | None = None
    error: str | None = None

    @property
    def has_locks(self) -> bool:
        return bool(self.locks)

    @property
    def update_locked(self) -> bool:
        return any(record.action == "update" for record in self.locks)

    def to_dict(self) -> dict[str, object]:
        scaling = self.scaling
        services = sorted(set(self.service_versions) | set(scaling.targets if scaling else {}))
        stats = self.stats or {}
        return {
            "name": self.name,
            "stackname": self.stack_name,
            "directory": str(self.directory),
            "version": self.version,
            "version_image": self.version_image,
            "status": self.symbol,
            "lock_status": {
                "has_locks": self.has_locks,
                "update_is_locked": self.update_locked,
            },
            "port": self.port,
            "superadmin": self.superadmin,
            "user": {
                "user_name": self.user.get("username", ""),
                "user_password": self.user.get("default_password", ""),
                "user_email": self.user.get("email", ""),
            },
            "metadata": "\n".join(self.metadata),
            "pending_migration": self.pending_migration,
            "error": self.error,
            "services": {
                "versions": {
                    service.replace("-", "_"): version
                    for service, version in sorted(self.service_versions.items())
                },
                "scaling": {
                    "misc": {
                        "today": date.today().isoformat() if scaling is None else scaling.snapshot.date,
                        "meetings_today": (
                            scaling.snapshot.activity.meetings_today if scaling else None
                        ),
                        "accounts_today": (
                            scaling.snapshot.activity.accounts_today if scaling else None
                        ),
                    },
                    "current": {
                        service: _current_scale(scaling, service) for service in services
                    },
                    "target": {
                        service: scaling.targets.get(service) if scaling else None
                        for service in services
                    },
                },
            },
            "stats": {
                "meetings_active": stats.get("meetings_active"),
                "meetings_limit": stats.get("meetings_limit"),
                "users_active": stats.get("users_active"),
                "users_total": stats.get("users_total"),
                "users_limit": stats.get("users_limit"),
                "feature_chat": stats.get("feature_chat"),
                "feature_evoting": stats.get("feature_evoting"),
            },
            "meetings": list(self.meetings),
        }


def _current_scale(plan: AutoscalePlan | None, service: str) -> str | None:
    if plan is None:
        return None
    replicas = plan.snapshot.replicas.get(service)
    return replicas.display if replicas is not None else None


def configured_images(stack_file: Path) -> dict[str, str]:
    """Return ``service -> image`` from a deployment descriptor."""
    try:
        data = yaml.safe_load(stack_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.debug("Unable to read %s: %s", stack_file, exc)
        return {}
    services = data.get("services") if isinstance(data, Mapping) else None
    if not isinstance(services, Mapping):
        return {}
    images: dict[str, str] = {}
    for service, definition in services.items():
        if isinstance(definition, Mapping) and definition.get("image"):
            images[str(service)] = str(definition["image"])
    return images


def _as_int(value: object) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(str(value))
    except ValueError:
        return 0


def format_meeting(meeting: Mapping[str, object]) -> tuple[str, str]:
    """Return the tree header and body for a meeting entry."""
    meeting_id = _as_int(meeting.get("id"))
    name = str(meeting.get("name") or "")
    if len(name) > 15:
        name = name[:15] + "."
    header = f"{meeting_id:02d}: {name}"
    body = ""
    start = _as_int(meeting.get("start_time"))
    end = _as_int(meeting.get("end_time"))
    if start > 0 and end > 0:
        duration = (end - start) // 86400 + 1
        first = datetime.fromtimestamp(start).date().isoformat()
        if start == end:
            body = f"{first} ({duration}d)"
        else:
            last = datetime.fromtimestamp(end).date().isoformat()
            body = f"{first} – {last} ({duration}d)"
    domain = meeting.get("jitsi_domain")
    room = meeting.get("jitsi_room_name")
    if domain and room:
        body = f"{body}: {domain}/{room}"
        if meeting.get("jitsi_room_password"):
            body = f"{body}: ({meeting['jitsi_room_password']})"
    return header, body


class StatusReporter:
    """Probe instances and build listings."""

    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        stack: StackProvider,
        probe: HttpProbe,
        tools: ManagementToolResolver,
        locks: ActionLockManager,
        autoscale: AutoscaleEngine,
        parallel: bool = True,
        max_workers: int = 8,
    ) -> None:
        self.registry = registry
        self.stack = stack
        self.probe = probe
        self.tools = tools
        self.locks = locks
        self.autoscale = autoscale
        self.parallel = parallel
        self.max_workers = max(1, max_workers)

    def list(
        self,
        pattern: str | None,
        options: ListingOptions,
        *,
        search_metadata: bool = False,
    ) -> list[InstanceStatus]:
        """Return the status of every matching instance that passes the filters."""
        instances = self.registry.list_instances(pattern, search_metadata=search_metadata)
        results = self._collect_all(instances, options)
        return [status for status in results if status is not None]

    def _collect_all(
        self, instances: Sequence[Instance], options: ListingOptions
    ) -> list[InstanceStatus | None]:
        if not self.parallel or self.max_workers == 1 or len(instances) <= 1:
            return [self.collect(instance, options) for instance in instances]
        results: list[InstanceStatus | None] = [None] * len(instances)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_index: dict[concurrent.futures.Future[InstanceStatus | None], int] = {}
            for index, instance in enumerate(instances):
                future = executor.submit(self.collect, instance, options)
                future_to_index[future] = index
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return results

    def collect(self, instance: Instance, options: ListingOptions) -> InstanceStatus | None:
        """Probe *instance*; returns ``None`` when a filter excludes it.

        An unreadable instance configuration does not abort the listing; the
        instance is reported in error state with the problem attached.
        """
        try:
            config = instance.config
        except (InstanceConfigError, OSError) as exc:
            LOGGER.warning("Unable to read the configuration of %s: %s", instance.name, exc)
            return self._degraded(instance, str(exc), options)
        status = InstanceStatus(
            name=instance.name,
            stack_name=instance.stack_name,
            directory=instance.directory,
            port=config.port,
        )
        tool = self._probe_state(instance, status, options)

        if not self._passes_state_filters(status, options):
            return None
        status.locks = self.locks.list_locks(instance)
        if options.lock_state == "locked" and not status.has_locks:
            return None
        if options.lock_state == "unlocked" and status.has_locks:
            return None
        status.summary = MetadataLog(instance.metadata_file).summary()

        if options.wants("services"):
            status.service_versions = configured_images(instance.stack_file)
            status.service_versions[MANAGEMENT_TOOL_KEY] = config.management_tool_hash or ""
            if status.running and status.management_access and tool is not None and (
                not options.fast or options.json
            ):
                status.scaling = self._scaling(instance, tool)
        if options.wants("secrets"):
            self._read_secrets(instance, status)
        if options.wants("metadata") or options.long:
            status.metadata = MetadataLog(instance.metadata_file).lines()
        if options.wants("stats") and status.running and status.management_access and tool:
            self._collect_stats(instance, tool, status)
        if (options.long or options.json) and status.running and status.management_access and tool:
            status.pending_migration = self._pending_migration(instance, tool)
        return status

    def _degraded(
        self, instance: Instance, message: str, options: ListingOptions
    ) -> InstanceStatus | None:
        status = InstanceStatus(
            name=instance.name,
            stack_name=stack_name_for(instance.name),
            directory=instance.directory,
            port=None,
            symbol=SYM_ERROR,
            error=message,
        )
        if not self._passes_state_filters(status, options):
            return None
        status.locks = self.locks.list_locks(instance)
        if options.lock_state == "locked" and not status.has_locks:
            return None
        if options.lock_state == "unlocked" and status.has_locks:
            return None
        status.summary = MetadataLog(instance.metadata_file).summary()
        if options.wants("metadata") or options.long:
            status.metadata = MetadataLog(instance.metadata_file).lines()
        return status

    # ------------------------------------------------------------------
    def _probe_state(
        self, instance: Instance, status: InstanceStatus, options: ListingOptions
    ) -> ManagementTool | None:
        port = status.port
        if self.probe.port_open(port):
            status.symbol = SYM_OK
            status.running = True
            status.version = SKIPPED_VERSION
            status.version_image = SKIPPED_VERSION
            if not options.fast:
                if self.probe.healthy(port):
                    self._read_versions(status, options)
                else:
                    status.symbol = SYM_ERROR
            tool = self._management_tool(instance)
            status.management_access = tool is not None and self._has_access(instance, tool)
            return tool if status.management_access else None

        status.symbol = SYM_STOPPED
        if not options.fast:
            try:
                if self.stack.is_deployed(status.stack_name):
                    status.symbol = SYM_ERROR
            except StackError as exc:
                LOGGER.debug("Unable to query stack state for %s: %s", instance.name, exc)
        return None

    def _read_versions(self, status: InstanceStatus, options: ListingOptions) -> None:
        try:
            status.version = self.stack.running_version(status.stack_name)
        except StackError as exc:
            LOGGER.debug("Falling back to built-in version for %s: %s", status.name, exc)
            status.version = self.probe.builtin_version(status.port) or ""
            status.version_image = status.version
            return
        if options.long or options.json:
            status.version_image = self.probe.builtin_version(status.port) or ""

    def _management_tool(self, instance: Instance) -> ManagementTool | None:
        try:
            return self.tools.for_instance(instance)
        except ManagementError as exc:
            LOGGER.debug("No management tool for %s: %s", instance.name, exc)
            return None

    @staticmethod
    def _has_access(instance: Instance, tool: ManagementTool) -> bool:
        try:
            tool.get(instance, "user", ("id",))
        except ManagementError as exc:
            LOGGER.debug("No management access to %s: %s", instance.name, exc)
            return False
        return True

    @staticmethod
    def _passes_state_filters(status: InstanceStatus, options: ListingOptions) -> bool:
        if options.running_state == "online" and status.symbol != SYM_OK:
            return False
        if options.running_state == "stopped" and status.symbol != SYM_STOPPED:
            return False
        if options.running_state == "error" and status.symbol not in {SYM_ERROR, SYM_UNKNOWN}:
            return False
        if options.version_pattern and re.search(options.version_pattern, status.version) is None:
            return False
        return True

    def _scaling(self, instance: Instance, tool: ManagementTool) -> AutoscalePlan | None:
        try:
            return self.autoscale.plan(self.autoscale.gather(instance, tool))
        except (AutoscaleError, ManagementError, StackError) as exc:
            LOGGER.debug("Unable to compute scaling for %s: %s", instance.name, exc)
            return None

    @staticmethod
    def _read_secrets(instance: Instance, status: InstanceStatus) -> None:
        try:
            lines = instance.admin_secret_file.read_text(encoding="utf-8").splitlines()
        except OSError:
            status.superadmin = None
        else:
            status.superadmin = lines[0] if lines else ""
        user_file = instance.setup_dir / USER_SETUP_FILE
        try:
            data = yaml.safe_load(user_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return
        if isinstance(data, Mapping):
            status.user = {
                key: "" if data.get(key) is None else str(data.get(key))
                for key in ("first_name", "last_name", "username", "email", "default_password")
            }

    def _collect_stats(self, instance: Instance, tool: ManagementTool, status: InstanceStatus) -> None:
        try:
            organizations = tool.get(instance, "organization")
            organization = next(iter(organizations.values()), {})
            if not isinstance(organization, Mapping):
                organization = {}
            active_ids = organization.get("active_meeting_ids")
            total = tool.count(instance, "user")
            active = tool.count(instance, "user", filter_expr="is_active=true")
            meetings = tool.get(instance, "meeting", MEETING_FIELDS)
        except ManagementError as exc:
            LOGGER.debug("Unable to collect stats for %s: %s", instance.name, exc)
            return
        status.stats = {
            "meetings_active": len(active_ids) if isinstance(active_ids, list) else 0,
            "meetings_limit": organization.get("limit_of_meetings"),
            "users_active": active,
            "users_total": total,
            "users_limit": organization.get("limit_of_users"),
            "feature_chat": organization.get("enable_chat"),
            "feature_evoting": organization.get("enable_electronic_voting"),
        }
        status.meetings = sorted(
            (dict(meeting) for meeting in meetings.values() if isinstance(meeting, Mapping)),
            key=lambda meeting: _as_int(meeting.get("id")),
        )

    @staticmethod
    def _pending_migration(instance: Instance, tool: ManagementTool) -> bool | None:
        try:
            stats = tool.migration_stats(instance)
            return MigrationStatus.parse(stats.get("status")) is not MigrationStatus.NOT_REQUIRED
        except (ManagementError, MigrationError) as exc:
            LOGGER.debug("Unable to read migration status for %s: %s", instance.name, exc)
            return None

    # ------------------------------------------------------------------
    def build_tree(self, status: InstanceStatus, options: ListingOptions) -> ReportNode:
        """Return the detail tree shown below an instance in long listings."""
        root = ReportNode(label=f"{status.symbol} {status.name}")
        if status.error:
            root.add("Error", status.error, style="red")
        if options.long:
            root.add("Directory", status.directory)
            root.add("Stack name", status.stack_name)
            root.add("Local port", status.port)
            versions = root.add("Versions")
            versions.add("Images", status.version)
            versions.add("Built-in", status.version_image)
            if status.pending_migration:
                versions.add("Migrations", "pending", style="yellow")
            if status.has_locks:
                locks = root.add("Lock status", "locked", style="red")
                for record in status.locks:
                    day = datetime.fromtimestamp(record.locked_at).date().isoformat()
                    locks.add(
                        record.action,
                        f"{record.reason} ({record.actor_name}, {record.actor_contact} on {day})",
                    )
            else:
                root.add("Lock status", "unlocked")

        if options.services:
            services = root.add("Services")
            configured = services.add("Versions (configured)")
            for service, image in sorted(status.service_versions.items()):
                configured.add(service, image)
            if not options.fast and status.running:
                self._scaling_tree(services, status)

        if options.secrets:
            secrets = root.add("Secrets")
            secrets.add("superadmin", status.superadmin or "-")
            if status.user.get("username"):
                secrets.add(f'"{status.user["username"]}"', status.user.get("default_password", ""))
            if status.user.get("email"):
                secrets.add("Contact", status.user["email"])

        if options.stats and status.running:
            self._stats_tree(root, status)

        if status.metadata and (options.metadata or options.long):
            metadata = root.add("Metadata")
            metadata.body.extend(status.metadata)
        return root

    def _scaling_tree(self, parent: ReportNode, status: InstanceStatus) -> None:
        if not status.management_access:
            parent.add("Scaling", ACCESS_DENIED, style="red")
            return
        plan = status.scaling
        if plan is None:
            parent.add("Scaling", "N/A")
            return
        activity = plan.snapshot.activity
        scaling = parent.add(
            "Scaling",
            f"(meetings on {plan.snapshot.date}: {activity.meetings_today} - "
            f"users in active meetings: {activity.accounts_today})",
        )
        for service, replicas in sorted(plan.snapshot.replicas.items()):
            target = plan.targets.get(service, replicas.desired)
            arrow, mark = "→", ""
            if replicas.desired < target:
                arrow, mark = "↗", " !"
            elif replicas.desired > target:
                arrow = "↘"
            scaling.add(service, f"{replicas.display} {arrow} {target}{mark}")

    def _stats_tree(self, root: ReportNode, status: InstanceStatus) -> None:
        if not status.management_access or status.stats is None:
            root.add("Stats", ACCESS_DENIED, style="red")
            return
        stats = status.stats
        node = root.add("Stats")
        meetings = node.add(
            "Meetings", f"{_blank(stats.get('meetings_active'))}/{_blank(stats.get('meetings_limit'))}"
        )
        for meeting in status.meetings:
            header, body = format_meeting(meeting)
            meetings.add(header, body)
        node.add(
            "Users",
            f"{_blank(stats.get('users_active'))}/{_blank(stats.get('users_total'))}"
            f"/{_blank(stats.get('users_limit'))}",
        )
        features = [
            name
            for name, key in (("chat", "feature_chat"), ("evoting", "feature_evoting"))
            if stats.get(key)
        ]
        node.add("Features", " ".join(features) or "-")


def _blank(value: object) -> str:
    return "" if value is None else str(value)


__all__ = [
    "InstanceStatus",
    "ListingOptions",
    "LOCK_FILTERS",
    "RUNNING_FILTERS",
    "SYM_ERROR",
    "SYM_OK",
    "SYM_STOPPED",
    "SYM_UNKNOWN",
    "StatusError",
    "StatusReporter",
    "configured_images",
    "format_meeting",
]
