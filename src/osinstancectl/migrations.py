"""Schema migration handling for running instances.

The management service reports one of four migration states. Depending on
the state, the requested behaviour (``finalize``) and the versions of the
backend services currently deployed, the orchestrator runs at most one
migration command and then verifies that the reported state matches what
the command is supposed to produce:

=======================  ===========================================  ==============  =======================
state                    condition                                    action          expected state
=======================  ===========================================  ==============  =======================
no_migration_required    (any)                                        none            no_migration_required
migration_required       current_migration_index < 0                  force finalize  no_migration_required
migration_required       finalize and a single backend version        finalize        no_migration_required
migration_required       otherwise                                    migrate         finalization_required
finalization_required    finalize                                     finalize        no_migration_required
finalization_required    not finalize                                 warn            finalization_required
migration_running        (any)                                        warn            migration_running
=======================  ===========================================  ==============  =======================
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .console import NullReporter, Reporter
from .metadata import MetadataLog
from .providers.manage import ManagementTool
from .providers.stack import StackProvider
from .state.registry import Instance

LOGGER = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


class MigrationError(RuntimeError):
    """Base error for migration handling."""


class InstanceNotRunningError(MigrationError):
    """Raised when migration status is requested for a stack that is not deployed."""


class MigrationDeclined(MigrationError):
    """Raised when the operator declines a migration step."""


class MigrationStateError(MigrationError):
    """Raised when the status after a migration command is not the expected one."""


class MigrationStatus(str, Enum):
    """Migration states reported by the management service."""

    NOT_REQUIRED = "no_migration_required"
    REQUIRED = "migration_required"
    FINALIZATION_REQUIRED = "finalization_required"
    RUNNING = "migration_running"

    @classmethod
    def parse(cls, value: object) -> MigrationStatus:
        try:
            return cls(str(value).strip())
        except ValueError as exc:
            raise MigrationError(f"Unknown migration status: {value!r}.") from exc


class MigrationAction(str, Enum):
    """What the orchestrator does for a given state."""

    NONE = "none"
    FORCE_FINALIZE = "force-finalize"
    FINALIZE = "finalize"
    MIGRATE = "migrate"
    WARN = "warn"

    @property
    def changes_state(self) -> bool:
        return self in {
            MigrationAction.FORCE_FINALIZE,
            MigrationAction.FINALIZE,
            MigrationAction.MIGRATE,
        }


@dataclass(frozen=True)
class MigrationPlan:
    """Decision derived from the current migration state."""

    action: MigrationAction
    expected: MigrationStatus
    prompt: str | None = None
    notices: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class MigrationOutcome:
    """Result of :meth:`MigrationOrchestrator.handle`."""

    initial: MigrationStatus
    final: MigrationStatus
    action: MigrationAction

    @property
    def pending(self) -> bool:
        return self.final is not MigrationStatus.NOT_REQUIRED


def plan_migration(
    status: MigrationStatus,
    *,
    finalize: bool,
    backend_versions: int,
    migration_index: int | None,
    mode: str = "start",
) -> MigrationPlan:
    """Return the :class:`MigrationPlan` for *status*."""
    start_mode = mode == "start"
    if status is MigrationStatus.NOT_REQUIRED:
        return MigrationPlan(
            action=MigrationAction.NONE,
            expected=MigrationStatus.NOT_REQUIRED,
            notices=("No migration required.",),
        )
    if status is MigrationStatus.RUNNING:
        return MigrationPlan(
            action=MigrationAction.WARN,
            expected=MigrationStatus.RUNNING,
            warnings=("Migrations are currently running. Try again once they have finished.",),
        )
    if status is MigrationStatus.REQUIRED:
        if migration_index is not None and migration_index < 0:
            return MigrationPlan(
                action=MigrationAction.FORCE_FINALIZE,
                expected=MigrationStatus.NOT_REQUIRED,
                notices=(
                    "Negative migration index found. "
                    "Finalizing in any case to ensure consistency ...",
                ),
            )
        if finalize and backend_versions == 1:
            return MigrationPlan(
                action=MigrationAction.FINALIZE,
                expected=MigrationStatus.NOT_REQUIRED,
                prompt="Start migrations and finalize?",
            )
        warnings: tuple[str, ...] = ()
        if start_mode:
            warnings = (
                "Finalization of migrations will still be required.",
                "Call with --finalize to do it immediately.",
            )
        return MigrationPlan(
            action=MigrationAction.MIGRATE,
            expected=MigrationStatus.FINALIZATION_REQUIRED,
            prompt="Start migrations now without finalizing?",
            warnings=warnings,
        )
    # finalization_required
    if finalize:
        warnings = ()
        if start_mode:
            warnings = (
                "Before finalizing migrations, be sure the whole stack is updated "
                "to the new version.",
                "I.e. you called `osinstancectl update`",
            )
        return MigrationPlan(
            action=MigrationAction.FINALIZE,
            expected=MigrationStatus.NOT_REQUIRED,
            prompt="Finalize pending migrations?",
            warnings=warnings,
        )
    return MigrationPlan(
        action=MigrationAction.WARN,
        expected=MigrationStatus.FINALIZATION_REQUIRED,
        warnings=(
            "Migrations have finished but still need to be finalized. "
            "Call update with --finalize",
        ),
    )


def _auto_accept(prompt: str) -> bool:
    return True


def _as_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class MigrationOrchestrator:
    """Drive the migration state machine of one instance at a time."""

    def __init__(
        self,
        stack: StackProvider,
        *,
        confirm: Confirm | None = None,
        reporter: Reporter | None = None,
    ) -> None:
        self.stack = stack
        self.confirm = confirm or _auto_accept
        self.reporter: Reporter = reporter or NullReporter()

    def migration_stats(self, instance: Instance, tool: ManagementTool) -> dict[str, object]:
        """Return the full ``migrations stats`` mapping of a running instance."""
        if not self.stack.is_deployed(instance.stack_name):
            raise InstanceNotRunningError(
                f"{instance.name} is not running; cannot retrieve migration stats."
            )
        return tool.migration_stats(instance)

    def status(self, instance: Instance, tool: ManagementTool) -> MigrationStatus:
        return MigrationStatus.parse(self.migration_stats(instance, tool).get("status"))

    def handle(
        self,
        instance: Instance,
        tool: ManagementTool,
        *,
        finalize: bool = False,
        ask: bool = False,
        mode: str = "start",
    ) -> MigrationOutcome:
        """Run the migration step appropriate for the current state."""
        stats = self.migration_stats(instance, tool)
        self.reporter.info("Current status of migrations:")
        for key, value in stats.items():
            self.reporter.echo(f"  {key}: {value}")
        initial = MigrationStatus.parse(stats.get("status"))
        backend_versions = 0
        if initial is MigrationStatus.REQUIRED and finalize:
            backend_versions = self.stack.backend_version_count(instance.stack_name)
        plan = plan_migration(
            initial,
            finalize=finalize,
            backend_versions=backend_versions,
            migration_index=_as_int(stats.get("current_migration_index")),
            mode=mode,
        )
        for notice in plan.notices:
            self.reporter.info(notice)
        for warning in plan.warnings:
            self.reporter.warn(warning)
        if not plan.action.changes_state:
            return MigrationOutcome(initial=initial, final=initial, action=plan.action)

        if plan.prompt and ask and not self.confirm(plan.prompt):
            raise MigrationDeclined("Not proceeding with migrations.")

        if plan.action is MigrationAction.MIGRATE:
            self.reporter.echo("Migrating...")
            tool.migrate(instance)
        else:
            self.reporter.echo("Finalizing...")
            tool.finalize(instance)

        final = self.status(instance, tool)
        MetadataLog(instance.metadata_file).record(
            f"Migrations: {plan.action.value} ({initial.value} -> {final.value})"
        )
        LOGGER.debug("Migration %s on %s: %s -> %s", plan.action.value, instance.name, initial, final)
        if final is not plan.expected:
            raise MigrationStateError(
                f"Unexpected migration status after {plan.action.value}: "
                f"{final.value} (expected {plan.expected.value})."
            )
        return MigrationOutcome(initial=initial, final=final, action=plan.action)


__all__ = [
    "Confirm",
    "InstanceNotRunningError",
    "MigrationAction",
    "MigrationDeclined",
    "MigrationError",
    "MigrationOrchestrator",
    "MigrationOutcome",
    "MigrationPlan",
    "MigrationStateError",
    "MigrationStatus",
    "plan_migration",
]
