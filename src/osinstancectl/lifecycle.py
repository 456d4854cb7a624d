"""Instance lifecycle operations.

:class:`LifecycleController` implements the mutating commands of the CLI:
``create``, ``clone``, ``start``, ``stop``, ``erase``, ``update``, ``remove``
and the ``manage`` pass-through. Each operation holds the instance's run lease,
validates the instance directory and refuses to act on locked actions before
touching anything.

Operations report progress through a :class:`~osinstancectl.console.Reporter`
and, when an :class:`~osinstancectl.logging.OperationScope` is supplied,
record their individual steps for the structured operations log.
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
import string
import subprocess
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import yaml

from .config import AppConfig
from .console import NullReporter, Reporter
from .lease import LeaseManager
from .locking import ActionLockManager
from .logging import OperationScope
from .metadata import MetadataLog, timestamp
from .migrations import (
    Confirm,
    MigrationDeclined,
    MigrationError,
    MigrationOrchestrator,
    MigrationOutcome,
    MigrationStatus,
)
from .ports import PortAllocator
from .providers.haproxy import HaproxyProvider
from .providers.hooks import HookRunner
from .providers.manage import (
    FOLLOW_LATEST,
    INITIAL_DATA_OK_CODES,
    KEEP_CURRENT,
    ManagementError,
    ManagementTool,
    ManagementToolResolver,
)
from .providers.probes import HttpProbe
from .providers.stack import StackError, StackProvider
from .state.registry import (
    ORGANIZATION_SETUP_FILE,
    USER_SETUP_FILE,
    Instance,
    InstanceNotFoundError,
    InstanceRegistry,
    normalize_name,
    stack_name_for,
)
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

REMOVAL_TOKEN = "YES"
ADMIN_PASSWORD_LENGTH = 15
DB_PASSWORD_FILE = "/run/secrets/postgres_password"
DB_SERVICES: tuple[str, ...] = ("DATASTORE", "MEDIA", "VOTE")
STAGED_SUFFIX = ".setup"
DEPLOYMENT_MODE = "stack"
_PASSWORD_ALPHABET = string.ascii_letters + string.digits

NOT_RUNNING_NOTICE: tuple[str, ...] = (
    "      The configuration has been updated and the instance will be upgraded upon its next start.",
    "      Note that the next start might take a long time due to pending migrations.",
    "      Consider starting the instance and running migrations now.",
    "      Alternatively, downgrade for now and run migrations in the background "
    "once the instance is started.",
)


class LifecycleError(RuntimeError):
    """Raised when a lifecycle operation cannot be completed."""


class RemovalDeclined(LifecycleError):
    """Raised when a removal was not confirmed with the expected token."""


def generate_password(length: int = ADMIN_PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric password."""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def database_settings(name: str) -> dict[str, object]:
    """Return the dotted ``config.yml`` keys holding the DB connection parameters."""
    settings: dict[str, object] = {}
    for service in DB_SERVICES:
        prefix = f"defaultEnvironment.{service}_DATABASE"
        settings[f"{prefix}_NAME"] = name
        settings[f"{prefix}_USER"] = f"{name}_user"
        settings[f"{prefix}_PASSWORD_FILE"] = DB_PASSWORD_FILE
    return settings


def _write_secret(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)


def _restrict_secrets(directory: Path) -> None:
    if not directory.is_dir():
        return
    for path in directory.rglob("*"):
        if path.is_file():
            path.chmod(0o600)
    directory.chmod(0o700)


def _auto_accept(prompt: str) -> bool:
    return True


@dataclass(frozen=True)
class AccountRequest:
    """Details for the local admin account staged on ``create``."""

    first_name: str
    last_name: str
    email: str = ""

    @property
    def username(self) -> str:
        return f"{self.first_name}{self.last_name}"


@dataclass(frozen=True)
class RemovalPlan:
    """First phase of a removal; confirm by passing :attr:`token` back."""

    name: str
    directory: Path
    deployed: bool
    token: str = REMOVAL_TOKEN


@dataclass(slots=True)
class UpdateResult:
    """Outcome of :meth:`LifecycleController.update`."""

    name: str
    tag: str
    deployed: bool
    configuration_updated: bool
    migration: MigrationOutcome | None = None

    @property
    def pending_migration(self) -> bool:
        return self.migration is not None and self.migration.pending


@dataclass(slots=True)
class CreateResult:
    """Outcome of :meth:`LifecycleController.create` and ``clone``."""

    name: str
    directory: Path
    port: int
    management_hash: str
    haproxy_registered: bool
    started: bool
    cloned_from: str | None = None


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


class LifecycleController:
    """Create, start, stop, update and remove instances."""

    def __init__(
        self,
        *,
        config: AppConfig,
        registry: InstanceRegistry,
        stack: StackProvider,
        tools: ManagementToolResolver,
        probe: HttpProbe,
        hooks: HookRunner,
        haproxy: HaproxyProvider,
        ports: PortAllocator,
        locks: ActionLockManager,
        leases: LeaseManager,
        templates: TemplateEngine,
        reporter: Reporter | None = None,
        confirm: Confirm | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.registry = registry
        self.stack = stack
        self.tools = tools
        self.probe = probe
        self.hooks = hooks
        self.haproxy = haproxy
        self.ports = ports
        self.locks = locks
        self.leases = leases
        self.templates = templates
        self.reporter: Reporter = reporter or NullReporter()
        self.confirm = confirm or _auto_accept
        self.sleep = sleep
        self.clock = clock
        self.migrations = MigrationOrchestrator(
            stack, confirm=self.confirm, reporter=self.reporter
        )

    # ------------------------------------------------------------------
    # start / stop / erase
    # ------------------------------------------------------------------
    def start(
        self,
        name: str,
        *,
        management_tool: str | None = None,
        finalize: bool = False,
        ask: bool = False,
        op: OperationScope | None = None,
    ) -> MigrationOutcome:
        """Deploy the stack and bring the instance into a consistent state."""
        with self._lease(name, op):
            instance = self.registry.get(name)
            self._require_unlocked(instance, "start", op)
            tool = self.tools.for_instance(instance, management_tool)
            self._metadata(instance).record(f"Starting with manage={tool.hash}", now=self.clock())
            outcome = self._instance_start(
                instance, tool, finalize=finalize, ask=ask, mode="start", op=op
            )
            self._run_hook("post-start", instance, op)
            self.reporter.echo("Done.")
            return outcome

    def stop(self, name: str, *, op: OperationScope | None = None) -> bool:
        """Remove the stack; returns ``False`` when it was not deployed."""
        with self._lease(name, op):
            instance = self.registry.get(name)
            self._require_unlocked(instance, "stop", op)
            removed = self._instance_stop(instance, op)
            self._run_hook("post-stop", instance, op)
            self.reporter.echo("Done.")
            return removed

    def erase(self, name: str, *, op: OperationScope | None = None) -> None:
        """Stop the instance and hand data deletion to the ``mid-erase`` hook."""
        with self._lease(name, op):
            instance = self.registry.get(name)
            self._require_unlocked(instance, "erase", op)
            self._instance_erase(instance, op)
            self.reporter.echo("Done.")

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------
    def update(
        self,
        name: str,
        tag: str,
        *,
        management_tool: str | None = None,
        force: bool = False,
        finalize: bool = False,
        ask: bool = False,
        op: OperationScope | None = None,
    ) -> UpdateResult:
        """Move the instance to image *tag*, migrating data where possible.

        Running instances are updated in two steps. Step 1 switches only the
        management backend to the new image and runs the data migrations.
        Step 2 rewrites the configuration and redeploys the whole stack; it
        runs right away when *finalize* is set or when no migrations are
        pending. Stopped instances only get their configuration updated.
        """
        if not tag:
            raise LifecycleError("Missing image tag for update.")
        with self._lease(name, op):
            instance = self.registry.get(name)
            if not force and not instance.has_marker:
                raise LifecycleError(
                    "The instance was not created with osinstancectl. "
                    "Refusing to update unless --force is given."
                )
            self._require_unlocked(instance, "update", op)
            option = management_tool or self.config.management.default_version
            tool = self.tools.for_instance(instance, option)
            self._metadata(instance).record(f"Update using manage={tool.hash}", now=self.clock())
            self._run_hook("pre-update", instance, op)
            result = self._instance_update(
                instance, tool, tag, option=option, force=force, finalize=finalize, ask=ask, op=op
            )
            self._run_hook("post-update", instance, op)
            self.reporter.echo("Done.")
            return result

    def _instance_update(
        self,
        instance: Instance,
        tool: ManagementTool,
        tag: str,
        *,
        option: str,
        force: bool,
        finalize: bool,
        ask: bool,
        op: OperationScope | None,
    ) -> UpdateResult:
        if not force and instance.config.has_custom_service_images():
            raise LifecycleError(
                "Custom service tags or containerRegistry found which cannot be updated "
                "automatically! Refusing update.  (Use --force to update the default tag anyway.)"
            )

        if option == KEEP_CURRENT:
            LOGGER.info("Not updating management tool.")
        else:
            configured = FOLLOW_LATEST if option == FOLLOW_LATEST else tool.hash
            instance.config_store.set("managementToolHash", configured)
            message = f"Updated management tool to {configured}"
            if configured != tool.hash:
                message += f" ({tool.hash})"
            self._metadata(instance).record(message, now=self.clock())
            _step(op, "config.management_tool", detail=configured)

        deployed = self.stack.is_deployed(instance.stack_name)
        migration: MigrationOutcome | None = None
        run_second_step = True
        if deployed:
            migration = self._update_backend(instance, tool, tag, finalize=finalize, ask=ask, op=op)
            run_second_step = finalize or migration.final is MigrationStatus.NOT_REQUIRED
        if run_second_step:
            outcome = self._update_stack(instance, tool, tag, finalize=finalize, ask=ask, op=op)
            if outcome is not None:
                migration = outcome
        else:
            _step(op, "update.configuration", status="skipped", detail="migrations pending")
        return UpdateResult(
            name=instance.name,
            tag=tag,
            deployed=deployed,
            configuration_updated=run_second_step,
            migration=migration,
        )

    def _update_backend(
        self,
        instance: Instance,
        tool: ManagementTool,
        tag: str,
        *,
        finalize: bool,
        ask: bool,
        op: OperationScope | None,
    ) -> MigrationOutcome:
        config = instance.config
        registry = config.default_registry
        if not registry:
            raise LifecycleError("Could not determine image registry.")
        old_tag = config.default_tag or "latest"
        service = self.config.management.backend_service
        image = self.config.management.backend_image

        self.reporter.echo(f"Updating service {service} to new version for data migration")
        self.stack.update_service_image(instance.stack_name, service, f"{registry}/{image}:{tag}")
        _step(op, "stack.update_service", detail=f"{service} -> {tag}")
        self.reporter.progress("Waiting for management service to become ready.")
        self._wait_for(lambda: tool.check_server(instance))
        try:
            outcome = self.migrations.handle(
                instance, tool, finalize=finalize, ask=ask, mode="update"
            )
        except (MigrationError, ManagementError) as exc:
            self.reporter.warn(
                f"Reverting service {service} to old version for management commands "
                "to keep working"
            )
            self.stack.update_service_image(
                instance.stack_name, service, f"{registry}/{image}:{old_tag}"
            )
            _step(op, "stack.update_service", status="warning", detail=f"{service} -> {old_tag}")
            if isinstance(exc, MigrationDeclined):
                raise
            raise LifecycleError("Error during migrations. Aborting.") from exc
        _step(op, "migrations", detail=f"{outcome.initial.value} -> {outcome.final.value}")
        return outcome

    def _update_stack(
        self,
        instance: Instance,
        tool: ManagementTool,
        tag: str,
        *,
        finalize: bool,
        ask: bool,
        op: OperationScope | None,
    ) -> MigrationOutcome | None:
        self.reporter.echo("Updating instance configuration.")
        instance.config_store.update({"defaults.tag": tag, **database_settings(instance.name)})
        tool.render_config(instance.directory)
        self._metadata(instance).record(f"Updated all services to {tag}", now=self.clock())
        _step(op, "update.configuration", detail=tag)

        if not self.stack.is_deployed(instance.stack_name):
            self.reporter.info(f"{instance.name} is not running.")
            for line in NOT_RUNNING_NOTICE:
                self.reporter.echo(line)
            return None
        self.reporter.echo("Starting instance.")
        return self._instance_start(
            instance, tool, finalize=finalize, ask=ask, mode="update", op=op
        )

    # ------------------------------------------------------------------
    # remove
    # ------------------------------------------------------------------
    def plan_remove(self, name: str, *, force: bool = False) -> RemovalPlan:
        """Validate a removal and return the plan to confirm."""
        instance = self.registry.instance_for(name)
        if not instance.directory.is_dir():
            raise InstanceNotFoundError(f"{instance.directory} does not exist.")
        if not force and not instance.has_marker:
            raise LifecycleError(
                "The instance was not created with osinstancectl. "
                "Refusing to delete unless --force is given."
            )
        self.locks.require_unlocked(instance, "remove")
        return RemovalPlan(
            name=instance.name,
            directory=instance.directory,
            deployed=self.stack.is_deployed(instance.stack_name),
        )

    def remove(
        self,
        plan: RemovalPlan,
        confirmation: str | None,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Delete the instance described by *plan* once *confirmation* matches."""
        if confirmation != plan.token:
            raise RemovalDeclined(f"Not deleting {plan.name}.")
        with self._lease(plan.name, op):
            instance = self.registry.instance_for(plan.name)
            if not instance.directory.is_dir():
                raise InstanceNotFoundError(f"{instance.directory} does not exist.")
            self._require_unlocked(instance, "remove", op)
            self._run_hook("pre-remove", instance, op)
            self.reporter.echo("Stopping and removing containers...")
            self._instance_erase(instance, op)
            self.reporter.echo("Removing instance repo dir...")
            shutil.rmtree(instance.directory)
            _step(op, "filesystem.remove", detail=str(instance.directory))
            self.reporter.echo("remove HAProxy config...")
            result = self.haproxy.remove(instance.name)
            _step(op, "haproxy.remove", status="success" if result.changed else "skipped")
            self.reporter.echo("Done.")

    # ------------------------------------------------------------------
    # create / clone
    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        *,
        tag: str | None = None,
        management_tool: str | None = None,
        local_only: bool = False,
        account: AccountRequest | None = None,
        start: bool | None = None,
        finalize: bool = False,
        ask: bool = False,
        op: OperationScope | None = None,
    ) -> CreateResult:
        """Create a new instance directory and register it with the proxy.

        ``start=None`` asks through the confirmation callback whether the new
        instance should be started right away.
        """
        name = normalize_name(name)
        with self._lease(name, op):
            self._require_new(name)
            self.reporter.echo(f"Creating new instance: {name}")
            option = management_tool or self.config.management.default_version
            tool = self.tools.resolve(option)
            port = self.ports.next_free_port()
            _step(op, "ports.allocate", detail=port)
            instance = self.registry.instance_for(name)
            self._create_instance_dir(instance, tool, option, op)

            self._apply_instance_specifics(instance, port, tag)
            self.reporter.echo("Generating superadmin password...")
            _write_secret(instance.admin_secret_file, generate_password())
            if account is not None:
                self._write_user_setup(instance, account)
            self._write_organization_setup(instance)
            instance.config_store.update(database_settings(name))
            tool.render_config(instance.directory)
            _step(op, "manage.config")

            now = self.clock()
            metadata = self._metadata(instance)
            metadata.append(
                "",
                f"{timestamp(now)}: Instance created ({DEPLOYMENT_MODE})",
                f"{timestamp(now)}: image={tag or ''} manage={tool.hash}",
            )
            registered = self._register_proxy(instance, port, local_only, op)
            self._run_hook("post-create", instance, op)
            started = self._maybe_start(instance, tool, start, finalize=finalize, ask=ask, op=op)
            self.reporter.echo("Done.")
            return CreateResult(
                name=name,
                directory=instance.directory,
                port=port,
                management_hash=tool.hash,
                haproxy_registered=registered,
                started=started,
            )

    def clone(
        self,
        source: str,
        name: str,
        *,
        management_tool: str | None = None,
        local_only: bool = False,
        start: bool | None = None,
        finalize: bool = False,
        ask: bool = False,
        op: OperationScope | None = None,
    ) -> CreateResult:
        """Create *name* from the configuration and secrets of *source*."""
        name = normalize_name(name)
        with self._lease(name, op):
            source_instance = self.registry.instance_for(source)
            if not source_instance.directory.is_dir():
                raise InstanceNotFoundError(f"{source_instance.directory} does not exist.")
            if not source_instance.has_marker:
                raise LifecycleError(
                    f"{source_instance.name}: the instance was not created with osinstancectl."
                )
            self._require_unlocked(source_instance, "clone", op)
            self._require_new(name)
            self.reporter.echo(f"Creating new instance: {name} (based on {source_instance.name})")
            option = management_tool or self.config.management.default_version
            tool = self.tools.resolve(option)
            port = self.ports.next_free_port()
            _step(op, "ports.allocate", detail=port)
            self._run_hook("pre-clone", source_instance, op, extra_env={"CLONE_TARGET": name})
            instance = self.registry.instance_for(name)
            self._create_instance_dir(instance, tool, option, op)

            shutil.copy2(source_instance.config_file, instance.config_file)
            if source_instance.admin_secret_file.is_file():
                shutil.copy2(source_instance.admin_secret_file, instance.admin_secret_file)
            if source_instance.setup_dir.is_dir():
                shutil.copytree(source_instance.setup_dir, instance.setup_dir, dirs_exist_ok=True)
            _step(op, "clone.copy", detail=source_instance.name)
            instance.config_store.set(
                "managementToolHash", FOLLOW_LATEST if option == FOLLOW_LATEST else tool.hash
            )
            self._apply_instance_specifics(instance, port, None)
            instance.config_store.update(database_settings(name))
            tool.render_config(instance.directory)
            _step(op, "manage.config")

            now = self.clock()
            self._metadata(instance).append(
                "",
                f"Cloned from {source_instance.name} on {timestamp(now)}",
                f"{timestamp(now)}: image={instance.config.default_tag or ''} manage={tool.hash}",
            )
            registered = self._register_proxy(instance, port, local_only, op)
            self._run_hook("post-clone", instance, op)
            started = self._maybe_start(instance, tool, start, finalize=finalize, ask=ask, op=op)
            self.reporter.echo("Done.")
            return CreateResult(
                name=name,
                directory=instance.directory,
                port=port,
                management_hash=tool.hash,
                haproxy_registered=registered,
                started=started,
                cloned_from=source_instance.name,
            )

    def ensure_config_template(self) -> bool:
        """Write a minimal config template if none exists; return ``True`` if written."""
        path = self.config.config_template
        if path.exists():
            return False
        self.templates.render_to_path(
            "config.yml.template.j2",
            path,
            {
                "stack_file_name": self.config.stack_file_name,
                "db_host": "localhost",
                "db_port": 5432,
            },
        )
        LOGGER.info("Created config template %s.", path)
        return True

    # ------------------------------------------------------------------
    # manage pass-through
    # ------------------------------------------------------------------
    def manage(
        self,
        name: str,
        args: Sequence[str],
        *,
        management_tool: str | None = None,
        op: OperationScope | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run an arbitrary management command against the instance."""
        if not args:
            raise LifecycleError("Missing command for management tool.")
        with self._lease(name, op):
            instance = self.registry.get(name)
            self._require_unlocked(instance, "manage", op)
            tool = self.tools.for_instance(instance, management_tool)
            result = tool.call(instance, *args, check=False)
            _step(op, "manage.call", detail={"args": list(args), "rc": result.returncode})
            return result

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _lease(self, name: str, op: OperationScope | None) -> Iterator[None]:
        with self.leases.instance_lease(normalize_name(name)) as handle:
            for warning in handle.warnings:
                self.reporter.warn(warning)
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            yield

    def _require_unlocked(
        self, instance: Instance, action: str, op: OperationScope | None
    ) -> None:
        self.locks.require_unlocked(instance, action)
        _step(op, "locks.check", detail=action)

    def _require_new(self, name: str) -> None:
        if self.registry.exists(name):
            raise LifecycleError(f"Instance '{name}' already exists.")
        if self.registry.name_taken(name):
            raise LifecycleError(f"Instance '{name}' already exists as an OpenSlides 3 instance.")

    def _metadata(self, instance: Instance) -> MetadataLog:
        return MetadataLog(instance.metadata_file)

    def _run_hook(
        self,
        hook: str,
        instance: Instance,
        op: OperationScope | None,
        *,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        if not self.hooks.available(hook):
            return
        self.reporter.echo(f"Running {hook} hook...")
        result = self.hooks.run(hook, instance, extra_env=extra_env)
        for line in result.output.splitlines():
            self.reporter.echo(line)
        self.reporter.echo(f"End of {hook} hook.")
        if result.returncode != 0:
            self.reporter.warn(f"{hook} hook exited with status {result.returncode}.")
        _step(
            op,
            f"hook.{hook}",
            status="success" if result.returncode == 0 else "warning",
            detail=result.returncode,
        )

    def _wait_for(self, check: Callable[[], bool]) -> int:
        """Poll *check* until it succeeds, printing a capped progress line."""
        interval = self.config.wait.interval
        max_progress = self.config.wait.max_progress
        attempts = 0
        while not check():
            attempts += 1
            self.sleep(interval)
            if attempts < max_progress:
                self.reporter.progress(".")
            elif attempts == max_progress:
                self.reporter.progress(" [truncated]")
        self.reporter.echo(" done.")
        return attempts

    def _instance_start(
        self,
        instance: Instance,
        tool: ManagementTool,
        *,
        finalize: bool,
        ask: bool,
        mode: str,
        op: OperationScope | None,
    ) -> MigrationOutcome:
        tool.render_config(instance.directory)
        _step(op, "manage.config")
        self.stack.deploy(instance.stack_name, instance.stack_file)
        _step(op, "stack.deploy", detail=instance.stack_name)

        port = instance.config.port
        self.reporter.progress("Waiting for instance to become ready.")
        self._wait_for(lambda: self.probe.healthy(port))
        self.reporter.progress("Waiting for 'manage' service to become ready.")
        self._wait_for(lambda: tool.check_server(instance))
        _step(op, "wait.ready")

        if mode != "update":
            self._apply_staged_setup(instance, tool, op)
        try:
            outcome = self.migrations.handle(instance, tool, finalize=finalize, ask=ask, mode=mode)
        except MigrationDeclined:
            raise
        except (MigrationError, ManagementError) as exc:
            raise LifecycleError("Error during migrations. Aborting.") from exc
        _step(op, "migrations", detail=f"{outcome.initial.value} -> {outcome.final.value}")
        return outcome

    def _apply_staged_setup(
        self, instance: Instance, tool: ManagementTool, op: OperationScope | None
    ) -> None:
        returncode = tool.initial_data(instance)
        if returncode not in INITIAL_DATA_OK_CODES:
            self.reporter.warn("Setting initial-data failed.")
        _step(
            op,
            "manage.initial_data",
            status="success" if returncode in INITIAL_DATA_OK_CODES else "warning",
            detail=returncode,
        )
        organization = instance.setup_dir / (ORGANIZATION_SETUP_FILE + STAGED_SUFFIX)
        if organization.is_file():
            tool.set_organization(instance, organization)
            organization.rename(instance.setup_dir / ORGANIZATION_SETUP_FILE)
            _step(op, "manage.set_organization")
        user = instance.setup_dir / (USER_SETUP_FILE + STAGED_SUFFIX)
        if user.is_file():
            tool.create_user(instance, user)
            user.rename(instance.setup_dir / USER_SETUP_FILE)
            _step(op, "manage.create_user")

    def _instance_stop(self, instance: Instance, op: OperationScope | None) -> bool:
        result = self.stack.remove(instance.stack_name)
        if result is None:
            self.reporter.info(f"{instance.name} is not running.")
            _step(op, "stack.remove", status="skipped", detail="not deployed")
            return False
        _step(op, "stack.remove", detail=instance.stack_name)
        return True

    def _instance_erase(self, instance: Instance, op: OperationScope | None) -> None:
        try:
            self._instance_stop(instance, op)
        except StackError as exc:
            LOGGER.warning("Stopping %s failed: %s", instance.name, exc)
            _step(op, "stack.remove", status="warning", detail=str(exc))
        self.reporter.info(
            "The database will not be deleted automatically for Swarm deployments. "
            "You must set up a mid-erase hook to perform the deletion."
        )
        self._run_hook("mid-erase", instance, op)

    def _create_instance_dir(
        self,
        instance: Instance,
        tool: ManagementTool,
        option: str,
        op: OperationScope | None,
    ) -> None:
        template = self.config.config_template
        if not template.is_file():
            self.reporter.warn(f"Configuration template {template} does not exist.")
            if not self.confirm("Create a minimal template now?"):
                raise LifecycleError("Cannot continue without suitable configuration template.")
            self.ensure_config_template()

        self.registry.instances_dir.mkdir(parents=True, exist_ok=True)
        try:
            tool.setup(instance.directory)
        except ManagementError as exc:
            raise LifecycleError(f"Error during `{tool.path} setup`: {exc}") from exc
        _step(op, "manage.setup", detail=str(instance.directory))
        instance.marker_file.touch()
        _restrict_secrets(instance.secrets_dir)
        instance.setup_dir.mkdir(exist_ok=True)
        instance.config_store.set(
            "managementToolHash", FOLLOW_LATEST if option == FOLLOW_LATEST else tool.hash
        )
        db_data = instance.directory / "db-data"
        if db_data.is_dir() and instance.config.disable_postgres:
            db_data.rmdir()

    def _apply_instance_specifics(self, instance: Instance, port: int, tag: str | None) -> None:
        values: dict[str, object] = {
            "port": port,
            "stackName": stack_name_for(instance.name),
        }
        if tag:
            values["defaults.tag"] = tag
        values["services.proxy.environment.ALLOWED_HOSTS"] = f"127.0.0.1:{port} {instance.name}"
        instance.config_store.update(values)

    def _write_user_setup(self, instance: Instance, account: AccountRequest) -> None:
        self.reporter.echo("Generating user credentials...")
        self.templates.render_to_path(
            "setup/user.yml.j2",
            instance.setup_dir / (USER_SETUP_FILE + STAGED_SUFFIX),
            {
                "first_name": account.first_name,
                "last_name": account.last_name,
                "username": account.username,
                "email": account.email,
                "password": generate_password(),
            },
            mode=0o600,
        )

    def _write_organization_setup(self, instance: Instance) -> None:
        entry: dict[str, object] = {"id": 1}
        settings = self.config.setup
        if settings.legal_notice_file is not None and settings.legal_notice_file.is_file():
            entry["legal_notice"] = settings.legal_notice_file.read_text(encoding="utf-8")
        if settings.privacy_policy_file is not None and settings.privacy_policy_file.is_file():
            entry["privacy_policy"] = settings.privacy_policy_file.read_text(encoding="utf-8")
        path = instance.setup_dir / (ORGANIZATION_SETUP_FILE + STAGED_SUFFIX)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump([entry], sort_keys=False), encoding="utf-8")

    def _register_proxy(
        self,
        instance: Instance,
        port: int,
        local_only: bool,
        op: OperationScope | None,
    ) -> bool:
        if local_only:
            self._metadata(instance).append("No HAProxy config added (--local-only)")
            _step(op, "haproxy.add", status="skipped", detail="local-only")
            return False
        result = self.haproxy.add(instance.name, port)
        _step(op, "haproxy.add", status="success" if result.changed else "skipped")
        return True

    def _maybe_start(
        self,
        instance: Instance,
        tool: ManagementTool,
        start: bool | None,
        *,
        finalize: bool,
        ask: bool,
        op: OperationScope | None,
    ) -> bool:
        if start is None:
            start = self.confirm("Start the instance?")
        if not start:
            self.reporter.echo("Not starting instance.")
            return False
        self._instance_start(instance, tool, finalize=finalize, ask=ask, mode="start", op=op)
        return True


__all__ = [
    "AccountRequest",
    "CreateResult",
    "DB_PASSWORD_FILE",
    "LifecycleController",
    "LifecycleError",
    "REMOVAL_TOKEN",
    "RemovalDeclined",
    "RemovalPlan",
    "UpdateResult",
    "database_settings",
    "generate_password",
]
