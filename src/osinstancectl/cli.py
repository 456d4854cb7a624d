"""Typer-powered command line interface for ``osinstancectl``.

Every command builds on a shared :class:`RuntimeContext` that is created
once per invocation from the layered application configuration. Mutating
commands run inside a structured-log operation scope; domain errors are
translated into exit codes in :func:`_command_error`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .autoscale import AutoscaleEngine, AutoscaleError
from .config import AppConfig, ConfigError, load_config
from .console import ConsoleReporter
from .exit_codes import ExitCode, exit_code_for
from .lease import LeaseError, LeaseManager
from .lifecycle import (
    REMOVAL_TOKEN,
    AccountRequest,
    LifecycleController,
    LifecycleError,
    RemovalDeclined,
)
from .locking import ActionLockManager, LockError
from .logging import OperationScope, StructuredLogger, configure_logging
from .migrations import MigrationDeclined, MigrationError
from .ports import PortAllocationError, PortAllocator
from .providers import (
    HaproxyError,
    HaproxyProvider,
    HookError,
    HookRunner,
    HttpProbe,
    ManagementError,
    ManagementToolResolver,
    StackError,
    StackProvider,
)
from .report import RichTreeRenderer
from .setup import SetupAssistant
from .state.instance_config import InstanceConfigError
from .state.registry import Instance, InstanceRegistry, InstanceRegistryError
from .status import (
    SYM_ERROR,
    SYM_OK,
    SYM_STOPPED,
    InstanceStatus,
    ListingOptions,
    StatusError,
    StatusReporter,
)
from .templates import TemplateEngine

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to osinstancectl's YAML config file.",
)
MANAGEMENT_TOOL_OPTION = typer.Option(
    None,
    "--management-tool",
    "-O",
    help=(
        "Management tool to use: a file name in the versions directory, a path, "
        "'-' to keep the configured one or '*' to follow the latest version."
    ),
)
FINALIZE_OPTION = typer.Option(
    False,
    "--finalize",
    help="Finalize pending migrations instead of only migrating.",
)
ASK_OPTION = typer.Option(
    False,
    "--ask",
    help="Ask before running migrations or finalizing them.",
)

_SYMBOL_STYLES = {
    SYM_OK: "bold green",
    SYM_ERROR: "bold red",
    SYM_STOPPED: "dim",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage OpenSlides instances deployed as container stacks.

        Instances live in directories below the configured instances
        directory and are reached through HAProxy on a local port.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    stack: StackProvider
    tools: ManagementToolResolver
    probe: HttpProbe
    haproxy: HaproxyProvider
    hooks: HookRunner
    ports: PortAllocator
    locks: ActionLockManager
    leases: LeaseManager
    logger: StructuredLogger
    templates: TemplateEngine
    reporter: ConsoleReporter
    lifecycle: LifecycleController


def _confirm(prompt: str) -> bool:
    return typer.confirm(prompt, default=True)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    use_lease: bool = True,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    config = load_config(config_file=config_file)
    registry = InstanceRegistry(
        config.instances_dir,
        legacy_instances_dir=config.legacy_instances_dir,
        config_template=config.config_template,
        stack_file_name=config.stack_file_name,
    )
    templates = TemplateEngine.with_overrides(config.templates_dir)
    stack = StackProvider(docker_bin=config.docker_bin)
    tools = ManagementToolResolver(
        bindir=config.management.bindir,
        default_version=config.management.default_version,
        config_template=config.config_template,
        compose_template=config.compose_template,
        check_timeout=config.management.check_timeout,
    )
    probe = HttpProbe(
        timeout=config.http.timeout,
        retries=config.http.retries,
        retry_delay=config.http.retry_delay,
    )
    haproxy = HaproxyProvider(
        templates=templates,
        config_file=config.haproxy.config_file,
        haproxy_bin=config.haproxy.haproxy_bin,
        reload_command=config.haproxy.reload_command,
    )
    hooks = HookRunner(hooks_dir=config.hooks_dir, fail_on_error=config.hooks_fail_on_error)
    ports = PortAllocator(
        config.instances_dir,
        legacy_instances_dir=config.legacy_instances_dir,
        base_port=config.ports.base,
        max_probes=config.ports.max_probes,
    )
    locks = ActionLockManager()
    leases = LeaseManager(config.runtime_dir, enforce=use_lease, timeout=config.lease_timeout)
    logger = StructuredLogger(config.logs_dir)
    reporter = ConsoleReporter(console, err_console)
    lifecycle = LifecycleController(
        config=config,
        registry=registry,
        stack=stack,
        tools=tools,
        probe=probe,
        hooks=hooks,
        haproxy=haproxy,
        ports=ports,
        locks=locks,
        leases=leases,
        templates=templates,
        reporter=reporter,
        confirm=_confirm,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        stack=stack,
        tools=tools,
        probe=probe,
        haproxy=haproxy,
        hooks=hooks,
        ports=ports,
        locks=locks,
        leases=leases,
        logger=logger,
        templates=templates,
        reporter=reporter,
        lifecycle=lifecycle,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the osinstancectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    no_pid_file: bool = typer.Option(
        False,
        "--no-pid-file",
        help="Do not take the per-instance run lease (use with care).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print debug output.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_logging(verbose)
    if version:
        console.print(f"osinstancectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    try:
        _ensure_runtime(ctx, config_file, use_lease=not no_pid_file)
    except ConfigError as exc:
        err_console.print(f"[bold red]ERROR:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[bold red]ERROR:[/bold red] {escape(message)}")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


_HANDLED_ERRORS = (
    ConfigError,
    InstanceConfigError,
    InstanceRegistryError,
    LockError,
    LeaseError,
    PortAllocationError,
    StatusError,
    LifecycleError,
    MigrationError,
    AutoscaleError,
    StackError,
    ManagementError,
    HaproxyError,
    HookError,
)


@contextmanager
def _handle_errors(op: OperationScope) -> Iterator[None]:
    """Translate domain errors raised inside the block into exit codes."""
    try:
        yield
    except RemovalDeclined as exc:
        console.print(str(exc))
        op.warning(str(exc), warnings=[str(exc)])
        raise typer.Exit(code=ExitCode.OK) from exc
    except MigrationDeclined as exc:
        console.print(str(exc))
        op.error(str(exc), rc=int(ExitCode.DECLINED))
        raise typer.Exit(code=ExitCode.DECLINED) from exc
    except _HANDLED_ERRORS as exc:
        _command_error(op, str(exc), rc=exit_code_for(exc))


def _finish(runtime: RuntimeContext, op: OperationScope, message: str, *, changed: int) -> None:
    if runtime.reporter.warnings:
        op.warning(message, warnings=list(runtime.reporter.warnings), changed=changed)
    else:
        op.success(message, changed=changed)


# ----------------------------------------------------------------------
# listing
# ----------------------------------------------------------------------
def _status_reporter(runtime: RuntimeContext, *, patient: bool) -> StatusReporter:
    config = runtime.config
    probe = runtime.probe
    if patient:
        probe = HttpProbe(
            timeout=config.http.patient_timeout,
            retries=config.http.patient_retries,
            retry_delay=config.http.retry_delay,
        )
    autoscale = AutoscaleEngine.from_config(
        runtime.stack, config.autoscale.active, config.autoscale.idle
    )
    return StatusReporter(
        registry=runtime.registry,
        stack=runtime.stack,
        probe=probe,
        tools=runtime.tools,
        locks=runtime.locks,
        autoscale=autoscale,
        parallel=config.listing.parallel and not patient,
        max_workers=config.listing.max_workers,
    )


def _symbol(status: InstanceStatus) -> str:
    style = _SYMBOL_STYLES.get(status.symbol, "bold yellow")
    return f"[{style}]{status.symbol}[/{style}]"


def _render_listing(
    reporter: StatusReporter, statuses: Sequence[InstanceStatus], options: ListingOptions
) -> None:
    if options.extended:
        renderer = RichTreeRenderer()
        for status in statuses:
            console.print(renderer.render(reporter.build_tree(status, options)))
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Metadata")
    if not statuses:
        table.add_row("", "(none)", "", "")
    for status in statuses:
        table.add_row(
            _symbol(status),
            escape(status.name),
            escape(status.version),
            escape(status.error or status.summary or ""),
        )
    console.print(table)


@app.command("ls")
def list_instances(
    ctx: typer.Context,
    pattern: str | None = typer.Argument(None, help="Regular expression matched against names."),
    long: bool = typer.Option(False, "--long", "-l", help="Show details for every instance."),
    services: bool = typer.Option(False, "--services", help="Show configured service images and scaling."),
    secrets: bool = typer.Option(False, "--secrets", help="Show the superadmin and user passwords."),
    metadata: bool = typer.Option(False, "--metadata", "-m", help="Show the metadata log."),
    stats: bool = typer.Option(False, "--stats", help="Show meeting and user statistics."),
    search_metadata: bool = typer.Option(
        False, "--search-metadata", "-M", help="Also match PATTERN against metadata."
    ),
    fast: bool = typer.Option(False, "--fast", "-f", help="Skip health and version checks."),
    patient: bool = typer.Option(
        False, "--patient", help="Use long timeouts and probe instances one after another."
    ),
    online: bool = typer.Option(False, "--online", "-n", help="Only list healthy instances."),
    stopped: bool = typer.Option(False, "--stopped", help="Only list stopped instances."),
    error: bool = typer.Option(False, "--error", "-e", help="Only list instances in error state."),
    locked: bool = typer.Option(False, "--locked", help="Only list instances with locks."),
    unlocked: bool = typer.Option(False, "--unlocked", help="Only list instances without locks."),
    image_version: str | None = typer.Option(
        None, "--image-version", help="Only list instances whose version matches this regex."
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Emit instances as JSON."),
) -> None:
    """List instances and their status."""
    runtime = _get_runtime(ctx)
    states = [state for state, flag in (("online", online), ("stopped", stopped), ("error", error)) if flag]
    with runtime.logger.operation(
        "ls",
        args={"pattern": pattern, "fast": fast, "patient": patient, "json": json_output},
        target={"kind": "instance", "scope": "list"},
    ) as op:
        if len(states) > 1:
            _command_error(op, "Choose at most one of --online, --stopped and --error.")
        if locked and unlocked:
            _command_error(op, "Choose at most one of --locked and --unlocked.")
        with _handle_errors(op):
            options = ListingOptions(
                long=long,
                services=services,
                secrets=secrets,
                metadata=metadata,
                stats=stats,
                fast=fast,
                json=json_output,
                running_state=states[0] if states else None,
                lock_state="locked" if locked else "unlocked" if unlocked else None,
                version_pattern=image_version,
            )
            reporter = _status_reporter(runtime, patient=patient)
            statuses = reporter.list(pattern, options, search_metadata=search_metadata)

        if json_output:
            console.print_json(data={"instances": [status.to_dict() for status in statuses]})
        else:
            _render_listing(reporter, statuses, options)
        op.success(f"Listed {len(statuses)} instance(s).", changed=0)


# ----------------------------------------------------------------------
# create / clone
# ----------------------------------------------------------------------
@app.command("add")
def add_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Domain name of the new instance."),
    clone_from: str | None = typer.Option(
        None, "--clone-from", help="Create the instance as a copy of this instance."
    ),
    tag: str | None = typer.Option(None, "--tag", "-t", help="Image tag for all services."),
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
    local_only: bool = typer.Option(
        False, "--local-only", help="Do not register the instance with HAProxy."
    ),
    first_name: str | None = typer.Option(None, "--first-name", help="First name of the local admin."),
    last_name: str | None = typer.Option(None, "--last-name", help="Last name of the local admin."),
    email: str = typer.Option("", "--email", help="Email address of the local admin."),
    start: bool | None = typer.Option(
        None, "--start/--no-start", help="Start the instance afterwards (asks when omitted)."
    ),
    finalize: bool = FINALIZE_OPTION,
    ask: bool = ASK_OPTION,
) -> None:
    """Create a new instance, optionally cloned from an existing one."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "add",
        args={"name": name, "clone_from": clone_from, "tag": tag, "local_only": local_only},
        target={"kind": "instance", "name": name},
    ) as op:
        if (first_name is None) != (last_name is None):
            _command_error(op, "--first-name and --last-name must be given together.")
        if clone_from is not None and (tag or first_name):
            _command_error(op, "--tag and the admin account options cannot be used with --clone-from.")
        with _handle_errors(op):
            if clone_from is not None:
                result = runtime.lifecycle.clone(
                    clone_from,
                    name,
                    management_tool=management_tool,
                    local_only=local_only,
                    start=start,
                    finalize=finalize,
                    ask=ask,
                    op=op,
                )
            else:
                account = None
                if first_name is not None and last_name is not None:
                    account = AccountRequest(first_name=first_name, last_name=last_name, email=email)
                result = runtime.lifecycle.create(
                    name,
                    tag=tag,
                    management_tool=management_tool,
                    local_only=local_only,
                    account=account,
                    start=start,
                    finalize=finalize,
                    ask=ask,
                    op=op,
                )
        console.print(f"[green]Instance '{result.name}' created on port {result.port}.[/green]")
        _finish(runtime, op, "Instance created.", changed=1)


# ----------------------------------------------------------------------
# lifecycle
# ----------------------------------------------------------------------
@app.command("start")
def start_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
    finalize: bool = FINALIZE_OPTION,
    ask: bool = ASK_OPTION,
) -> None:
    """Deploy the stack of an instance and run pending migrations."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"name": name, "finalize": finalize, "ask": ask},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            outcome = runtime.lifecycle.start(
                name, management_tool=management_tool, finalize=finalize, ask=ask, op=op
            )
        _finish(
            runtime,
            op,
            "Instance started.",
            changed=1 if outcome.action.changes_state else 0,
        )


@app.command("stop")
def stop_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Remove the stack of an instance; data stays in place."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            removed = runtime.lifecycle.stop(name, op=op)
        _finish(runtime, op, "Instance stopped." if removed else "Instance was not running.", changed=int(removed))


@app.command("erase")
def erase_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to erase."),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
) -> None:
    """Stop an instance and remove its containers and volumes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "erase",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            instance = runtime.registry.get(name)
            runtime.locks.require_unlocked(instance, "erase")
            _show_instance(runtime, instance)
            console.print("Stop the instance above, and remove its containers and volumes?")
            if not yes and _ask_token() != REMOVAL_TOKEN:
                raise RemovalDeclined(f"Not erasing {instance.name}.")
            runtime.lifecycle.erase(name, op=op)
        _finish(runtime, op, "Instance erased.", changed=1)


@app.command("update")
def update_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to update."),
    tag: str = typer.Option(..., "--tag", "-t", help="Image tag to update all services to."),
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
    force: bool = typer.Option(
        False, "--force", help="Update instances with custom images or without marker."
    ),
    finalize: bool = FINALIZE_OPTION,
    ask: bool = ASK_OPTION,
) -> None:
    """Update an instance to a new image tag, migrating its data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"name": name, "tag": tag, "force": force, "finalize": finalize},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            result = runtime.lifecycle.update(
                name,
                tag,
                management_tool=management_tool,
                force=force,
                finalize=finalize,
                ask=ask,
                op=op,
            )
        if result.pending_migration:
            runtime.reporter.warn(
                f"Migrations of {result.name} are pending; run update with --finalize to complete them."
            )
        _finish(
            runtime,
            op,
            "Instance updated." if result.configuration_updated else "Instance migrated.",
            changed=1,
        )


def _show_instance(runtime: RuntimeContext, instance: Instance) -> None:
    """Print the full status tree of *instance* ahead of a destructive prompt."""
    options = ListingOptions(long=True, stats=True, metadata=True)
    reporter = _status_reporter(runtime, patient=False)
    status = reporter.collect(instance, options)
    if status is not None:
        console.print(RichTreeRenderer().render(reporter.build_tree(status, options)))


def _ask_token() -> str:
    return typer.prompt(
        f"Really delete? (uppercase {REMOVAL_TOKEN} to confirm)",
        default="",
        show_default=False,
    )


@app.command("rm")
def remove_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
    force: bool = typer.Option(
        False, "--force", help="Remove instances that were not created by osinstancectl."
    ),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
) -> None:
    """Delete an instance including all of its data and configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rm",
        args={"name": name, "force": force, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            plan = runtime.lifecycle.plan_remove(name, force=force)
            _show_instance(runtime, runtime.registry.instance_for(plan.name))
            state = "running" if plan.deployed else "stopped"
            console.print(
                f"Delete the instance above ({state}) including all of its data and configuration?"
            )
            confirmation = plan.token if yes else _ask_token()
            runtime.lifecycle.remove(plan, confirmation, op=op)
        _finish(runtime, op, "Instance removed.", changed=1)


@app.command("autoscale")
def autoscale_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to scale."),
    accounts: int | None = typer.Option(
        None, "--accounts", min=0, help="Scale for this many accounts instead of counting them."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only print the scale commands."),
    json_output: bool = typer.Option(False, "--json", help="Emit the plan as JSON."),
) -> None:
    """Scale services according to today's meetings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "autoscale",
        args={"name": name, "accounts": accounts, "dry_run": dry_run},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            with runtime.leases.instance_lease(runtime.registry.instance_for(name).name) as lease:
                for warning in lease.warnings:
                    runtime.reporter.warn(warning)
                op.set_lock_wait_ms(lease.wait_ms)
                instance = runtime.registry.get(name)
                runtime.locks.require_unlocked(instance, "autoscale")
                tool = runtime.tools.for_instance(instance)
                engine = AutoscaleEngine.from_config(
                    runtime.stack,
                    runtime.config.autoscale.active,
                    runtime.config.autoscale.idle,
                    reporter=None if json_output else runtime.reporter,
                )
                plan = engine.autoscale(instance, tool, accounts_override=accounts, dry_run=dry_run)
        if json_output:
            console.print_json(data=plan.to_dict())
        op.add_step("autoscale.plan", detail=plan.to_dict())
        _finish(runtime, op, "Autoscale complete.", changed=0 if dry_run else len(plan.changes))


# ----------------------------------------------------------------------
# locks
# ----------------------------------------------------------------------
@app.command("lock")
def lock_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to lock."),
    actions: list[str] | None = typer.Option(
        None, "--action", "-a", help="Action to lock (repeatable); defaults to all actions."
    ),
    reason: str | None = typer.Option(None, "--reason", "-r", help="Why the instance is locked."),
) -> None:
    """Lock actions on an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "lock",
        args={"name": name, "actions": actions or ["all"]},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            instance = runtime.registry.get(name)
            if reason is None:
                reason = typer.prompt("Reason")
            changes = runtime.locks.lock(instance, reason, actions)
        for change in changes:
            console.print(change.message, markup=False)
        op.success("Lock request processed.", changed=sum(change.changed for change in changes))


@app.command("unlock")
def unlock_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to unlock."),
    actions: list[str] | None = typer.Option(
        None, "--action", "-a", help="Action to unlock (repeatable); defaults to all actions."
    ),
) -> None:
    """Remove locks from an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "unlock",
        args={"name": name, "actions": actions or ["all"]},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            instance = runtime.registry.get(name)
            changes = runtime.locks.unlock(instance, actions)
        for change in changes:
            console.print(change.message, markup=False)
        op.success("Unlock request processed.", changed=sum(change.changed for change in changes))


# ----------------------------------------------------------------------
# management tool / setup
# ----------------------------------------------------------------------
@app.command(
    "manage",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def manage_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
) -> None:
    """Run a management tool command against an instance."""
    runtime = _get_runtime(ctx)
    args = list(ctx.args)
    with runtime.logger.operation(
        "manage",
        args={"name": name, "command": args},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handle_errors(op):
            result = runtime.lifecycle.manage(name, args, management_tool=management_tool, op=op)
        if result.stdout:
            console.print(result.stdout, end="", markup=False, highlight=False)
        if result.stderr:
            err_console.print(result.stderr, end="", markup=False, highlight=False)
        if result.returncode != 0:
            op.error(f"Management command exited with {result.returncode}.", rc=result.returncode)
            raise typer.Exit(code=result.returncode)
        op.success("Management command complete.", changed=0)


@app.command("setup")
def setup_host(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit the check results as JSON."),
) -> None:
    """Check the host for everything osinstancectl needs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        args={"json": json_output},
        target={"kind": "host", "scope": "setup"},
    ) as op:
        assistant = SetupAssistant(
            runtime.config,
            stack=runtime.stack,
            tools=runtime.tools,
            haproxy=runtime.haproxy,
            create_template=runtime.lifecycle.ensure_config_template,
            confirm=None if json_output else lambda prompt: typer.confirm(prompt, default=False),
        )
        report = assistant.run()
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            console.print("\n--- osinstancectl setup assistant ---\n")
            for index, (section, checks) in enumerate(report.sections(), start=1):
                console.print(f" {index}. {section}")
                for check in checks:
                    mark = "[green]✓[/green]" if check.ok else "[red]✗[/red]"
                    console.print(f"    {mark} {escape(check.message)}")
                    for hint in check.hints:
                        console.print(f"    → Hint: {escape(hint)}")
                console.print()
            console.print("--- RESULT ---")
            if report.ok:
                console.print("Congratulations, your system meets the basic prerequisites!")
            else:
                console.print(
                    "Unfortunately, not all prerequisites have been met.  "
                    "Running osinstancectl without resolving the issues may fail."
                )
        failed = [check.message for check in report.checks if not check.ok]
        if failed:
            op.warning("Setup checks failed.", warnings=failed)
            raise typer.Exit(code=ExitCode.ENVIRONMENT)
        op.success("Setup checks passed.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
