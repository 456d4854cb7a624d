"""Shared fixtures and fakes for the osinstancectl test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pytest
import yaml

from osinstancectl.autoscale import AutoscaleEngine
from osinstancectl.config import AppConfig, load_config
from osinstancectl.lease import LeaseManager
from osinstancectl.lifecycle import LifecycleController
from osinstancectl.locking import ActionLockManager, Actor
from osinstancectl.migrations import MigrationStatus
from osinstancectl.ports import PortAllocator
from osinstancectl.providers.haproxy import BEGIN_MARKER, END_MARKER, HaproxyProvider
from osinstancectl.providers.hooks import HookRunner
from osinstancectl.providers.stack import ServiceReplicas, summarize_image_versions
from osinstancectl.state.registry import Instance, InstanceRegistry
from osinstancectl.status import StatusReporter
from osinstancectl.templates import TemplateEngine

FIXED_NOW = datetime(2024, 5, 6, 12, 0, 0)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_app_config(tmp_path: Path, **extra: object) -> Path:
    """Write an application config pointing every directory into *tmp_path*."""
    haproxy_cfg = tmp_path / "haproxy" / "haproxy.cfg"
    haproxy_cfg.parent.mkdir(parents=True, exist_ok=True)
    if not haproxy_cfg.exists():
        haproxy_cfg.write_text(
            "frontend https\n"
            f"\t# {BEGIN_MARKER}\n"
            f"\t# {END_MARKER}\n",
            encoding="utf-8",
        )
    template = tmp_path / "etc" / "config.yml.template"
    template.parent.mkdir(parents=True, exist_ok=True)
    if not template.exists():
        template.write_text(
            "---\ndefaults:\n  containerRegistry: registry.example\n  tag: latest\n",
            encoding="utf-8",
        )
    payload: dict[str, object] = {
        "instances_dir": str(tmp_path / "instances"),
        "legacy_instances_dir": str(tmp_path / "legacy"),
        "config_template": str(template),
        "templates_dir": str(tmp_path / "templates"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "docker_bin": str(tmp_path / "bin" / "docker"),
        "management": {"bindir": str(tmp_path / "manage")},
        "haproxy": {
            "config_file": str(haproxy_cfg),
            "haproxy_bin": str(tmp_path / "bin" / "haproxy"),
            "reload_command": ["true"],
        },
        "wait": {"interval": 0.01, "max_progress": 3},
    }
    payload.update(extra)
    config_path = tmp_path / "etc" / "osinstancectl.yml"
    config_path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return config_path


def make_instance(
    registry: InstanceRegistry,
    name: str,
    *,
    port: int = 61001,
    marker: bool = True,
    document: Mapping[str, object] | None = None,
    metadata: Iterable[str] = (),
) -> Instance:
    """Create a minimal valid instance directory."""
    instance = registry.instance_for(name)
    instance.directory.mkdir(parents=True, exist_ok=True)
    instance.stack_file.write_text(
        yaml.safe_dump(
            {
                "services": {
                    "backendManage": {"image": "registry.example/openslides-backend:4.0.1"},
                    "client": {"image": "registry.example/openslides-client:4.0.1"},
                }
            }
        ),
        encoding="utf-8",
    )
    config: dict[str, object] = {
        "port": port,
        "stackName": instance.name.replace(".", ""),
        "defaults": {"containerRegistry": "registry.example", "tag": "4.0.1"},
    }
    config.update(document or {})
    instance.config_store.update(config)
    instance.secrets_dir.mkdir(exist_ok=True)
    instance.manage_secret_file.write_text("secret\n", encoding="utf-8")
    if marker:
        instance.marker_file.touch()
    lines = list(metadata)
    if lines:
        instance.metadata_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return instance


class RecordingReporter:
    """Reporter that keeps every message for assertions."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.warnings: list[str] = []

    def echo(self, message: str) -> None:
        self.messages.append(("echo", message))

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.messages.append(("warn", message))

    def progress(self, text: str) -> None:
        self.messages.append(("progress", text))

    def texts(self, kind: str | None = None) -> list[str]:
        return [text for level, text in self.messages if kind is None or level == kind]


@dataclass
class FakeStack:
    """In-memory stand-in for :class:`~osinstancectl.providers.stack.StackProvider`."""

    docker_bin: str = "docker"
    deployed: set[str] = field(default_factory=set)
    images: dict[str, list[str]] = field(default_factory=dict)
    current_replicas: dict[str, dict[str, ServiceReplicas]] = field(default_factory=dict)
    calls: list[tuple[object, ...]] = field(default_factory=list)
    swarm: bool = True

    def deploy(self, stack_name: str, stack_file: Path) -> None:
        self.calls.append(("deploy", stack_name))
        self.deployed.add(stack_name)

    def remove(self, stack_name: str) -> object | None:
        if stack_name not in self.deployed:
            return None
        self.calls.append(("remove", stack_name))
        self.deployed.discard(stack_name)
        return object()

    def list_stacks(self) -> list[str]:
        return sorted(self.deployed)

    def is_deployed(self, stack_name: str) -> bool:
        return stack_name in self.deployed

    def swarm_active(self) -> bool:
        return self.swarm

    def service_images(self, stack_name: str) -> list[str]:
        return list(self.images.get(stack_name, []))

    def running_version(self, stack_name: str) -> str:
        return summarize_image_versions(self.service_images(stack_name))

    def backend_version_count(self, stack_name: str) -> int:
        tags = {
            image.rsplit(":", 1)[-1]
            for image in self.service_images(stack_name)
            if "backend" in image
        }
        return len(tags) or 1

    def replicas(self, stack_name: str) -> dict[str, ServiceReplicas]:
        return dict(self.current_replicas.get(stack_name, {}))

    def update_service_image(self, stack_name: str, service: str, image: str) -> None:
        self.calls.append(("update_service_image", stack_name, service, image))

    def scale_command(self, stack_name: str, service: str, replicas: int) -> list[str]:
        return [self.docker_bin, "service", "scale", f"{stack_name}_{service}={replicas}"]

    def scale(self, stack_name: str, service: str, replicas: int) -> None:
        self.calls.append(("scale", stack_name, service, replicas))
        current = self.current_replicas.get(stack_name, {}).get(service)
        if current is not None:
            self.current_replicas[stack_name][service] = ServiceReplicas(
                service=service, running=replicas, desired=replicas
            )


@dataclass
class FakeCompleted:
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""


@dataclass
class FakeTool:
    """Stand-in for a management tool binary."""

    path: Path = Path("/usr/local/lib/openslides-manage/versions/latest")
    hash: str = "abc123"
    statuses: list[MigrationStatus] = field(
        default_factory=lambda: [MigrationStatus.NOT_REQUIRED]
    )
    collections: dict[str, dict[str, object]] = field(default_factory=dict)
    calls: list[tuple[object, ...]] = field(default_factory=list)
    initial_data_rc: int = 0
    migration_index: int | None = None

    def setup(self, directory: Path) -> FakeCompleted:
        self.calls.append(("setup", directory))
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "secrets").mkdir(exist_ok=True)
        (directory / "secrets" / "manage_auth_password").write_text("secret\n", encoding="utf-8")
        (directory / "config.yml").write_text("---\n", encoding="utf-8")
        return FakeCompleted()

    def render_config(self, directory: Path) -> FakeCompleted:
        self.calls.append(("config", directory))
        (directory / "docker-stack.yml").write_text("services: {}\n", encoding="utf-8")
        return FakeCompleted()

    def call(self, instance: Instance, *args: str, check: bool = True) -> FakeCompleted:
        self.calls.append(("call", instance.name, *args))
        return FakeCompleted(stdout="called\n")

    def get(
        self,
        instance: Instance,
        collection: str,
        fields: Iterable[str] = (),
        *,
        filter_expr: str | None = None,
    ) -> dict[str, object]:
        self.calls.append(("get", collection, filter_expr))
        key = f"{collection}?{filter_expr}" if filter_expr else collection
        return dict(self.collections.get(key, {}))

    def count(self, instance: Instance, collection: str, *, filter_expr: str | None = None) -> int:
        return len(self.get(instance, collection, ("id",), filter_expr=filter_expr))

    def initial_data(self, instance: Instance) -> int:
        self.calls.append(("initial-data",))
        return self.initial_data_rc

    def set_organization(self, instance: Instance, payload: Path) -> FakeCompleted:
        self.calls.append(("set-organization", payload.name))
        return FakeCompleted()

    def create_user(self, instance: Instance, payload: Path) -> FakeCompleted:
        self.calls.append(("create-user", payload.name))
        return FakeCompleted()

    def check_server(self, instance: Instance) -> bool:
        return True

    def migration_stats(self, instance: Instance) -> dict[str, object]:
        stats: dict[str, object] = {"status": self.statuses[0].value}
        if self.migration_index is not None:
            stats["current_migration_index"] = self.migration_index
        return stats

    def migrate(self, instance: Instance) -> FakeCompleted:
        self.calls.append(("migrate",))
        self._advance()
        return FakeCompleted()

    def finalize(self, instance: Instance) -> FakeCompleted:
        self.calls.append(("finalize",))
        self._advance()
        return FakeCompleted()

    def _advance(self) -> None:
        if len(self.statuses) > 1:
            self.statuses.pop(0)


@dataclass
class FakeResolver:
    tool: FakeTool
    bindir: Path = Path("/usr/local/lib/openslides-manage/versions")
    requests: list[str | None] = field(default_factory=list)

    def resolve(self, option: str | None = None, configured_hash: str | None = None) -> FakeTool:
        self.requests.append(option)
        return self.tool

    def for_instance(self, instance: Instance, option: str | None = None) -> FakeTool:
        return self.resolve(option, instance.config.management_tool_hash)


@dataclass
class FakeProbe:
    open_ports: set[int] = field(default_factory=set)
    healthy_ports: set[int] = field(default_factory=set)
    versions: dict[int, str] = field(default_factory=dict)

    def port_open(self, port: int | None) -> bool:
        return port in self.open_ports

    def healthy(self, port: int | None) -> bool:
        return port in self.healthy_ports

    def builtin_version(self, port: int | None) -> str | None:
        return self.versions.get(port) if port is not None else None


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Application config rooted in a temporary directory."""
    return load_config(config_file=write_app_config(tmp_path), env={})


@pytest.fixture
def registry(app_config: AppConfig) -> InstanceRegistry:
    app_config.instances_dir.mkdir(parents=True, exist_ok=True)
    return InstanceRegistry(
        app_config.instances_dir,
        legacy_instances_dir=app_config.legacy_instances_dir,
        config_template=app_config.config_template,
        stack_file_name=app_config.stack_file_name,
    )


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def fake_stack() -> FakeStack:
    return FakeStack()


@pytest.fixture
def fake_tool() -> FakeTool:
    return FakeTool()


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def actor_locks() -> ActionLockManager:
    return ActionLockManager(
        actor=Actor(name="alice", contact="alice@example.org"),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_controller(
    app_config: AppConfig,
    registry: InstanceRegistry,
    fake_stack: FakeStack,
    fake_tool: FakeTool,
    fake_probe: FakeProbe,
    reporter: RecordingReporter,
    actor_locks: ActionLockManager,
) -> Callable[..., LifecycleController]:
    """Factory for controllers wired to fakes and a real HAProxy provider."""

    def factory(
        *,
        confirm: Callable[[str], bool] | None = None,
        hooks_dir: Path | None = None,
        fail_on_hook_error: bool = False,
        port_probe: Callable[[int], bool] = lambda port: True,
    ) -> LifecycleController:
        templates = TemplateEngine.with_overrides(None)
        return LifecycleController(
            config=app_config,
            registry=registry,
            stack=fake_stack,  # type: ignore[arg-type]
            tools=FakeResolver(fake_tool),  # type: ignore[arg-type]
            probe=fake_probe,  # type: ignore[arg-type]
            hooks=HookRunner(hooks_dir=hooks_dir, fail_on_error=fail_on_hook_error),
            haproxy=HaproxyProvider(
                templates=templates,
                config_file=app_config.haproxy.config_file,
                haproxy_bin=app_config.haproxy.haproxy_bin,
                reload_command=("true",),
            ),
            ports=PortAllocator(
                app_config.instances_dir,
                legacy_instances_dir=app_config.legacy_instances_dir,
                probe=port_probe,
            ),
            locks=actor_locks,
            leases=LeaseManager(app_config.runtime_dir, env={}),
            templates=templates,
            reporter=reporter,
            confirm=confirm,
            sleep=lambda seconds: None,
            clock=lambda: FIXED_NOW,
        )

    return factory


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def new_instance(registry: InstanceRegistry) -> Callable[..., Instance]:
    """Factory creating valid instance directories in the test registry."""

    def factory(name: str, **kwargs: object) -> Instance:
        return make_instance(registry, name, **kwargs)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def config_file(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing an application config file (extra keys allowed)."""

    def factory(**extra: object) -> Path:
        return write_app_config(tmp_path, **extra)

    return factory


@pytest.fixture
def make_status_reporter(
    registry: InstanceRegistry,
    fake_stack: FakeStack,
    fake_tool: FakeTool,
    fake_probe: FakeProbe,
    actor_locks: ActionLockManager,
) -> Callable[..., StatusReporter]:
    """Factory for status reporters wired to the fakes."""

    def factory(
        *,
        parallel: bool = False,
        idle: Mapping[object, object] | None = None,
    ) -> StatusReporter:
        autoscale = AutoscaleEngine.from_config(
            fake_stack,  # type: ignore[arg-type]
            {},
            dict(idle or {}),
            clock=lambda: FIXED_NOW,
        )
        return StatusReporter(
            registry=registry,
            stack=fake_stack,  # type: ignore[arg-type]
            probe=fake_probe,  # type: ignore[arg-type]
            tools=FakeResolver(fake_tool),  # type: ignore[arg-type]
            locks=actor_locks,
            autoscale=autoscale,
            parallel=parallel,
            max_workers=4,
        )

    return factory
