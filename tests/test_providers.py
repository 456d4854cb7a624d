"""Tests for the orchestration, management, proxy, hook and probe providers."""
from __future__ import annotations

import hashlib
import subprocess
import urllib.error
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from osinstancectl.config import AppConfig
from osinstancectl.providers import haproxy as haproxy_module
from osinstancectl.providers import manage as manage_module
from osinstancectl.providers import probes as probes_module
from osinstancectl.providers import stack as stack_module
from osinstancectl.providers.haproxy import HaproxyError, HaproxyProvider
from osinstancectl.providers.hooks import HookError, HookRunner
from osinstancectl.providers.manage import (
    ManagementAccessError,
    ManagementError,
    ManagementTool,
    ManagementToolResolver,
)
from osinstancectl.providers.probes import HttpProbe
from osinstancectl.providers.stack import (
    ImageRef,
    StackError,
    StackProvider,
    parse_replicas,
    summarize_image_versions,
)
from osinstancectl.state.registry import Instance
from osinstancectl.templates import TemplateEngine


class _Recorder:
    """Replacement for ``subprocess.run`` returning canned results."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.calls: list[list[str]] = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __call__(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        return subprocess.CompletedProcess(
            list(args), self.returncode, stdout=self.stdout, stderr=self.stderr
        )


# Orchestration --------------------------------------------------------------
def test_image_ref_parsing() -> None:
    ref = ImageRef.parse("registry.example:5000/openslides/openslides-client:4.1.0@sha256:ab")

    assert ref.registry == "registry.example:5000/openslides"
    assert ref.repository == "openslides-client"
    assert ref.tag == "4.1.0"
    assert ImageRef.parse("redis").tag == "latest"


def test_summarize_image_versions() -> None:
    """Single versions are shown plainly, mixed ones with counts."""
    assert summarize_image_versions(["reg/a:4.1.0", "reg/b:4.1.0", "redis:7"]) == "4.1.0"
    assert summarize_image_versions([]) == ""
    mixed = summarize_image_versions(["reg/a:4.1.0", "reg/b:4.1.0", "other/c:4.0.9"])
    assert mixed == "4.1.0(2)/4.0.9(1)[2:2]"


def test_parse_replicas() -> None:
    replicas = parse_replicas("demo_client 2/3\ndemo_backendAction 1/1 (max 1 per node)\ngarbage\n")

    assert replicas["client"].display == "2/3"
    assert replicas["backendAction"].running == 1
    assert "garbage" not in replicas


def test_stack_provider_reports_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface the command's stderr."""
    recorder = _Recorder(returncode=1, stderr="Error: no such stack")
    monkeypatch.setattr(stack_module.subprocess, "run", recorder)

    with pytest.raises(StackError, match=r"Deploying stack demo failed \(exit 1\): Error: no such"):
        StackProvider().deploy("demo", Path("/srv/demo/docker-stack.yml"))
    assert recorder.calls[0] == ["docker", "stack", "deploy", "-c", "/srv/demo/docker-stack.yml", "demo"]


def test_stack_provider_lists_and_scales(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(stdout="demo\nother\n")
    monkeypatch.setattr(stack_module.subprocess, "run", recorder)
    provider = StackProvider(docker_bin="/usr/bin/docker")

    assert provider.is_deployed("demo") is True
    assert provider.remove("missing") is None
    provider.scale("demo", "client", 3)

    assert recorder.calls[-1] == ["/usr/bin/docker", "service", "scale", "demo_client=3"]
    assert provider.swarm_active() is True


def test_stack_provider_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(args: Sequence[str], **kwargs: object) -> None:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(stack_module.subprocess, "run", missing)

    with pytest.raises(StackError, match="not found"):
        StackProvider().list_stacks()


# Management tool ------------------------------------------------------------
def test_management_tool_connects_to_instance(
    monkeypatch: pytest.MonkeyPatch,
    new_instance: Callable[..., Instance],
) -> None:
    """Connected commands address the instance port with its secret."""
    instance = new_instance("demo.example", port=61005)
    recorder = _Recorder(stdout='{"1": {"id": 1}, "2": {"id": 2}}')
    monkeypatch.setattr(manage_module.subprocess, "run", recorder)
    tool = ManagementTool(path=Path("/opt/manage"), hash="abc")

    assert tool.count(instance, "user", filter_expr="is_active=true") == 2

    assert recorder.calls[0] == [
        "/opt/manage",
        "get",
        "user",
        "--fields=id",
        "--filter=is_active=true",
        "-a",
        "127.0.0.1:61005",
        "--password-file",
        str(instance.manage_secret_file),
        "--no-ssl",
    ]


def test_management_tool_directory_commands(
    monkeypatch: pytest.MonkeyPatch,
    new_instance: Callable[..., Instance],
) -> None:
    """``setup``/``config`` receive the local config and the directory."""
    instance = new_instance("demo.example")
    recorder = _Recorder()
    monkeypatch.setattr(manage_module.subprocess, "run", recorder)
    tool = ManagementTool(path=Path("/opt/manage"), hash="abc")

    tool.render_config(instance.directory)

    assert recorder.calls[0] == [
        "/opt/manage",
        "config",
        f"--config={instance.config_file}",
        str(instance.directory),
    ]


def test_management_tool_requires_secret(new_instance: Callable[..., Instance]) -> None:
    instance = new_instance("demo.example")
    instance.manage_secret_file.unlink()
    tool = ManagementTool(path=Path("/opt/manage"), hash="abc")

    with pytest.raises(ManagementAccessError):
        tool.call(instance, "get", "user")
    assert tool.check_server(instance) is False


def test_management_tool_failure_message(
    monkeypatch: pytest.MonkeyPatch,
    new_instance: Callable[..., Instance],
) -> None:
    instance = new_instance("demo.example")
    monkeypatch.setattr(manage_module.subprocess, "run", _Recorder(returncode=3, stderr="denied"))
    tool = ManagementTool(path=Path("/opt/manage"), hash="abc")

    with pytest.raises(ManagementError, match=r"'migrations stats' failed \(exit 3\): denied"):
        tool.migration_stats(instance)


def test_migration_stats_are_parsed(
    monkeypatch: pytest.MonkeyPatch,
    new_instance: Callable[..., Instance],
) -> None:
    instance = new_instance("demo.example")
    monkeypatch.setattr(
        manage_module.subprocess,
        "run",
        _Recorder(stdout="status: finalization_required\ncurrent_migration_index: 52\n"),
    )
    tool = ManagementTool(path=Path("/opt/manage"), hash="abc")

    assert tool.migration_stats(instance) == {
        "status": "finalization_required",
        "current_migration_index": 52,
    }


def _install_tool(bindir: Path, name: str, content: bytes) -> Path:
    bindir.mkdir(parents=True, exist_ok=True)
    path = bindir / name
    path.write_bytes(content)
    path.chmod(0o755)
    return path


def test_resolver_selection_rules(tmp_path: Path) -> None:
    """``-`` keeps the configured binary, ``*`` follows the default version."""
    bindir = tmp_path / "versions"
    _install_tool(bindir, "latest", b"latest-tool")
    pinned = _install_tool(bindir, "abc123", b"pinned-tool")
    resolver = ManagementToolResolver(bindir=bindir)

    assert resolver.resolve("-", "abc123").path == pinned
    assert resolver.resolve("*", "abc123").path == bindir / "latest"
    assert resolver.resolve(None, "*").path == bindir / "latest"
    assert resolver.resolve(None, "abc123").path == pinned
    assert resolver.resolve(str(pinned)).path == pinned.resolve()
    assert resolver.resolve().hash == hashlib.sha256(b"latest-tool").hexdigest()

    with pytest.raises(ManagementError, match="not found"):
        resolver.resolve("missing")


# HAProxy -------------------------------------------------------------------
def _haproxy(app_config: AppConfig, reload_command: Sequence[str] = ("true",)) -> HaproxyProvider:
    return HaproxyProvider(
        templates=TemplateEngine.with_overrides(None),
        config_file=app_config.haproxy.config_file,
        haproxy_bin=app_config.haproxy.haproxy_bin,
        reload_command=tuple(reload_command),
    )


def test_haproxy_add_and_remove_entries(app_config: AppConfig) -> None:
    """Entries are inserted before the end marker and removed again."""
    provider = _haproxy(app_config)

    assert provider.is_prepared() is True
    result = provider.add("demo.example", 61001)
    assert result.changed is True
    assert provider.add("demo.example", 61001).changed is False
    assert provider.entries() == ["demo.example"]

    text = app_config.haproxy.config_file.read_text(encoding="utf-8")
    assert text.index("server     demo.example 127.0.0.1:61001") < text.index(haproxy_module.END_MARKER)
    assert provider.backup_file.exists()

    assert provider.remove("demo.example").changed is True
    assert provider.entries() == []
    assert provider.remove("demo.example").changed is False


def test_haproxy_requires_managed_block(app_config: AppConfig) -> None:
    app_config.haproxy.config_file.write_text("frontend https\n", encoding="utf-8")
    provider = _haproxy(app_config)

    assert provider.is_prepared() is False
    with pytest.raises(HaproxyError, match="automatic config block missing"):
        provider.add("demo.example", 61001)


def test_haproxy_rolls_back_invalid_config(
    app_config: AppConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed ``haproxy -c`` restores the previous file and skips the reload."""
    original = app_config.haproxy.config_file.read_text(encoding="utf-8")
    recorder = _Recorder(returncode=1, stderr="[ALERT] parsing error")
    monkeypatch.setattr(haproxy_module.subprocess, "run", recorder)
    provider = _haproxy(app_config)

    with pytest.raises(HaproxyError, match="parsing error"):
        provider.add("demo.example", 61001)

    assert app_config.haproxy.config_file.read_text(encoding="utf-8") == original
    assert len(recorder.calls) == 1


def test_haproxy_reload_failure(app_config: AppConfig) -> None:
    provider = _haproxy(app_config, reload_command=("false",))

    with pytest.raises(HaproxyError, match="Reloading HAProxy failed"):
        provider.add("demo.example", 61001)


# Hooks ---------------------------------------------------------------------
def _write_hook(hooks_dir: Path, name: str, body: str) -> None:
    hooks_dir.mkdir(parents=True, exist_ok=True)
    hook = hooks_dir / name
    hook.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    hook.chmod(0o755)


def test_hook_runs_with_instance_environment(
    tmp_path: Path,
    new_instance: Callable[..., Instance],
) -> None:
    """Hooks see the instance details and run inside the instance directory."""
    instance = new_instance("demo.example", port=61007)
    hooks_dir = tmp_path / "hooks"
    _write_hook(hooks_dir, "post-start", 'echo "$PROJECT_NAME $PORT $HOOK_NAME"; touch hook-ran')
    runner = HookRunner(hooks_dir=hooks_dir)

    result = runner.run("post-start", instance)

    assert result.ran is True
    assert result.output.strip() == "demo.example 61007 post-start"
    assert (instance.directory / "hook-ran").exists()
    assert runner.run("pre-start", instance).ran is False


def test_failing_hook_warns_or_raises(
    tmp_path: Path,
    new_instance: Callable[..., Instance],
) -> None:
    instance = new_instance("demo.example")
    hooks_dir = tmp_path / "hooks"
    _write_hook(hooks_dir, "pre-erase", "exit 4")

    assert HookRunner(hooks_dir=hooks_dir).run("pre-erase", instance).returncode == 4
    with pytest.raises(HookError, match="exited with status 4"):
        HookRunner(hooks_dir=hooks_dir, fail_on_error=True).run("pre-erase", instance)


def test_hooks_disabled_without_directory(new_instance: Callable[..., Instance]) -> None:
    instance = new_instance("demo.example")

    assert HookRunner().run("post-create", instance).ran is False


# Probes --------------------------------------------------------------------
class _Response:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def test_http_health_and_version(monkeypatch: pytest.MonkeyPatch) -> None:
    """The probe reads the health document and the served version."""
    bodies = {
        "http://127.0.0.1:61001/system/action/health": '{"status": "running"}',
        "http://127.0.0.1:61001/assets/version.txt": "4.1.0\n",
    }

    def fake_urlopen(request: object, timeout: float) -> _Response:
        return _Response(bodies[request.full_url])  # type: ignore[attr-defined]

    monkeypatch.setattr(probes_module.urllib.request, "urlopen", fake_urlopen)
    probe = HttpProbe()

    assert probe.healthy(61001) is True
    assert probe.builtin_version(61001) == "4.1.0"
    assert probe.healthy(None) is False


def test_http_check_retries_connection_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[str] = []

    def failing_urlopen(request: object, timeout: float) -> _Response:
        attempts.append(request.full_url)  # type: ignore[attr-defined]
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(probes_module.urllib.request, "urlopen", failing_urlopen)
    probe = HttpProbe(retries=2, retry_delay=0)

    assert probe.healthy(61001) is False
    assert len(attempts) == 3


def test_port_closed_check() -> None:
    assert HttpProbe(timeout=0.1).port_open(None) is False
