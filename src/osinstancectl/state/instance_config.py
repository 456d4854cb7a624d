"""Typed access to an instance's ``config.yml``.

Every instance directory carries a ``config.yml`` document that is consumed
by the management tool when rendering the deployment descriptor. Keys that
are absent from the instance document fall back to the host-wide config
template, so the effective value is resolved in this order:

1. the instance ``config.yml``;
2. the config template (``config_template`` in the application config);
3. ``None``.

Writes always target the instance document and are atomic (temporary file
followed by :func:`os.replace`).
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path

import yaml

_MISSING = object()


class InstanceConfigError(RuntimeError):
    """Raised when an instance config document cannot be read or written."""


def _split_key(dotted_key: str) -> list[str]:
    segments = [segment for segment in dotted_key.strip().lstrip(".").split(".") if segment]
    if not segments:
        raise InstanceConfigError(f"Invalid config key: {dotted_key!r}.")
    return segments


def _lookup(document: Mapping[str, object], segments: list[str]) -> object:
    current: object = document
    for segment in segments:
        if not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def _load_document(path: Path | None) -> dict[str, object]:
    if path is None or not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise InstanceConfigError(f"Failed to parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise InstanceConfigError(f"{path} must contain a mapping at the top level.")
    return dict(data)


@dataclass(frozen=True)
class InstanceConfig:
    """Resolved view of an instance config with template fallback."""

    document: Mapping[str, object]
    template: Mapping[str, object] = field(default_factory=dict)

    def get(self, dotted_key: str, default: object | None = None) -> object | None:
        """Return *dotted_key* from the instance document, then the template."""
        segments = _split_key(dotted_key)
        for source in (self.document, self.template):
            value = _lookup(source, segments)
            if value is not _MISSING and value is not None:
                return value
        return default

    @property
    def port(self) -> int | None:
        value = self.get("port")
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(str(value))
        except ValueError:
            return None

    @property
    def stack_name(self) -> str | None:
        return self._string("stackName")

    @property
    def default_tag(self) -> str | None:
        return self._string("defaults.tag")

    @property
    def default_registry(self) -> str | None:
        return self._string("defaults.containerRegistry")

    @property
    def management_tool_hash(self) -> str | None:
        return self._string("managementToolHash")

    @property
    def disable_postgres(self) -> bool:
        return self.get("disablePostgres") is True

    @property
    def services(self) -> Mapping[str, Mapping[str, object]]:
        """Per-service overrides from the instance document only."""
        raw = self.document.get("services")
        if not isinstance(raw, Mapping):
            return {}
        return {
            str(name): dict(value) for name, value in raw.items() if isinstance(value, Mapping)
        }

    def has_custom_service_images(self) -> bool:
        """Return ``True`` when any service pins its own tag or registry."""
        return any(
            service.get("tag") or service.get("containerRegistry")
            for service in self.services.values()
        )

    def _string(self, dotted_key: str) -> str | None:
        value = self.get(dotted_key)
        if value is None:
            return None
        return str(value)


class InstanceConfigStore:
    """Read and atomically rewrite a single instance ``config.yml``."""

    def __init__(self, path: Path, template_path: Path | None = None) -> None:
        self.path = Path(path)
        self.template_path = template_path

    def load(self) -> InstanceConfig:
        """Return the current resolved configuration."""
        return InstanceConfig(
            document=_load_document(self.path),
            template=_load_document(self.template_path),
        )

    def get(self, dotted_key: str, default: object | None = None) -> object | None:
        """Shortcut for ``load().get(dotted_key)``."""
        return self.load().get(dotted_key, default)

    def set(self, dotted_key: str, value: object) -> None:
        """Assign a single value in the instance document."""
        self.update({dotted_key: value})

    def update(self, values: Mapping[str, object]) -> None:
        """Assign several dotted keys in one atomic rewrite."""
        document = deepcopy(_load_document(self.path))
        for dotted_key, value in values.items():
            _assign(document, _split_key(dotted_key), value)
        self._write(document)

    def _write(self, document: Mapping[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = self.path.stat().st_mode & 0o777 if self.path.exists() else 0o640
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write("---\n")
                yaml.safe_dump(dict(document), handle, sort_keys=False, default_flow_style=False)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)


def _assign(document: dict[str, object], segments: list[str], value: object) -> None:
    current = document
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            if child is not None:
                raise InstanceConfigError(
                    f"Cannot set {'.'.join(segments)}: {segment!r} is not a mapping."
                )
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value


__all__ = ["InstanceConfig", "InstanceConfigError", "InstanceConfigStore"]
