"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from jinja2 import UndefinedError

from osinstancectl.templates import TemplateEngine


def test_config_template_renders_database_settings() -> None:
    """The minimal config template points every service to the database."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "config.yml.template.j2",
        {"stack_file_name": "docker-stack.yml", "db_host": "db.local", "db_port": 5432},
    )

    data = yaml.safe_load(output)
    assert data["filename"] == "docker-stack.yml"
    assert data["disablePostgres"] is True
    assert data["defaultEnvironment"]["VOTE_DATABASE_HOST"] == "db.local"
    assert data["defaultEnvironment"]["MEDIA_DATABASE_PORT"] == 5432


def test_user_template_quotes_values() -> None:
    """User payloads survive YAML-special characters."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "setup/user.yml.j2",
        {
            "first_name": "Ada",
            "last_name": "Lovelace: Countess",
            "username": "AdaLovelace",
            "email": "",
            "password": "p#ss",
        },
    )

    data = yaml.safe_load(output)
    assert data["last_name"] == "Lovelace: Countess"
    assert data["default_password"] == "p#ss"
    assert data["is_active"] is True


def test_missing_variables_fail() -> None:
    """Templates are rendered with strict undefined handling."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("haproxy/entry.j2", {"name": "a.example"})


def test_override_directory_wins(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override = tmp_path / "templates" / "haproxy"
    override.mkdir(parents=True)
    (override / "entry.j2").write_text("custom {{ name }} {{ port }}\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("haproxy/entry.j2", {"name": "a", "port": 1}) == "custom a 1\n"


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content, honours the mode and reports changes."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "out" / "entry.cfg"
    context = {"name": "a.example", "port": 61001}

    assert engine.render_to_path("haproxy/entry.j2", destination, context, mode=0o600) is True
    assert "127.0.0.1:61001" in destination.read_text(encoding="utf-8")
    assert destination.stat().st_mode & 0o777 == 0o600
    assert engine.render_to_path("haproxy/entry.j2", destination, context) is False
