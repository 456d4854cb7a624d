"""Tests for report trees and console output."""
from __future__ import annotations

from rich.console import Console
from rich.text import Text

from osinstancectl.console import ConsoleReporter
from osinstancectl.report import ReportNode, RichTreeRenderer


def _sample_tree() -> ReportNode:
    root = ReportNode(label="OK demo.example")
    root.add("Local port", 61001)
    locks = root.add("Lock status", "locked", style="red")
    locks.add("update", "event (alice, alice@example.org on 2024-05-06)")
    metadata = root.add("Metadata")
    metadata.body.extend(["Customer [ACME]", "2024-05-06 12:00: created"])
    return root


def test_report_node_helpers() -> None:
    root = _sample_tree()

    assert root.find("Local port").value == "61001"  # type: ignore[union-attr]
    assert root.find("Nope") is None
    assert [node.label for node in root.walk()] == [
        "OK demo.example",
        "Local port",
        "Lock status",
        "update",
        "Metadata",
    ]
    assert root.to_dict()["children"][2]["body"] == [  # type: ignore[index]
        "Customer [ACME]",
        "2024-05-06 12:00: created",
    ]


def test_rich_renderer_builds_tree() -> None:
    """Labels carry values; body lines become dimmed leaves; markup is escaped."""
    tree = RichTreeRenderer().render(_sample_tree())

    assert isinstance(tree.label, Text)
    assert tree.label.plain == "OK demo.example"
    labels = [child.label.plain for child in tree.children]  # type: ignore[union-attr]
    assert labels == ["Local port: 61001", "Lock status: locked", "Metadata"]
    body = [leaf.label.plain for leaf in tree.children[2].children]  # type: ignore[union-attr]
    assert body == ["┆ Customer [ACME]", "┆ 2024-05-06 12:00: created"]

    console = Console(record=True, width=120)
    console.print(tree)
    assert "update: event (alice" in console.export_text()


def test_console_reporter_labels_messages() -> None:
    out = Console(record=True, width=120)
    err = Console(record=True, width=120)
    reporter = ConsoleReporter(out, err)

    reporter.echo("Done.")
    reporter.info("Creating services")
    reporter.warn("Stale lease file detected.")
    reporter.progress(".")

    assert out.export_text() == "Done.\n."
    errors = err.export_text()
    assert "INFO: Creating services" in errors
    assert "WARN: Stale lease file detected." in errors
    assert reporter.warnings == ["Stale lease file detected."]
