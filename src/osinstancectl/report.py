"""Tree-shaped instance reports.

Status details are assembled as a tree of :class:`ReportNode` objects that
carry no presentation logic. :class:`RichTreeRenderer` turns such a tree into
a :class:`rich.tree.Tree`; other renderers can consume the same data.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from rich.markup import escape
from rich.text import Text
from rich.tree import Tree


@dataclass(slots=True)
class ReportNode:
    """A labelled value with optional children and free-text body lines."""

    label: str
    value: str | None = None
    children: list[ReportNode] = field(default_factory=list)
    body: list[str] = field(default_factory=list)
    style: str | None = None

    def add(self, label: str, value: object | None = None, *, style: str | None = None) -> ReportNode:
        """Append a child node and return it."""
        child = ReportNode(label=label, value=None if value is None else str(value), style=style)
        self.children.append(child)
        return child

    def find(self, label: str) -> ReportNode | None:
        for child in self.children:
            if child.label == label:
                return child
        return None

    def walk(self) -> Iterable[ReportNode]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"label": self.label}
        if self.value is not None:
            data["value"] = self.value
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        if self.body:
            data["body"] = list(self.body)
        return data


class ReportRenderer(Protocol):
    """Anything that can turn a :class:`ReportNode` tree into output."""

    def render(self, node: ReportNode) -> object: ...


class RichTreeRenderer:
    """Render report nodes as a rich :class:`~rich.tree.Tree`."""

    def __init__(self, guide_style: str = "dim") -> None:
        self.guide_style = guide_style

    def render(self, node: ReportNode) -> Tree:
        tree = Tree(self._label(node), guide_style=self.guide_style)
        self._attach(tree, node)
        return tree

    def _attach(self, tree: Tree, node: ReportNode) -> None:
        for child in node.children:
            branch = tree.add(self._label(child))
            self._attach(branch, child)
        for line in node.body:
            tree.add(Text(f"┆ {line}", style="dim"))

    @staticmethod
    def _label(node: ReportNode) -> Text:
        if node.value is None or node.value == "":
            return Text.from_markup(f"[bold]{escape(node.label)}[/bold]")
        label = Text.from_markup(f"[bold]{escape(node.label)}:[/bold] ")
        label.append(node.value, style=node.style or "")
        return label


__all__ = ["ReportNode", "ReportRenderer", "RichTreeRenderer"]
