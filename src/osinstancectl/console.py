"""User-facing output for long-running operations.

Operations report progress through a :class:`Reporter` so that they stay
independent of the terminal. The CLI uses :class:`ConsoleReporter` (rich);
tests substitute a recording implementation.
"""
from __future__ import annotations

from typing import Protocol

from rich.console import Console
from rich.markup import escape


class Reporter(Protocol):
    """Sink for operator-facing messages."""

    def echo(self, message: str) -> None: ...

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def progress(self, text: str) -> None: ...


class ConsoleReporter:
    """Print messages with ``INFO``/``WARN`` labels using rich consoles."""

    def __init__(self, console: Console | None = None, err_console: Console | None = None) -> None:
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)
        self.warnings: list[str] = []

    def echo(self, message: str) -> None:
        self.console.print(message, markup=False, highlight=False)

    def info(self, message: str) -> None:
        self.err_console.print(f"[bold cyan]INFO:[/bold cyan] {escape(message)}", highlight=False)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.err_console.print(f"[bold yellow]WARN:[/bold yellow] {escape(message)}", highlight=False)

    def progress(self, text: str) -> None:
        self.console.print(text, end="", markup=False, highlight=False)


class NullReporter:
    """Discard every message (used for read-only helpers)."""

    def __init__(self) -> None:
        self.warnings: list[str] = []

    def echo(self, message: str) -> None:
        return None

    def info(self, message: str) -> None:
        return None

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def progress(self, text: str) -> None:
        return None


__all__ = ["ConsoleReporter", "NullReporter", "Reporter"]
