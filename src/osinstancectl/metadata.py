"""Append-only audit trail stored in each instance's ``metadata.txt``.

The first line is treated as a human-written summary and shown in listings;
lines starting with ``#`` are comments. Everything else is free text that is
never parsed.
"""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SUMMARY_WIDTH = 30
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"


def timestamp(now: datetime | None = None) -> str:
    """Return the ``YYYY-MM-DD HH:MM`` prefix used for audit lines."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


class MetadataLog:
    """Read and append lines of an instance's metadata file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def append(self, *lines: str) -> None:
        """Append *lines* verbatim, one per line."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for line in lines:
                handle.write(f"{line}\n")
        LOGGER.debug("metadata %s: %s", self.path, "; ".join(lines))

    def record(self, message: str, *, now: datetime | None = None) -> None:
        """Append *message* prefixed with the current timestamp."""
        self.append(f"{timestamp(now)}: {message}")

    def lines(self, *, include_comments: bool = False) -> list[str]:
        """Return the stored lines, skipping comments unless requested."""
        if not self.path.is_file():
            return []
        content = self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        if include_comments:
            return content
        return [line for line in content if not line.startswith("#")]

    def summary(self, width: int = SUMMARY_WIDTH) -> str | None:
        """Return the first line, truncated to *width* characters plus ``…``."""
        content = self.lines(include_comments=True)
        if not content:
            return None
        first = content[0].replace("\x1b", "")
        if len(first) > width:
            return first[:width] + "…"
        return first


__all__ = ["MetadataLog", "SUMMARY_WIDTH", "timestamp"]
