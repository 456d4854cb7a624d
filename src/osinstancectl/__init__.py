"""Manage OpenSlides instances running as container stacks on one host."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in sync with ``version`` in pyproject.toml.
__version__ = "4.1.0"
