"""State helpers: instance directories and their configuration documents."""
from __future__ import annotations

from .instance_config import InstanceConfig, InstanceConfigError, InstanceConfigStore
from .registry import (
    Instance,
    InstanceNotFoundError,
    InstanceRegistry,
    InstanceRegistryError,
    InvalidInstanceError,
    normalize_name,
    stack_name_for,
)

__all__ = [
    "Instance",
    "InstanceConfig",
    "InstanceConfigError",
    "InstanceConfigStore",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "InstanceRegistryError",
    "InvalidInstanceError",
    "normalize_name",
    "stack_name_for",
]
