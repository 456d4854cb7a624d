"""Provider interfaces for osinstancectl."""
from __future__ import annotations

from .haproxy import HaproxyError, HaproxyProvider, HaproxyResult
from .hooks import HookError, HookResult, HookRunner
from .manage import (
    ManagementAccessError,
    ManagementError,
    ManagementTool,
    ManagementToolResolver,
)
from .probes import HttpProbe
from .stack import ServiceReplicas, StackError, StackProvider

__all__ = [
    "HaproxyError",
    "HaproxyProvider",
    "HaproxyResult",
    "HookError",
    "HookResult",
    "HookRunner",
    "HttpProbe",
    "ManagementAccessError",
    "ManagementError",
    "ManagementTool",
    "ManagementToolResolver",
    "ServiceReplicas",
    "StackError",
    "StackProvider",
]
