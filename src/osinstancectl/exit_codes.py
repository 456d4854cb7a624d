"""Process exit codes and the mapping from domain errors onto them."""
from __future__ import annotations

from enum import IntEnum

from .autoscale import AutoscaleError, ScaleTableError
from .lease import LeaseError
from .migrations import MigrationDeclined, MigrationError
from .ports import PortAllocationError
from .providers import HaproxyError, HookError, ManagementError, StackError


class ExitCode(IntEnum):
    """Exit codes shared by every command."""

    OK = 0
    # Bad arguments, unknown or invalid instances, locked actions.
    VALIDATION = 2
    # The host is not prepared: leases held, no free port, failed setup checks.
    ENVIRONMENT = 3
    # docker, HAProxy, hooks or the management tool failed.
    PROVIDER = 4
    # The operator declined a migration prompt.
    DECLINED = 5


_PROVIDER_ERRORS = (
    StackError,
    ManagementError,
    HaproxyError,
    HookError,
    MigrationError,
    AutoscaleError,
)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code for a domain error raised by a command."""
    if isinstance(exc, MigrationDeclined):
        return ExitCode.DECLINED
    if isinstance(exc, (LeaseError, PortAllocationError)):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, ScaleTableError):
        return ExitCode.VALIDATION
    if isinstance(exc, _PROVIDER_ERRORS):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


__all__ = ["ExitCode", "exit_code_for"]
