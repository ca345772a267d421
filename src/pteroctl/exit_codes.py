"""Exit codes returned by the pteroctl command line."""
from __future__ import annotations

from enum import IntEnum

from .errors import BackupError, CommandError, FileAccessError


class ExitCode(IntEnum):
    """Process exit codes shared by every subcommand."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


def exit_code_for(exc: Exception) -> ExitCode:
    """Map a failure to its exit code.

    External tool failures are provider errors, unreadable or unwritable
    files are environment errors, and everything else (bad input, unknown
    backups, declined confirmations) is a validation error.
    """
    if isinstance(exc, (BackupError, CommandError)):
        return ExitCode.PROVIDER
    if isinstance(exc, (FileAccessError, PermissionError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.VALIDATION


__all__ = ["ExitCode", "exit_code_for"]
