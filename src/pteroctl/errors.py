"""Error taxonomy shared by the env store, backup manager, and providers."""
from __future__ import annotations


class PteroctlError(RuntimeError):
    """Base class for failures surfaced to the operator console."""


class ValidationError(PteroctlError):
    """Raised for malformed operator input (bad keys, multi-line values)."""


class NotFoundError(PteroctlError):
    """Raised when a required file or backup does not exist."""


class FileAccessError(PteroctlError):
    """Raised when reading or writing a managed file fails."""


class BackupError(PteroctlError):
    """Raised when an external tool fails during backup or restore."""


class CommandError(PteroctlError):
    """Raised when an external command (artisan, systemctl, ...) fails."""


class ConfirmationDeclined(PteroctlError):
    """Raised when the operator declines a destructive action.

    This is a normal early exit rather than a failure; the console reports it
    as a cancellation.
    """


__all__ = [
    "BackupError",
    "CommandError",
    "ConfirmationDeclined",
    "FileAccessError",
    "NotFoundError",
    "PteroctlError",
    "ValidationError",
]
