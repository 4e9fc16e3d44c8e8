"""Error hierarchy for image backup operations."""
from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


class ValidationError(BackupError):
    """Raised for bad arguments or missing required paths."""


class ProbeError(BackupError):
    """Raised when a filesystem cannot be queried for space usage."""


class InsufficientError(BackupError):
    """Raised when retention cleanup cannot reach the space target."""


class SpaceError(BackupError):
    """Base class for space guard failures."""


class NoRetentionPolicyError(SpaceError):
    """Raised when space is short and no retention floor is configured."""


class StillInsufficientError(SpaceError):
    """Raised when space is still short after a successful cleanup."""


class InvokeError(BackupError):
    """Base class for failures of the external image tool."""


class ScriptMissingError(InvokeError):
    """Raised when the image tool does not exist before invocation."""


class NonZeroExitError(InvokeError):
    """Raised when the image tool exits with a nonzero status."""

    def __init__(self, message: str, *, returncode: int, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr or ""


class SnapshotError(BackupError):
    """Raised when the copy-on-write snapshot of the live image fails."""


class MountError(BackupError):
    """Raised when the destination volume cannot be mounted."""


__all__ = [
    "BackupError",
    "InsufficientError",
    "InvokeError",
    "MountError",
    "NoRetentionPolicyError",
    "NonZeroExitError",
    "ProbeError",
    "ScriptMissingError",
    "SnapshotError",
    "SpaceError",
    "StillInsufficientError",
    "ValidationError",
]
