"""Rolling disk-image backups with space-safe retention cleanup."""
from __future__ import annotations

from .api import BackupService
from .errors import BackupError
from .guard import SpaceGuard
from .invoker import BackupInvoker
from .probe import SpaceProbe
from .retention import DirectoryRetentionCleaner, FileRetentionCleaner
from .schedule import ScheduleDecider
from .types import BackupConfig, BackupMode, RunResult

__all__ = [
    "BackupConfig",
    "BackupError",
    "BackupInvoker",
    "BackupMode",
    "BackupService",
    "DirectoryRetentionCleaner",
    "FileRetentionCleaner",
    "RunResult",
    "ScheduleDecider",
    "SpaceGuard",
    "SpaceProbe",
]
