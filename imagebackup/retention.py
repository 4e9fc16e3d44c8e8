"""Retention cleanup that frees destination space by deleting the oldest backups."""
from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Callable, List, Optional

from .errors import BackupError, InsufficientError, ValidationError
from .types import BackupUnit, CleanupSummary, Period, PeriodDirectory


def _check_floor(min_retain: Optional[int]) -> int:
    if min_retain is None:
        raise ValidationError("Retention cleanup requires min_retain; cleanup is disabled without it")
    if isinstance(min_retain, bool) or int(min_retain) < 0:
        raise ValidationError(f"min_retain must be a non-negative integer, got {min_retain!r}")
    return int(min_retain)


def _period_for(path: Path, mount: Path) -> Optional[Period]:
    try:
        parts = path.relative_to(mount).parts
    except ValueError:
        return None
    if len(parts) < 3:
        return None
    try:
        return Period(week=int(parts[0]), year=int(parts[1]))
    except ValueError:
        return None


def list_period_directories(mount: Path, suffix: str = ".img") -> List[PeriodDirectory]:
    """Return ``<mount>/<week>/<year>`` directories holding images, oldest first."""

    mount = Path(mount)
    found: List[PeriodDirectory] = []
    if not mount.is_dir():
        return found
    for first in mount.iterdir():
        if first.is_symlink() or not first.is_dir():
            continue
        for second in first.iterdir():
            if second.is_symlink() or not second.is_dir():
                continue
            images = sorted(
                child
                for child in second.iterdir()
                if child.name.endswith(suffix) and child.is_file() and not child.is_symlink()
            )
            if not images:
                continue
            found.append(PeriodDirectory(path=second, mtime=second.stat().st_mtime, images=images))
    found.sort(key=lambda item: (item.mtime, str(item.path)))
    return found


def list_backup_units(mount: Path) -> List[BackupUnit]:
    """Return every regular file below *mount*, oldest first (ties by path)."""

    mount = Path(mount)
    units: List[BackupUnit] = []
    for root, _dirs, files in os.walk(mount):
        for name in files:
            path = Path(root) / name
            try:
                info = os.lstat(path)
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(info.st_mode):
                continue
            units.append(
                BackupUnit(
                    path=path,
                    mtime=info.st_mtime,
                    size_bytes=int(info.st_size),
                    period=_period_for(path, mount),
                )
            )
    units.sort(key=lambda unit: (unit.mtime, str(unit.path)))
    return units


class _BaseCleaner:
    policy = "base"

    def __init__(self, probe, *, logger, suffix: str = ".img", sync: Callable[[], None] = os.sync) -> None:
        self._probe = probe
        self._logger = logger
        self._suffix = suffix
        self._sync = sync

    def _delete(self, path: Path, size: int, summary: CleanupSummary) -> None:
        # audit entry must land before the data is gone
        self._logger.warning("backup_removed", path=str(path), size_bytes=int(size), reason="retention", policy=self.policy)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to delete {path}: {exc}") from exc
        summary.deleted.append(str(path))
        summary.freed_bytes += int(size)

    def clean(self, mount: Path, min_retain: Optional[int], needed_bytes: int) -> CleanupSummary:
        raise NotImplementedError


class DirectoryRetentionCleaner(_BaseCleaner):
    """Delete whole periods, oldest first, until enough space is available.

    Space is re-probed after every period because freed blocks may differ
    from file sizes on copy-on-write filesystems. Deletions already made
    stay in place when the floor is hit.
    """

    policy = "directory"

    def clean(self, mount: Path, min_retain: Optional[int], needed_bytes: int) -> CleanupSummary:
        floor = _check_floor(min_retain)
        mount = Path(mount)
        summary = CleanupSummary(policy=self.policy)
        while True:
            available = self._probe.available(mount)
            if available >= needed_bytes:
                self._logger.info(
                    "cleanup_complete",
                    available_bytes=available,
                    needed_bytes=int(needed_bytes),
                    deleted=len(summary.deleted),
                )
                return summary

            directories = list_period_directories(mount, self._suffix)
            total = len(directories)
            if total == 0:
                raise InsufficientError(f"Nothing to delete under {mount}: no backup images found")
            if total <= floor:
                raise InsufficientError(
                    f"Cannot free enough space: only {total} period directories, min_retain={floor} "
                    f"(need {needed_bytes} bytes, have {available} bytes)"
                )

            oldest = directories[0]
            self._logger.warning(
                "cleanup_period",
                path=str(oldest.path),
                images=len(oldest.images),
                available_bytes=available,
                needed_bytes=int(needed_bytes),
            )
            for image in oldest.images:
                try:
                    size = image.stat().st_size
                except FileNotFoundError:
                    continue
                self._delete(image, size, summary)
            try:
                oldest.path.rmdir()
            except OSError:
                pass
            self._sync()


class FileRetentionCleaner(_BaseCleaner):
    """Delete the minimal oldest-first set of files covering the deficit.

    Nothing is deleted unless the whole deficit can be covered without
    leaving fewer than ``min_retain`` files.
    """

    policy = "file"

    def plan(self, mount: Path, min_retain: int, deficit: int) -> List[BackupUnit]:
        units = list_backup_units(mount)
        total = len(units)
        if total == 0:
            raise InsufficientError(f"Nothing to delete under {mount}: no files found")
        max_deletable = total - min_retain
        if max_deletable <= 0:
            raise InsufficientError(f"Cannot delete any files: min_retain ({min_retain}) >= total files ({total})")

        selected: List[BackupUnit] = []
        freed = 0
        for unit in units[:max_deletable]:
            if freed >= deficit:
                break
            selected.append(unit)
            freed += unit.size_bytes
        if freed < deficit:
            raise InsufficientError(
                f"Cannot free enough space: need {deficit} bytes, can only free {freed} bytes (min_retain={min_retain})"
            )
        return selected

    def clean(self, mount: Path, min_retain: Optional[int], needed_bytes: int) -> CleanupSummary:
        floor = _check_floor(min_retain)
        mount = Path(mount)
        summary = CleanupSummary(policy=self.policy)
        available = self._probe.available(mount)
        if available >= needed_bytes:
            return summary

        selected = self.plan(mount, floor, int(needed_bytes) - available)
        self._logger.warning(
            "cleanup_plan",
            files=len(selected),
            bytes=sum(unit.size_bytes for unit in selected),
            available_bytes=available,
            needed_bytes=int(needed_bytes),
        )
        for unit in selected:
            self._delete(unit.path, unit.size_bytes, summary)
        self._sync()
        self._logger.info("cleanup_complete", deleted=len(summary.deleted), freed_bytes=summary.freed_bytes)
        return summary


def make_cleaner(policy: str, probe, *, logger, suffix: str = ".img", sync: Callable[[], None] = os.sync):
    if policy == DirectoryRetentionCleaner.policy:
        return DirectoryRetentionCleaner(probe, logger=logger, suffix=suffix, sync=sync)
    if policy == FileRetentionCleaner.policy:
        return FileRetentionCleaner(probe, logger=logger, suffix=suffix, sync=sync)
    raise ValidationError(f"Unknown cleanup policy {policy!r}")


__all__ = [
    "DirectoryRetentionCleaner",
    "FileRetentionCleaner",
    "list_backup_units",
    "list_period_directories",
    "make_cleaner",
]
