"""Filesystem space and type queries."""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

import psutil

from .errors import ProbeError, ValidationError
from .types import SpaceBudget

REFLINK_FILESYSTEMS = frozenset({"xfs", "btrfs"})


def needed_bytes(used: int) -> int:
    """Return the space an image of *used* bytes needs, with 1/16 slack.

    The slack is rounded up so any nonzero usage asks for at least one
    extra byte.
    """

    used = int(used)
    return used + -(-used // 16)


class SpaceProbe:
    """Report raw byte counts for the filesystem holding a path.

    Values follow ``df --block-size=1``: available space is what an
    unprivileged writer may use and used space excludes reserved blocks.
    """

    def _usage(self, path: os.PathLike[str] | str):
        try:
            return shutil.disk_usage(path)
        except OSError as exc:
            raise ProbeError(f"Cannot query filesystem for {path}: {exc}") from exc

    def available(self, path: os.PathLike[str] | str) -> int:
        return int(self._usage(path).free)

    def used(self, path: os.PathLike[str] | str) -> int:
        return int(self._usage(path).used)

    def budget(self, source: os.PathLike[str] | str) -> SpaceBudget:
        used = self.used(source)
        return SpaceBudget(used_bytes=used, needed_bytes=needed_bytes(used))


def _find_partition(path: Path):
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError as exc:
        raise ProbeError(f"Cannot list mounted filesystems: {exc}") from exc
    resolved = path.resolve()
    best = None
    for part in partitions:
        mountpoint = Path(part.mountpoint)
        if resolved == mountpoint or mountpoint in resolved.parents:
            if best is None or len(str(mountpoint)) > len(best.mountpoint):
                best = part
    return best


def filesystem_type(path: os.PathLike[str] | str) -> str:
    """Return the filesystem type (``xfs``, ``ext4`` ...) holding *path*."""

    target = Path(path)
    if not target.exists():
        raise ProbeError(f"Cannot determine filesystem type of missing path {target}")
    part = _find_partition(target)
    if part is None or not part.fstype:
        raise ProbeError(f"Cannot determine filesystem type of {target}")
    return part.fstype


def is_mount_point(path: os.PathLike[str] | str) -> bool:
    target = Path(path)
    if not target.is_dir():
        return False
    return os.path.ismount(target)


def require_reflink_filesystem(path: os.PathLike[str] | str, *, fstype: Optional[str] = None) -> str:
    """Ensure *path* lives on a reflink capable filesystem and return its type."""

    kind = fstype or filesystem_type(path)
    if kind not in REFLINK_FILESYSTEMS:
        raise ValidationError(
            f"Filesystem {kind!r} under {path} does not support reflinks; reformat the backup drive as XFS or Btrfs"
        )
    return kind


__all__ = [
    "REFLINK_FILESYSTEMS",
    "SpaceProbe",
    "filesystem_type",
    "is_mount_point",
    "needed_bytes",
    "require_reflink_filesystem",
]
