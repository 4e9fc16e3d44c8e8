"""Scoped mount/unmount of the destination volume."""
from __future__ import annotations

import contextlib
import os
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from .errors import MountError
from .probe import is_mount_point

DEVICE_BY_UUID = Path("/dev/disk/by-uuid")


def prune_empty_dirs(root: Path) -> List[Path]:
    """Remove empty directories below *root*, deepest first. *root* itself stays."""

    removed: List[Path] = []
    root = Path(root)
    if not root.is_dir():
        return removed
    for current, dirs, files in os.walk(root, topdown=False):
        path = Path(current)
        if path == root or files:
            continue
        try:
            path.rmdir()
        except OSError:
            continue
        removed.append(path)
    return removed


class MountScope(contextlib.AbstractContextManager):
    """Mount the backup device on enter and always release it on exit.

    Without a device UUID the mount point is managed elsewhere and only
    empty period directories are pruned on exit.
    """

    def __init__(
        self,
        mount_point: Path,
        *,
        logger,
        device_uuid: Optional[str] = None,
        unmount_on_exit: bool = True,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        ismount: Callable[[Path], bool] = is_mount_point,
        device_dir: Path = DEVICE_BY_UUID,
    ) -> None:
        self._mount_point = Path(mount_point)
        self._logger = logger
        self._device_uuid = device_uuid
        self._unmount_on_exit = unmount_on_exit
        self._runner = runner
        self._ismount = ismount
        self._device_dir = Path(device_dir)
        self.acquired = False

    @property
    def device(self) -> Optional[Path]:
        if not self._device_uuid:
            return None
        return self._device_dir / self._device_uuid

    def _run(self, command: List[str]):
        try:
            return self._runner(command, check=False, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            # Missing mount binaries surface through the normal returncode checks.
            return subprocess.CompletedProcess(command, 127, "", str(exc))

    def __enter__(self) -> "MountScope":
        device = self.device
        if device is None:
            if not self._mount_point.is_dir():
                raise MountError(f"Mount point {self._mount_point} does not exist")
            return self
        if not device.exists():
            raise MountError(f"Backup device not connected (UUID={self._device_uuid})")
        if not self._mount_point.is_dir():
            raise MountError(f"Mount point {self._mount_point} does not exist")
        if not self._ismount(self._mount_point):
            self._logger.info("mount", device=str(device), mount_point=str(self._mount_point))
            proc = self._run(["mount", str(device), str(self._mount_point)])
            if proc.returncode != 0:
                raise MountError(f"Failed to mount {device} on {self._mount_point}: {(proc.stderr or '').strip()}")
        self.acquired = True
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        removed = prune_empty_dirs(self._mount_point)
        if removed:
            self._logger.info("prune_empty_dirs", count=len(removed))
        if self.acquired and self._unmount_on_exit and self._ismount(self._mount_point):
            self._logger.info("unmount", mount_point=str(self._mount_point))
            proc = self._run(["umount", str(self._mount_point)])
            if proc.returncode != 0:
                self._logger.warning(
                    "unmount_failed",
                    mount_point=str(self._mount_point),
                    stderr=(proc.stderr or "").strip(),
                )
        self.acquired = False
        return False


__all__ = ["MountScope", "prune_empty_dirs"]
