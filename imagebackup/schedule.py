"""Decide between initial and incremental captures for the current period."""
from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .errors import SnapshotError
from .types import BackupMode, BackupPlan, Period

SNAPSHOT_TIMESTAMP = "%Y-%m-%d_%H%M"


def snapshot_name(image_name: str, moment: datetime) -> str:
    image = Path(image_name)
    return f"{image.stem}_{moment.strftime(SNAPSHOT_TIMESTAMP)}{image.suffix or '.img'}"


def reflink_copy(source: Path, dest: Path, *, runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run) -> None:
    """Clone *source* to *dest*, sharing blocks where the filesystem allows it."""

    proc = runner(
        ["cp", "--reflink=auto", "--preserve=timestamps", str(source), str(dest)],
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if proc.returncode != 0:
        raise SnapshotError(f"Snapshot of {source} failed: {(proc.stderr or '').strip() or proc.returncode}")


def _unused_path(path: Path) -> Path:
    """Return *path*, or the first free `<stem>_<n><suffix>` sibling when it is taken."""

    candidate = path
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        counter += 1
    return candidate


class ScheduleDecider:
    """Map the current date and on-disk state to a :class:`BackupPlan`.

    A new full image is taken on the configured ISO weekday (7 = Sunday) or
    whenever the current week has no image yet; otherwise the existing
    image is updated in place. Nothing is stored besides the images.
    """

    def __init__(
        self,
        mount: Path,
        *,
        logger,
        image_name: str = "rpi.img",
        initial_weekday: int = 7,
        clock: Callable[[], datetime] = datetime.now,
        copier: Callable[[Path, Path], None] = reflink_copy,
    ) -> None:
        self._mount = Path(mount)
        self._logger = logger
        self._image_name = image_name
        self._initial_weekday = int(initial_weekday)
        self._clock = clock
        self._copier = copier

    def plan(self, now: Optional[datetime] = None) -> BackupPlan:
        moment = now or self._clock()
        period = Period.from_datetime(moment)
        period_dir = self._mount / period.relative_dir()
        image_path = period_dir / self._image_name
        if moment.isoweekday() == self._initial_weekday or not image_path.is_file():
            mode = BackupMode.INITIAL
        else:
            mode = BackupMode.INCREMENTAL
        return BackupPlan(
            mode=mode,
            period=period,
            period_dir=period_dir,
            image_path=image_path,
            snapshot_path=period_dir / snapshot_name(self._image_name, moment),
        )

    def prepare(self, plan: BackupPlan) -> None:
        plan.period_dir.mkdir(parents=True, exist_ok=True)

    def take_snapshot(self, plan: BackupPlan) -> Optional[Path]:
        if plan.mode is not BackupMode.INCREMENTAL or not plan.image_path.is_file():
            return None
        target = _unused_path(plan.snapshot_path)
        self._logger.info("snapshot_start", source=str(plan.image_path), dest=str(target))
        try:
            self._copier(plan.image_path, target)
        except OSError as exc:
            raise SnapshotError(f"Snapshot of {plan.image_path} failed: {exc}") from exc
        self._logger.event(event="snapshot_created", phase="snapshot", ok=True, path=str(target))
        return target


__all__ = ["ScheduleDecider", "reflink_copy", "snapshot_name"]
