"""Single entry point for destination space safety."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from .errors import InsufficientError, NoRetentionPolicyError, StillInsufficientError
from .types import SpaceReport


class SpaceGuard:
    """Make sure the destination can hold the next image, cleaning up if allowed.

    This is the only path through which retention cleanup may run.
    """

    def __init__(self, probe, cleaner, *, logger) -> None:
        self._probe = probe
        self._cleaner = cleaner
        self._logger = logger

    def ensure(self, mount: Path, needed_bytes: int, min_retain: Optional[int]) -> SpaceReport:
        needed = int(needed_bytes)
        available = self._probe.available(mount)
        if available >= needed:
            self._logger.event(event="space_ok", phase="space", ok=True, available_bytes=available, needed_bytes=needed)
            return SpaceReport(available_bytes=available, needed_bytes=needed)

        self._logger.warning("space_low", available_bytes=available, needed_bytes=needed, min_retain=min_retain)
        if min_retain is None:
            self._logger.event(event="space_check", phase="space", ok=False, reason="no_retention_policy")
            raise NoRetentionPolicyError(
                f"Not enough space on {mount}: need {needed} bytes, have {available} bytes. "
                "Set min_retain (e.g. RPIBACKUP_MIN_RETAIN=3) to auto-clean old backups."
            )

        try:
            summary = self._cleaner.clean(Path(mount), min_retain, needed)
        except InsufficientError as exc:
            self._logger.event(event="space_check", phase="cleanup", ok=False, reason="insufficient", error=str(exc))
            raise

        available = self._probe.available(mount)
        report = SpaceReport(available_bytes=available, needed_bytes=needed, cleanup=summary)
        if summary.deleted:
            self._logger.warning(
                "artifacts_removed_for_capture",
                deleted=len(summary.deleted),
                freed_bytes=summary.freed_bytes,
                policy=summary.policy,
            )
        if available < needed:
            self._logger.event(event="space_check", phase="recheck", ok=False, reason="still_insufficient")
            raise StillInsufficientError(
                f"Still not enough space on {mount} after cleanup: need {needed} bytes, have {available} bytes"
            )
        self._logger.event(event="space_ok", phase="recheck", ok=True, available_bytes=available, needed_bytes=needed)
        return report


__all__ = ["SpaceGuard"]
