"""Public API for scheduled and explicit image backups."""
from __future__ import annotations

import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from core.paths import is_within, resolve_working_dir
from core.settings import load_settings

from .errors import BackupError, ScriptMissingError, SnapshotError, ValidationError
from .guard import SpaceGuard
from .invoker import BackupInvoker
from .logs import BackupLogger
from .mount import MountScope
from .probe import SpaceProbe, filesystem_type, is_mount_point, require_reflink_filesystem
from .retention import make_cleaner
from .schedule import ScheduleDecider, reflink_copy, snapshot_name
from .types import BackupConfig, BackupMode, BackupPlan, Period, RunContext, RunResult


def _parse_mode(mode: BackupMode | str | None) -> BackupMode:
    if isinstance(mode, BackupMode):
        return mode
    text = str(mode or "").strip().lstrip("-").lower()
    if not text:
        raise ValidationError("Mode (initial or incremental) required")
    try:
        return BackupMode(text)
    except ValueError as exc:
        raise ValidationError(f"Unknown mode {mode!r}; expected initial or incremental") from exc


class BackupService:
    """Coordinate mount, space safety, snapshots and the image tool for one run."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, object]] = None,
        config: Optional[BackupConfig] = None,
        logger: Optional[BackupLogger] = None,
        probe: Optional[SpaceProbe] = None,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = subprocess.run,
        clock: Callable[[], datetime] = datetime.now,
        copier: Callable[[Path, Path], None] = reflink_copy,
        ismount: Callable[[Path], bool] = is_mount_point,
        fstype: Callable[[Path], str] = filesystem_type,
        sync: Callable[[], None] = os.sync,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        if config is None:
            config = BackupConfig.from_settings(settings if settings is not None else load_settings(self._working_dir))
        self._config = config
        self._logger = logger or BackupLogger(self._working_dir)
        self._probe = probe or SpaceProbe()
        self._runner = runner
        self._clock = clock
        self._ismount = ismount
        self._fstype = fstype

        cleaner = make_cleaner(
            config.cleanup_policy,
            self._probe,
            logger=self._logger,
            suffix=config.image_suffix,
            sync=sync,
        )
        self._guard = SpaceGuard(self._probe, cleaner, logger=self._logger)
        self._invoker = BackupInvoker(
            config.tool_path,
            logger=self._logger,
            options=config.pass_through_options,
            interpreter=config.tool_interpreter,
            runner=runner,
        )
        self._decider = ScheduleDecider(
            config.mount_point,
            logger=self._logger,
            image_name=config.image_name,
            initial_weekday=config.initial_weekday,
            clock=clock,
            copier=copier,
        )

    # ------------------------------------------------------------------
    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    # ------------------------------------------------------------------
    def validate(self, image_path: Optional[Path] = None) -> None:
        """Reject bad configuration before anything is mounted or deleted."""

        config = self._config
        if not is_within(config.mount_point, config.backup_root):
            raise ValidationError(f"Mount point {config.mount_point} must be under {config.backup_root} for safety")
        if image_path is not None and not is_within(image_path, config.mount_point):
            raise ValidationError(f"Image path {image_path} must be under {config.mount_point}")
        if not config.tool_path.is_file():
            raise ScriptMissingError(f"Backup tool not found: {config.tool_path}")
        if not Path(config.source_path).exists():
            raise ValidationError(f"Source path {config.source_path} does not exist")

    def _mount_scope(self) -> MountScope:
        return MountScope(
            self._config.mount_point,
            logger=self._logger,
            device_uuid=self._config.device_uuid,
            unmount_on_exit=self._config.unmount_on_exit,
            runner=self._runner,
            ismount=self._ismount,
        )

    def _check_filesystem(self) -> None:
        if not self._config.require_reflink:
            return
        kind = require_reflink_filesystem(self._config.mount_point, fstype=self._fstype(self._config.mount_point))
        self._logger.info("filesystem_ok", fstype=kind, mount_point=str(self._config.mount_point))

    def _snapshot(self, ctx: RunContext, plan: BackupPlan) -> None:
        try:
            ctx.snapshot_path = self._decider.take_snapshot(plan)
        except SnapshotError as exc:
            if self._config.snapshot_failure_fatal:
                raise
            self._logger.warning("snapshot_failed", error=str(exc), image=str(plan.image_path))

    def _capture(self, ctx: RunContext, plan: BackupPlan) -> RunResult:
        config = self._config
        budget = self._probe.budget(config.source_path)
        self._logger.info(
            "space_budget",
            source=str(config.source_path),
            used_bytes=budget.used_bytes,
            needed_bytes=budget.needed_bytes,
        )
        ctx.space = self._guard.ensure(config.mount_point, budget.needed_bytes, config.min_retain)

        if plan.mode is BackupMode.INCREMENTAL:
            self._snapshot(ctx, plan)
            self._invoker.incremental(plan.image_path)
        else:
            self._invoker.initial(plan.image_path, config.initial_size_hint, config.extra_size_hint)

        return RunResult(
            mode=plan.mode,
            image_path=plan.image_path,
            space=ctx.space,
            plan=plan,
            snapshot_path=ctx.snapshot_path,
        )

    def _execute(self, phase: str, plan_factory: Callable[[], BackupPlan]) -> RunResult:
        ctx = RunContext()
        self._logger.event(event="run_start", phase=phase, ok=True, mount_point=str(self._config.mount_point))
        try:
            with self._mount_scope() as scope:
                ctx.mount_acquired = scope.acquired
                self._check_filesystem()
                plan = plan_factory()
                ctx.plan = plan
                self._logger.info(
                    "plan",
                    mode=plan.mode.value,
                    week=plan.period.week_label,
                    year=plan.period.year,
                    image=str(plan.image_path),
                )
                self._decider.prepare(plan)
                result = self._capture(ctx, plan)
        except BackupError as exc:
            if ctx.space is not None and ctx.space.cleaned:
                self._logger.error(
                    "cleanup_without_backup",
                    deleted=ctx.space.cleanup.deleted,
                    error=str(exc),
                )
            self._logger.event(event="run_failed", phase=phase, ok=False, error=str(exc), kind=type(exc).__name__)
            raise
        self._logger.event(
            event="run_complete",
            phase=phase,
            ok=True,
            mode=result.mode.value,
            image=str(result.image_path),
            snapshot=str(result.snapshot_path) if result.snapshot_path else None,
        )
        return result

    # ------------------------------------------------------------------
    def run_scheduled(self, now: Optional[datetime] = None) -> RunResult:
        """Pick initial or incremental from the calendar and the current week's image."""

        self.validate()
        return self._execute("scheduled", lambda: self._decider.plan(now))

    def run_mode(self, mode: BackupMode | str | None, image_path: Path, now: Optional[datetime] = None) -> RunResult:
        """Run an explicitly requested mode against *image_path*."""

        selected = _parse_mode(mode)
        image = Path(image_path)
        self.validate(image)

        def _plan() -> BackupPlan:
            moment = now or self._clock()
            if selected is BackupMode.INCREMENTAL and not image.is_file():
                raise ValidationError(f"Incremental backup needs an existing image: {image}")
            return BackupPlan(
                mode=selected,
                period=Period.from_datetime(moment),
                period_dir=image.parent,
                image_path=image,
                snapshot_path=image.parent / snapshot_name(image.name, moment),
            )

        return self._execute(selected.value, _plan)


__all__ = ["BackupService"]
