import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path

import pytest

from imagebackup.api import BackupService
from imagebackup.errors import (
    InvokeError,
    MountError,
    NoRetentionPolicyError,
    NonZeroExitError,
    ScriptMissingError,
    SnapshotError,
    ValidationError,
)
from imagebackup.probe import SpaceProbe
from imagebackup.types import BackupConfig, BackupMode, split_descriptor

WEDNESDAY = datetime(2024, 1, 10, 12, 30)


class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def info(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("error", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):  # pragma: no cover - simple recorder
        self.events.append(("event", event, phase, ok, extra))

    def names(self):
        return [entry[1] for entry in self.events]


class VolumeProbe(SpaceProbe):
    """Destination capacity minus stored bytes; a fixed source usage."""

    def __init__(self, mount: Path, *, capacity: int, source_used: int) -> None:
        self._mount = mount
        self._capacity = capacity
        self._source_used = source_used

    def available(self, path) -> int:
        stored = sum(item.stat().st_size for item in Path(self._mount).rglob("*") if item.is_file())
        return self._capacity - stored

    def used(self, path) -> int:
        return self._source_used


class FakeTool:
    """Stands in for the image tool: writes or grows the image file."""

    def __init__(self, journal, *, returncode: int = 0) -> None:
        self.journal = journal
        self.commands = []
        self.returncode = returncode

    def __call__(self, command, **kwargs):
        self.commands.append(list(command))
        self.journal.append("invoke")
        if self.returncode == 0:
            if command[1] == "-i":
                path, _size, _extra = split_descriptor(command[2])
                Path(path).write_bytes(b"\0" * 100)
            else:
                with open(command[1], "ab") as handle:
                    handle.write(b"\0" * 10)
        return subprocess.CompletedProcess(command, self.returncode, "", "" if self.returncode == 0 else "tool failed")


@pytest.fixture()
def volume(tmp_path):
    mount = tmp_path / "mnt" / "backup"
    mount.mkdir(parents=True)
    tool = tmp_path / "image-backup"
    tool.write_text("#!/bin/sh\n", encoding="utf-8")
    return mount, tool


def _service(tmp_path, mount, tool, *, journal, runner=None, copier=None, capacity=10_000, source_used=160, **overrides):
    values = dict(
        source_path=tmp_path,
        backup_root=mount,
        mount_point=mount,
        tool_path=tool,
        min_retain=2,
        require_reflink=False,
    )
    values.update(overrides)
    config = BackupConfig(**values)

    def journal_copier(source, dest):
        journal.append("snapshot")
        shutil.copyfile(source, dest)

    logger = StubLogger()
    service = BackupService(
        working_dir=tmp_path / "work",
        config=config,
        logger=logger,
        probe=VolumeProbe(mount, capacity=capacity, source_used=source_used),
        runner=runner or FakeTool(journal),
        copier=copier or journal_copier,
        sync=lambda: None,
    )
    return service, logger


def test_scheduled_runs_initial_then_snapshots_before_incremental(tmp_path, volume):
    mount, tool = volume
    journal = []
    runner = FakeTool(journal)
    service, logger = _service(tmp_path, mount, tool, journal=journal, runner=runner)

    first = service.run_scheduled(WEDNESDAY)
    assert first.mode is BackupMode.INITIAL
    assert first.snapshot_path is None
    image = mount / "02" / "2024" / "rpi.img"
    assert runner.commands[0] == [str(tool), "-i", str(image)]
    assert image.stat().st_size == 100

    second = service.run_scheduled(datetime(2024, 1, 10, 18, 45))
    assert second.mode is BackupMode.INCREMENTAL
    assert runner.commands[1] == [str(tool), str(image)]
    assert journal == ["invoke", "snapshot", "invoke"]

    snapshots = sorted(p.name for p in image.parent.iterdir() if p != image)
    assert snapshots == ["rpi_2024-01-10_1845.img"]
    assert second.snapshot_path == image.parent / "rpi_2024-01-10_1845.img"
    assert (image.parent / snapshots[0]).stat().st_size == 100
    assert image.stat().st_size == 110
    assert logger.names().count("run_complete") == 2


def test_initial_forwards_size_hints_and_options(tmp_path, volume):
    mount, tool = volume
    journal = []
    runner = FakeTool(journal)
    service, _ = _service(
        tmp_path,
        mount,
        tool,
        journal=journal,
        runner=runner,
        initial_size_hint="8000",
        extra_size_hint="1024",
        pass_through_options=("verbose",),
    )

    service.run_scheduled(WEDNESDAY)

    image = mount / "02" / "2024" / "rpi.img"
    assert runner.commands == [[str(tool), "-i", f"{image},8000,1024", "-o", "verbose"]]


def test_cleanup_runs_before_capture_and_is_logged_when_tool_fails(tmp_path, volume):
    mount, tool = volume
    for index, week in enumerate(("40", "41", "42")):
        period = mount / week / "2023"
        period.mkdir(parents=True)
        (period / "rpi.img").write_bytes(b"\0" * 100)
        os.utime(period, (1000.0 + index, 1000.0 + index))
    journal = []
    service, logger = _service(
        tmp_path,
        mount,
        tool,
        journal=journal,
        runner=FakeTool(journal, returncode=1),
        capacity=400,
        source_used=160,
    )

    with pytest.raises(NonZeroExitError):
        service.run_scheduled(WEDNESDAY)

    assert not (mount / "40" / "2023" / "rpi.img").exists()
    assert (mount / "41" / "2023" / "rpi.img").exists()
    assert "cleanup_without_backup" in logger.names()
    assert "run_failed" in logger.names()


def test_missing_retention_floor_aborts_without_deleting(tmp_path, volume):
    mount, tool = volume
    old = mount / "40" / "2023" / "rpi.img"
    old.parent.mkdir(parents=True)
    old.write_bytes(b"\0" * 100)
    journal = []
    service, _ = _service(tmp_path, mount, tool, journal=journal, capacity=150, min_retain=None)

    with pytest.raises(NoRetentionPolicyError):
        service.run_scheduled(WEDNESDAY)

    assert old.exists()
    assert journal == []


def test_validation_happens_before_any_work(tmp_path, volume):
    mount, tool = volume
    journal = []
    outside, _ = _service(tmp_path, tmp_path / "elsewhere", tool, journal=journal, backup_root=mount)
    with pytest.raises(ValidationError, match="must be under"):
        outside.run_scheduled(WEDNESDAY)

    missing, _ = _service(tmp_path, mount, tmp_path / "nope", journal=journal)
    with pytest.raises(ScriptMissingError):
        missing.run_scheduled(WEDNESDAY)

    service, _ = _service(tmp_path, mount, tool, journal=journal)
    with pytest.raises(ValidationError, match="must be under"):
        service.run_mode("initial", tmp_path / "rpi.img")
    with pytest.raises(ValidationError, match="required"):
        service.run_mode(None, mount / "rpi.img")
    assert journal == []


def test_explicit_incremental_needs_existing_image(tmp_path, volume):
    mount, tool = volume
    journal = []
    service, _ = _service(tmp_path, mount, tool, journal=journal)

    with pytest.raises(ValidationError, match="existing image"):
        service.run_mode("--incremental", mount / "manual" / "rpi.img", now=WEDNESDAY)

    result = service.run_mode("--initial", mount / "manual" / "rpi.img", now=WEDNESDAY)
    assert result.mode is BackupMode.INITIAL
    result = service.run_mode(BackupMode.INCREMENTAL, mount / "manual" / "rpi.img", now=WEDNESDAY)
    assert result.snapshot_path == mount / "manual" / "rpi_2024-01-10_1230.img"
    assert journal == ["invoke", "snapshot", "invoke"]


def test_snapshot_failure_policy(tmp_path, volume):
    mount, tool = volume
    image = mount / "02" / "2024" / "rpi.img"
    image.parent.mkdir(parents=True)
    image.write_bytes(b"\0" * 100)

    def broken_copier(source, dest):
        raise SnapshotError("reflink refused")

    for fatal in (True, False):
        journal = []
        runner = FakeTool(journal)
        service, logger = _service(
            tmp_path,
            mount,
            tool,
            journal=journal,
            runner=runner,
            copier=broken_copier,
            snapshot_failure_fatal=fatal,
        )
        if fatal:
            with pytest.raises(SnapshotError):
                service.run_scheduled(WEDNESDAY)
            assert runner.commands == []
        else:
            result = service.run_scheduled(WEDNESDAY)
            assert result.snapshot_path is None
            assert "snapshot_failed" in logger.names()
            assert runner.commands == [[str(tool), str(image)]]


def test_mount_failure_is_reported(tmp_path, volume):
    mount, tool = volume
    journal = []
    service, logger = _service(tmp_path, mount, tool, journal=journal, device_uuid="not-connected")

    with pytest.raises(MountError):
        service.run_scheduled(WEDNESDAY)
    assert "run_failed" in logger.names()


def test_unexecutable_tool_after_cleanup_is_reported(tmp_path, volume):
    mount, tool = volume
    for index, week in enumerate(("40", "41", "42")):
        period = mount / week / "2023"
        period.mkdir(parents=True)
        (period / "rpi.img").write_bytes(b"\0" * 100)
        os.utime(period, (1000.0 + index, 1000.0 + index))

    def refusing_runner(command, **kwargs):
        raise PermissionError(13, "Permission denied", command[0])

    journal = []
    service, logger = _service(
        tmp_path,
        mount,
        tool,
        journal=journal,
        runner=refusing_runner,
        capacity=400,
        source_used=160,
    )

    with pytest.raises(InvokeError, match="Cannot execute"):
        service.run_scheduled(WEDNESDAY)

    assert not (mount / "40" / "2023" / "rpi.img").exists()
    assert "cleanup_without_backup" in logger.names()
    assert "run_failed" in logger.names()
