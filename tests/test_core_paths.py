import json
import logging
from pathlib import Path

from core import paths as core_paths
from core.logging_utils import JsonLogFormatter
from imagebackup.logs import BackupLogger


def test_is_within_normalises_paths(tmp_path):
    root = tmp_path / "mnt" / "backup"
    assert core_paths.is_within(root, root)
    assert core_paths.is_within(root / "02" / "2024" / "rpi.img", root)
    assert not core_paths.is_within(root / ".." / "elsewhere", root)
    assert not core_paths.is_within(tmp_path / "mnt" / "backup-other", root)


def test_resolve_working_dir_honours_env(tmp_path, monkeypatch):
    target = tmp_path / "state"
    monkeypatch.setenv("RPIBACKUP_HOME", str(target))

    resolved = core_paths.resolve_working_dir()

    assert resolved == target.resolve()
    assert core_paths.get_logs_dir(resolved).is_dir()


def test_backup_logger_writes_jsonl(tmp_path):
    logger = BackupLogger(tmp_path)

    logger.event(event="run_start", phase="scheduled", ok=True, mount_point="/mnt/backup")
    logger.warning("backup_removed", path=Path("/mnt/backup/01/2024/rpi.img"), size_bytes=10)

    lines = logger.log_path.read_text(encoding="utf-8").splitlines()
    first, second = (json.loads(line) for line in lines)
    assert first["event"] == "run_start" and first["ok"] is True
    assert second["path"] == "/mnt/backup/01/2024/rpi.img"
    assert second["ok"] is False


def test_json_formatter_keeps_extra_fields():
    record = logging.LogRecord("rpibackup", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    record.image = "/mnt/backup/rpi.img"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["image"] == "/mnt/backup/rpi.img"
    assert "lineno" not in payload
