import json
import logging

import pytest

from imagebackup import cli as cli_mod
from imagebackup.errors import ValidationError


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ("MIN_RETAIN", "RPIBACKUP_MIN_RETAIN", "RPIBACKUP_HOME"):
        monkeypatch.delenv(name, raising=False)


def _write_settings(working_dir, **backup):
    working_dir.mkdir(parents=True, exist_ok=True)
    (working_dir / "settings.json").write_text(json.dumps({"backup": backup}), encoding="utf-8")


def test_capture_requires_a_mode(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli_mod.cli(["--working-dir", str(tmp_path), "capture", "/mnt/backup/rpi.img"])
    assert excinfo.value.code == 1


def test_mount_outside_backup_root_exits_with_one(tmp_path):
    work = tmp_path / "work"
    tool = tmp_path / "image-backup"
    tool.write_text("#!/bin/sh\n", encoding="utf-8")
    _write_settings(work, mount_point=str(tmp_path / "elsewhere"), backup_root=str(tmp_path / "mnt"), tool_path=str(tool))

    assert cli_mod.cli(["--working-dir", str(work), "run"]) == 1


def test_missing_tool_exits_with_one(tmp_path):
    work = tmp_path / "work"
    mount = tmp_path / "mnt"
    mount.mkdir()
    _write_settings(work, mount_point=str(mount), backup_root=str(mount), tool_path=str(tmp_path / "missing"))

    assert cli_mod.cli(["--working-dir", str(work), "capture", "--initial", str(mount / "rpi.img")]) == 1


def test_invalid_setting_exits_with_one(tmp_path):
    work = tmp_path / "work"
    _write_settings(work, cleanup_policy="hourly")

    assert cli_mod.cli(["--working-dir", str(work), "run", "--now", "2024-01-10T12:30"]) == 1


def test_overrides_reach_the_backup_section(tmp_path):
    parser = cli_mod._build_parser()
    args = parser.parse_args(
        ["--min-retain", "3", "--policy", "file", "capture", "--initial", "-s", "/data", "/mnt/backup/rpi.img", "8000", "1024"]
    )

    settings = cli_mod._apply_overrides({"backup": {}}, args)

    assert settings["backup"] == {
        "min_retain": 3,
        "cleanup_policy": "file",
        "source_path": "/data",
        "initial_size_hint": "8000",
        "extra_size_hint": "1024",
    }
    assert args.mode == "initial"


def test_logging_section_controls_level_and_json_file(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    payload = {"backup": {"tool_path": str(tmp_path / "missing")}, "logging": {"level": "warning", "json_file": False}}
    (work / "settings.json").write_text(json.dumps(payload), encoding="utf-8")

    assert cli_mod.cli(["--working-dir", str(work), "run"]) == 1

    assert logging.getLogger("rpibackup").level == logging.WARNING
    assert not (work / "logs" / "rpibackup.log.jsonl").exists()


def test_unknown_logging_level_is_rejected():
    with pytest.raises(ValidationError, match="logging level"):
        cli_mod._log_level({"logging": {"level": "chatty"}}, verbose=False)
    assert cli_mod._log_level({"logging": {"level": "chatty"}}, verbose=True) == logging.DEBUG
