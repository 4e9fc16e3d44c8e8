from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

__all__ = [
    "get_default_settings_paths",
    "get_logs_dir",
    "is_within",
    "resolve_working_dir",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SYSTEM_DIR = Path("/var/lib/rpi-image-backup")
_ENV_HOME = "RPIBACKUP_HOME"


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover - defensive cleanup
            pass
        return False


def _prepare_working_dir(candidate: Path) -> Optional[Path]:
    if not _ensure_writable_dir(candidate):
        return None
    get_logs_dir(candidate).mkdir(parents=True, exist_ok=True)
    return candidate


def resolve_working_dir() -> Path:
    """Resolve the directory holding settings and logs, creating it if required."""

    env_home = os.environ.get(_ENV_HOME)
    if env_home:
        prepared = _prepare_working_dir(_expand_path(env_home))
        if prepared is not None:
            return prepared

    prepared = _prepare_working_dir(_SYSTEM_DIR)
    if prepared is not None:
        return prepared

    fallback = Path.home() / ".rpi-image-backup"
    fallback.mkdir(parents=True, exist_ok=True)
    get_logs_dir(fallback).mkdir(parents=True, exist_ok=True)
    return fallback


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def is_within(path: Path, root: Path) -> bool:
    """Return True if *path* equals *root* or lies below it, after normalisation."""

    candidate = Path(os.path.normpath(os.path.abspath(path)))
    base = Path(os.path.normpath(os.path.abspath(root)))
    return candidate == base or base in candidate.parents


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    return [working_dir / "settings.json", _PROJECT_ROOT / "settings.json"]
