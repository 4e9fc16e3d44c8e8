from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .settings_schema import SETTINGS_VALIDATOR

from .paths import get_default_settings_paths, get_logs_dir

__all__ = [
    "DEFAULT_SETTINGS",
    "ENV_PREFIX",
    "SETTINGS_VERSION",
    "apply_env_overrides",
    "load_settings",
    "merge_defaults",
    "save_settings",
]

SETTINGS_VERSION = 1
ENV_PREFIX = "RPIBACKUP_"

# Unprefixed variables honoured for compatibility with the shell wrappers.
_LEGACY_ENV = {"MIN_RETAIN": "min_retain"}

_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup": {
        "source_path": "/",
        "backup_root": "/mnt/backup",
        "mount_point": "/mnt/backup",
        "device_uuid": None,
        "tool_path": "/opt/RonR-RPi-image-utils/image-backup",
        "tool_interpreter": None,
        "image_name": "rpi.img",
        "image_suffix": ".img",
        "initial_weekday": 7,
        "min_retain": None,
        "cleanup_policy": "directory",
        "initial_size_hint": None,
        "extra_size_hint": None,
        "pass_through_options": [],
        "require_reflink": True,
        "snapshot_failure_fatal": True,
        "unmount_on_exit": True,
    },
    "logging": {
        "level": "INFO",
        "json_file": True,
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def _coerce_env(default: Any, raw: str) -> Any:
    text = raw.strip()
    if isinstance(default, bool):
        lowered = text.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        return default
    if isinstance(default, list):
        return [item.strip() for item in text.split(",") if item.strip()]
    if text == "":
        return None
    return text


def apply_env_overrides(settings: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Overlay ``RPIBACKUP_<KEY>`` variables onto the ``backup`` section."""

    env = os.environ if environ is None else environ
    section = settings.setdefault("backup", {})
    defaults = DEFAULT_SETTINGS["backup"]
    for legacy, key in _LEGACY_ENV.items():
        if legacy in env:
            section[key] = _coerce_env(defaults[key], env[legacy])
    for key, default in defaults.items():
        name = f"{ENV_PREFIX}{key.upper()}"
        if name in env:
            section[key] = _coerce_env(default, env[name])
    return settings


def _apply_migrations(settings: Dict[str, Any], working_dir: Path) -> Dict[str, Any]:
    version = settings.get("version")
    try:
        version_int = int(version)
    except (TypeError, ValueError):
        version_int = 0
    if version_int < SETTINGS_VERSION:
        settings["version"] = SETTINGS_VERSION
    return settings


def _log_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    logs_dir = get_logs_dir(working_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def load_settings(working_dir: Path, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    merged = merge_defaults(data)
    merged = _apply_migrations(merged, working_dir)
    merged = apply_env_overrides(merged, environ)
    merged.setdefault("working_dir", str(working_dir))
    _log_unknown_keys(merged, working_dir)
    return merged


def save_settings(settings: Dict[str, Any], working_dir: Path) -> None:
    merged = merge_defaults(dict(settings))
    merged = _apply_migrations(merged, working_dir)
    merged.setdefault("working_dir", str(working_dir))
    path = working_dir / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(merged, handle, ensure_ascii=False, indent=2)
