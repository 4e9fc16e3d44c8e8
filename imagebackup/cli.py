from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.logging_utils import configure_console_logging, configure_json_logging
from core.paths import resolve_working_dir
from core.settings import load_settings

from .api import BackupService
from .errors import BackupError, ValidationError
from .types import CLEANUP_POLICIES, RunResult

LOGGER = logging.getLogger("rpibackup.cli")


class _ArgumentParser(argparse.ArgumentParser):
    """Argument errors share exit status 1 with every other failure."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="rpi-image-backup",
        description="Weekly full and incremental disk-image backups with space-safe retention",
    )
    parser.add_argument("--working-dir", type=Path, default=None, help="Directory holding settings.json and logs")
    parser.add_argument("--min-retain", type=int, default=None, help="Keep at least N backups when cleaning up")
    parser.add_argument("--policy", choices=CLEANUP_POLICIES, default=None, help="Retention cleanup granularity")
    parser.add_argument("--json", action="store_true", help="Print the run result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Scheduled run: weekly full image, incremental updates otherwise")
    run.add_argument("--now", default=None, help="Override the current time (ISO 8601)")

    capture = sub.add_parser("capture", help="Run an explicit initial or incremental capture")
    mode = capture.add_mutually_exclusive_group(required=True)
    mode.add_argument("--initial", dest="mode", action="store_const", const="initial")
    mode.add_argument("--incremental", dest="mode", action="store_const", const="incremental")
    capture.add_argument("-s", "--source", default=None, help="Filesystem whose usage sizes the image (default: /)")
    capture.add_argument("image_path", type=Path)
    capture.add_argument("size_mb", nargs="?", default=None)
    capture.add_argument("extra_mb", nargs="?", default=None)
    return parser


def _apply_overrides(settings: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    section = settings.setdefault("backup", {})
    if args.min_retain is not None:
        section["min_retain"] = args.min_retain
    if args.policy:
        section["cleanup_policy"] = args.policy
    if args.command == "capture":
        if args.source:
            section["source_path"] = args.source
        if args.size_mb is not None:
            section["initial_size_hint"] = args.size_mb
            section["extra_size_hint"] = args.extra_mb
    return settings


def _result_payload(result: RunResult) -> Dict[str, Any]:
    cleanup = result.space.cleanup
    return {
        "mode": result.mode.value,
        "image": str(result.image_path),
        "snapshot": str(result.snapshot_path) if result.snapshot_path else None,
        "available_bytes": result.space.available_bytes,
        "needed_bytes": result.space.needed_bytes,
        "deleted": list(cleanup.deleted) if cleanup else [],
    }


def _log_level(settings: Dict[str, Any], verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    name = str(settings.get("logging", {}).get("level") or "INFO").upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValidationError(f"Unknown logging level {name!r}")
    return level


def _configure_logging(working_dir: Path, settings: Dict[str, Any], verbose: bool) -> None:
    level = _log_level(settings, verbose)
    if settings.get("logging", {}).get("json_file", True):
        configure_json_logging(working_dir=working_dir, level=level)
    configure_console_logging(level=level)


def cli(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    working_dir = args.working_dir or resolve_working_dir()

    try:
        settings = _apply_overrides(load_settings(working_dir), args)
        _configure_logging(working_dir, settings, args.verbose)
        service = BackupService(working_dir=working_dir, settings=settings)
        if args.command == "run":
            now = datetime.fromisoformat(args.now) if args.now else None
            result = service.run_scheduled(now)
        else:
            result = service.run_mode(args.mode, args.image_path)
    except BackupError as exc:
        LOGGER.error("%s", exc)
        return 1
    except ValueError as exc:
        LOGGER.error("Invalid argument: %s", exc)
        return 1

    payload = _result_payload(result)
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        LOGGER.info("%s backup complete: %s", payload["mode"].capitalize(), payload["image"])
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli())
