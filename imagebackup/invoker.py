"""Argument assembly and execution for the external image tool."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import InvokeError, NonZeroExitError, ScriptMissingError, ValidationError
from .types import ImageDescriptor

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def _options_arg(options: Sequence[str]) -> List[str]:
    cleaned = [str(item) for item in options if str(item)]
    if not cleaned:
        return []
    for item in cleaned:
        if "," in item:
            raise ValidationError(f"Pass-through option must not contain a comma: {item!r}")
    return ["-o", ",".join(cleaned)]


def build_initial_args(descriptor: ImageDescriptor, options: Sequence[str] = ()) -> List[str]:
    return ["-i", descriptor.encode(), *_options_arg(options)]


def build_incremental_args(image_path: Path | str, options: Sequence[str] = ()) -> List[str]:
    path = str(image_path)
    if not path:
        raise ValidationError("Image path is empty")
    return [path, *_options_arg(options)]


class BackupInvoker:
    """Run the image tool in initial or incremental mode."""

    def __init__(
        self,
        tool_path: Path,
        *,
        logger,
        options: Sequence[str] = (),
        interpreter: Optional[str] = None,
        runner: Runner = subprocess.run,
    ) -> None:
        self._tool_path = Path(tool_path)
        self._logger = logger
        self._options = tuple(options)
        self._interpreter = interpreter
        self._runner = runner

    @property
    def tool_path(self) -> Path:
        return self._tool_path

    def _command(self, args: Sequence[str]) -> List[str]:
        command = [str(self._tool_path), *args]
        if self._interpreter:
            command.insert(0, self._interpreter)
        return command

    def _run(self, mode: str, args: Sequence[str]) -> None:
        if not self._tool_path.is_file():
            self._logger.event(event="invoke", phase=mode, ok=False, reason="script_missing", tool=str(self._tool_path))
            raise ScriptMissingError(f"Backup tool not found: {self._tool_path}")
        command = self._command(args)
        self._logger.info("invoke", phase=mode, command=command)
        try:
            proc = self._runner(
                command,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            self._logger.event(event="invoke", phase=mode, ok=False, reason="not_executable", error=str(exc))
            raise InvokeError(f"Cannot execute {command[0]}: {exc}") from exc
        stdout = (proc.stdout or "").strip()
        stderr = (proc.stderr or "").strip()
        if stdout:
            self._logger.info("invoke_output", phase=mode, stdout=stdout)
        if proc.returncode != 0:
            self._logger.event(
                event="invoke",
                phase=mode,
                ok=False,
                returncode=proc.returncode,
                stderr=stderr,
            )
            raise NonZeroExitError(
                f"Backup tool exited with status {proc.returncode}: {stderr or stdout or 'no output'}",
                returncode=proc.returncode,
                stderr=proc.stderr,
            )
        self._logger.event(event="invoke", phase=mode, ok=True, returncode=0)

    def initial(
        self,
        image_path: Path | str,
        size_hint: Optional[str] = None,
        extra_hint: Optional[str] = None,
    ) -> None:
        descriptor = ImageDescriptor(path=str(image_path), size_mb=size_hint, extra_mb=extra_hint)
        self._run("initial", build_initial_args(descriptor, self._options))

    def incremental(self, image_path: Path | str) -> None:
        self._run("incremental", build_incremental_args(image_path, self._options))


__all__ = ["BackupInvoker", "build_incremental_args", "build_initial_args"]
