"""Common dataclasses shared across image backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

from .errors import ValidationError

CLEANUP_POLICIES = ("directory", "file")


class BackupMode(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"


@dataclass(frozen=True, slots=True)
class Period:
    """ISO week and year identifying one retention period."""

    week: int
    year: int

    @classmethod
    def from_datetime(cls, moment: datetime) -> "Period":
        year, week, _ = moment.isocalendar()
        return cls(week=int(week), year=int(year))

    @property
    def week_label(self) -> str:
        return f"{self.week:02d}"

    def relative_dir(self) -> Path:
        return Path(self.week_label) / str(self.year)


@dataclass(slots=True)
class BackupUnit:
    """Single point-in-time image artifact on the destination volume."""

    path: Path
    mtime: float
    size_bytes: int
    period: Optional[Period] = None


@dataclass(slots=True)
class PeriodDirectory:
    path: Path
    mtime: float
    images: List[Path] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SpaceBudget:
    used_bytes: int
    needed_bytes: int


@dataclass(slots=True)
class CleanupSummary:
    policy: str
    deleted: List[str] = field(default_factory=list)
    freed_bytes: int = 0


@dataclass(slots=True)
class SpaceReport:
    available_bytes: int
    needed_bytes: int
    cleanup: Optional[CleanupSummary] = None

    @property
    def cleaned(self) -> bool:
        return bool(self.cleanup and self.cleanup.deleted)


def _check_field(name: str, value: str) -> None:
    if "," in value:
        raise ValidationError(f"{name} must not contain a comma: {value!r}")


def _hint_text(value: Optional[object]) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True, slots=True)
class ImageDescriptor:
    """Initial-mode target for the image tool: path plus optional size hints."""

    path: str
    size_mb: Optional[str] = None
    extra_mb: Optional[str] = None

    def encode(self) -> str:
        path = str(self.path)
        size = _hint_text(self.size_mb)
        extra = _hint_text(self.extra_mb)
        if not path:
            raise ValidationError("Image path is empty")
        _check_field("image path", path)
        _check_field("size hint", size)
        _check_field("extra size hint", extra)
        if extra and not size:
            raise ValidationError("Extra size hint requires an initial size hint")
        parts = [path]
        if size:
            parts.append(size)
            if extra:
                parts.append(extra)
        return ",".join(parts)

    @classmethod
    def decode(cls, text: str) -> "ImageDescriptor":
        path, size, extra = split_descriptor(text)
        return cls(path=path, size_mb=size or None, extra_mb=extra or None)


def split_descriptor(text: str) -> Tuple[str, str, str]:
    """Split ``path[,size[,extra]]`` into three strings, blanks for missing fields."""

    fields = text.split(",", 2)
    fields.extend([""] * (3 - len(fields)))
    return fields[0], fields[1], fields[2]


@dataclass(slots=True)
class BackupPlan:
    mode: BackupMode
    period: Period
    period_dir: Path
    image_path: Path
    snapshot_path: Path


def _optional_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from exc
    if number < 0:
        raise ValidationError(f"{name} must not be negative, got {number}")
    return number


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True, slots=True)
class BackupConfig:
    """Immutable run configuration handed to every component."""

    source_path: Path = Path("/")
    backup_root: Path = Path("/mnt/backup")
    mount_point: Path = Path("/mnt/backup")
    tool_path: Path = Path("/opt/RonR-RPi-image-utils/image-backup")
    tool_interpreter: Optional[str] = None
    device_uuid: Optional[str] = None
    image_name: str = "rpi.img"
    image_suffix: str = ".img"
    initial_weekday: int = 7
    min_retain: Optional[int] = None
    cleanup_policy: str = "directory"
    initial_size_hint: Optional[str] = None
    extra_size_hint: Optional[str] = None
    pass_through_options: Tuple[str, ...] = ()
    require_reflink: bool = True
    snapshot_failure_fatal: bool = True
    unmount_on_exit: bool = True

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "BackupConfig":
        raw = settings.get("backup")
        section: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        defaults = cls()

        policy = str(section.get("cleanup_policy") or defaults.cleanup_policy).strip().lower()
        if policy not in CLEANUP_POLICIES:
            raise ValidationError(f"Unknown cleanup policy {policy!r}; expected one of {', '.join(CLEANUP_POLICIES)}")

        weekday = _optional_int("initial_weekday", section.get("initial_weekday"))
        if weekday is None:
            weekday = defaults.initial_weekday
        if not 1 <= weekday <= 7:
            raise ValidationError(f"initial_weekday must be between 1 and 7, got {weekday}")

        options = section.get("pass_through_options") or []
        if isinstance(options, str):
            options = [item for item in options.split(",") if item.strip()]
        if not isinstance(options, (list, tuple)):
            raise ValidationError("pass_through_options must be a list of strings")

        size_hint = _optional_int("initial_size_hint", section.get("initial_size_hint"))
        extra_hint = _optional_int("extra_size_hint", section.get("extra_size_hint"))
        if extra_hint is not None and size_hint is None:
            raise ValidationError("extra_size_hint requires initial_size_hint")

        image_name = _optional_text(section.get("image_name")) or defaults.image_name
        if "/" in image_name:
            raise ValidationError(f"image_name must be a bare file name, got {image_name!r}")

        return cls(
            source_path=Path(section.get("source_path") or defaults.source_path),
            backup_root=Path(section.get("backup_root") or defaults.backup_root),
            mount_point=Path(section.get("mount_point") or defaults.mount_point),
            tool_path=Path(section.get("tool_path") or defaults.tool_path),
            tool_interpreter=_optional_text(section.get("tool_interpreter")),
            device_uuid=_optional_text(section.get("device_uuid")),
            image_name=image_name,
            image_suffix=_optional_text(section.get("image_suffix")) or defaults.image_suffix,
            initial_weekday=weekday,
            min_retain=_optional_int("min_retain", section.get("min_retain")),
            cleanup_policy=policy,
            initial_size_hint=None if size_hint is None else str(size_hint),
            extra_size_hint=None if extra_hint is None else str(extra_hint),
            pass_through_options=tuple(str(item).strip() for item in options),
            require_reflink=bool(section.get("require_reflink", defaults.require_reflink)),
            snapshot_failure_fatal=bool(section.get("snapshot_failure_fatal", defaults.snapshot_failure_fatal)),
            unmount_on_exit=bool(section.get("unmount_on_exit", defaults.unmount_on_exit)),
        )


@dataclass(slots=True)
class RunContext:
    """Mutable per-run state owned by the orchestrator."""

    mount_acquired: bool = False
    plan: Optional[BackupPlan] = None
    space: Optional[SpaceReport] = None
    snapshot_path: Optional[Path] = None


@dataclass(slots=True)
class RunResult:
    mode: BackupMode
    image_path: Path
    space: SpaceReport
    plan: Optional[BackupPlan] = None
    snapshot_path: Optional[Path] = None


__all__ = [
    "BackupConfig",
    "BackupMode",
    "BackupPlan",
    "BackupUnit",
    "CLEANUP_POLICIES",
    "CleanupSummary",
    "ImageDescriptor",
    "Period",
    "PeriodDirectory",
    "RunContext",
    "RunResult",
    "SpaceBudget",
    "SpaceReport",
    "split_descriptor",
]
