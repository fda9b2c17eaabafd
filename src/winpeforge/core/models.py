"""
WinPEForge data models.

Defines the core data structures for workspaces, cached packages, mounted
images and pipeline runs.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any

from winpeforge.core.errors import ValidationError

VERSION_PATTERN = re.compile(r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")
SUPPORTED_MAJOR_VERSIONS = (7,)


def validate_powershell_version(version: str) -> str:
    """Validate a PowerShell runtime version string (e.g. ``7.5.1``)."""
    candidate = (version or "").strip()
    match = VERSION_PATTERN.match(candidate)
    if not match:
        raise ValidationError(
            f"Invalid PowerShell version '{version}': expected MAJOR.MINOR.PATCH",
            context={"version": version},
        )
    if int(match.group("major")) not in SUPPORTED_MAJOR_VERSIONS:
        raise ValidationError(
            f"Unsupported PowerShell version '{version}': only 7.x runtimes can be injected",
            context={"version": version},
        )
    return candidate


def version_key(version: str) -> tuple[int, int, int]:
    """Sort key for MAJOR.MINOR.PATCH strings."""
    match = VERSION_PATTERN.match(version)
    if not match:
        return (0, 0, 0)
    return (int(match.group("major")), int(match.group("minor")), int(match.group("patch")))


class MountState(Enum):
    """Mount state of a Windows image."""

    UNMOUNTED = auto()
    MOUNTED = auto()


class PipelineState(Enum):
    """States of one build pipeline run."""

    INIT = auto()
    PACKAGE_RESOLVED = auto()
    MOUNTED = auto()
    INJECTED_OPTIMIZED = auto()
    DISMOUNTED = auto()
    ASSEMBLED = auto()
    CLEANED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class WorkspaceInstance:
    """Per-run directories under a shared temp root."""

    instance_id: uuid.UUID
    temp_root: Path
    mount_path: Path
    runtime_staging_path: Path
    media_path: Path

    @property
    def directories(self) -> tuple[Path, ...]:
        return (self.mount_path, self.runtime_staging_path, self.media_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": str(self.instance_id),
            "temp_root": str(self.temp_root),
            "mount_path": str(self.mount_path),
            "runtime_staging_path": str(self.runtime_staging_path),
            "media_path": str(self.media_path),
        }


@dataclass(frozen=True)
class CachedPackage:
    """A verified PowerShell runtime archive in the package cache."""

    version: str
    archive_path: Path
    sha256: str
    lock_path: Path

    @property
    def size_bytes(self) -> int:
        return self.archive_path.stat().st_size if self.archive_path.exists() else 0


@dataclass
class MountedImage:
    """A WIM image and the directory it is mounted to."""

    image_path: Path
    mount_path: Path
    index: int = 1
    state: MountState = MountState.UNMOUNTED
    mounted_at: datetime | None = None

    @property
    def is_mounted(self) -> bool:
        return self.state == MountState.MOUNTED


@dataclass
class BuildRequest:
    """Inputs of one pipeline run."""

    wim_path: Path
    output_path: Path
    powershell_version: str
    temp_root: Path | None = None
    instance_id: uuid.UUID | None = None
    image_index: int = 1
    label: str | None = None
    skip_cleanup: bool = False


@dataclass
class BuildResult:
    """Outcome of one pipeline run."""

    success: bool
    state: PipelineState
    iso_path: Path | None = None
    iso_size_bytes: int = 0
    workspace: WorkspaceInstance | None = None
    job_results: list[Any] = field(default_factory=list)
    error: str | None = None
    error_category: str | None = None
    report_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def raise_for_error(self) -> None:
        """Re-raise the error that failed the run, if any."""
        if self.exception is not None:
            raise self.exception

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.name,
            "iso_path": str(self.iso_path) if self.iso_path else None,
            "iso_size_bytes": self.iso_size_bytes,
            "workspace": self.workspace.to_dict() if self.workspace else None,
            "job_results": [r.to_dict() for r in self.job_results],
            "error": self.error,
            "error_category": self.error_category,
            "report_path": str(self.report_path) if self.report_path else None,
            "duration_seconds": self.duration_seconds,
        }
