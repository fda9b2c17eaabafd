"""
WinPEForge preflight checks.

Runs the checks that must pass before an image is mounted: administrator
rights, a readable source image, a supported runtime version, enough free
space for the working copies, and a free mount directory.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import humanize
import psutil

from winpeforge.core.errors import (
    AdminPrivilegeError,
    FileSystemError,
    MountPreconditionError,
    ValidationError,
    WinPEForgeError,
)
from winpeforge.core.logging import get_logger
from winpeforge.core.models import validate_powershell_version

logger = get_logger(__name__)

# Staging copy of the runtime plus the extracted tree
RUNTIME_SPACE_ALLOWANCE = 512 * 1024 * 1024


@dataclass
class PreflightCheck:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    severity: str = "info"  # info, warning, error, critical
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    """Complete preflight check report."""

    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def has_errors(self) -> bool:
        return any(c.severity in ("error", "critical") and not c.passed for c in self.checks)

    @property
    def has_warnings(self) -> bool:
        return any(c.severity == "warning" and not c.passed for c in self.checks)

    @property
    def failed_checks(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.passed and c.severity in ("error", "critical")]

    def get_summary(self) -> str:
        """Get human-readable summary."""
        lines = [f"Preflight Check Report ({self.timestamp.isoformat()})"]
        lines.append("=" * 60)

        passed = sum(1 for c in self.checks if c.passed)
        lines.append(f"Results: {passed}/{len(self.checks)} checks passed")
        lines.append("")

        for check in self.checks:
            status = "✓" if check.passed else "✗"
            lines.append(f"[{status}] {check.name}: {check.message}")
            for key, value in check.details.items():
                lines.append(f"    {key}: {value}")

        return "\n".join(lines)


class PreflightChecker:
    """Performs preflight checks before a build."""

    def __init__(self) -> None:
        self._checks: list[tuple[str, Callable[[dict[str, Any]], PreflightCheck | bool]]] = []

    def add_check(self, name: str, check_func: Callable[[dict[str, Any]], PreflightCheck | bool]) -> None:
        """Add a preflight check function."""
        self._checks.append((name, check_func))

    def run_checks(self, context: dict[str, Any]) -> PreflightReport:
        """Run all preflight checks and return report."""
        report = PreflightReport()

        for name, check_func in self._checks:
            try:
                result = check_func(context)
                if isinstance(result, PreflightCheck):
                    report.checks.append(result)
                elif isinstance(result, bool):
                    report.checks.append(
                        PreflightCheck(
                            name=name,
                            passed=result,
                            message="Passed" if result else "Failed",
                            severity="info" if result else "error",
                        )
                    )
            except Exception as e:
                report.checks.append(
                    PreflightCheck(
                        name=name,
                        passed=False,
                        message=f"Check failed with error: {e}",
                        severity="error",
                    )
                )

        for check in report.checks:
            if not check.passed:
                logger.warning("Preflight check failed", check=check.name, message=check.message)
        return report


def check_admin(context: dict[str, Any]) -> PreflightCheck:
    """Mounting images and loading hives needs an elevated process."""
    if context.get("is_admin", False):
        return PreflightCheck(
            name="Administrator Privileges",
            passed=True,
            message="Running with administrator privileges",
        )
    return PreflightCheck(
        name="Administrator Privileges",
        passed=False,
        message="Administrator privileges are required to mount images and load registry hives",
        severity="critical",
    )


def check_source_image(context: dict[str, Any]) -> PreflightCheck:
    wim_path = Path(context.get("wim_path", ""))
    if not wim_path.is_file():
        return PreflightCheck(
            name="Source Image",
            passed=False,
            message=f"Source image not found: {wim_path}",
            severity="error",
        )
    if wim_path.stat().st_size == 0:
        return PreflightCheck(
            name="Source Image",
            passed=False,
            message=f"Source image is empty: {wim_path}",
            severity="error",
        )
    return PreflightCheck(
        name="Source Image",
        passed=True,
        message="Source image is readable",
        details={"size": humanize.naturalsize(wim_path.stat().st_size, binary=True)},
    )


def check_powershell_version(context: dict[str, Any]) -> PreflightCheck:
    version = context.get("powershell_version", "")
    try:
        validate_powershell_version(version)
    except ValidationError as e:
        return PreflightCheck(
            name="PowerShell Version",
            passed=False,
            message=e.message,
            severity="error",
        )
    return PreflightCheck(
        name="PowerShell Version",
        passed=True,
        message=f"PowerShell {version} is supported",
    )


def _existing_parent(path: Path) -> Path:
    path = path.expanduser().resolve()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def check_disk_space(context: dict[str, Any]) -> PreflightCheck:
    """Check the temp root volume can hold the working copies."""
    temp_root = Path(context.get("temp_root", "."))
    required = int(context.get("required_bytes", 0))

    usage = psutil.disk_usage(str(_existing_parent(temp_root)))
    details = {
        "free": humanize.naturalsize(usage.free, binary=True),
        "required": humanize.naturalsize(required, binary=True),
    }
    if usage.free < required:
        return PreflightCheck(
            name="Disk Space",
            passed=False,
            message=f"Not enough free space under {temp_root}",
            severity="error",
            details=details,
        )
    return PreflightCheck(
        name="Disk Space",
        passed=True,
        message="Sufficient free space",
        details=details,
    )


def check_not_mounted(context: dict[str, Any]) -> PreflightCheck:
    """Check if the mount directory is not already in use."""
    mount_path = context.get("mount_path")
    mounted_paths = [Path(p).resolve() for p in context.get("mounted_paths", [])]

    if mount_path is not None and Path(mount_path).resolve() in mounted_paths:
        return PreflightCheck(
            name="Mount Status",
            passed=False,
            message=f"An image is already mounted at {mount_path}",
            severity="error",
            details={"mounted_paths": [str(p) for p in mounted_paths]},
        )

    return PreflightCheck(
        name="Mount Status",
        passed=True,
        message="Mount directory is free",
    )


CHECK_ERRORS: dict[str, type[WinPEForgeError]] = {
    "Administrator Privileges": AdminPrivilegeError,
    "Source Image": ValidationError,
    "PowerShell Version": ValidationError,
    "Disk Space": FileSystemError,
    "Mount Status": MountPreconditionError,
}


def required_space(wim_path: Path) -> int:
    """Bytes needed for the media copy of the image plus the runtime."""
    size = wim_path.stat().st_size if wim_path.is_file() else 0
    return size * 2 + RUNTIME_SPACE_ALLOWANCE


def raise_for_report(report: PreflightReport) -> None:
    """Raise the error matching the first failed blocking check."""
    failed = report.failed_checks
    if not failed:
        return
    first = failed[0]
    error_type = CHECK_ERRORS.get(first.name, ValidationError)
    raise error_type(
        first.message,
        context={"failed_checks": [c.name for c in failed]},
    )


def create_standard_preflight_checker() -> PreflightChecker:
    """Create a preflight checker with the build checks."""
    checker = PreflightChecker()
    checker.add_check("Administrator Privileges", check_admin)
    checker.add_check("Source Image", check_source_image)
    checker.add_check("PowerShell Version", check_powershell_version)
    checker.add_check("Disk Space", check_disk_space)
    checker.add_check("Mount Status", check_not_mounted)
    return checker
