"""
PowerShell runtime injection.

Extracts the cached runtime archive, copies it into the mounted image,
registers it under App Paths in the offline SOFTWARE hive and makes
startnet.cmd launch it. Each step is retried on its own; a failed step ends
the injection and is reported as a JobResult instead of an exception.
"""

from __future__ import annotations

import shutil
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from winpeforge.core.errors import OperationCancelledError, WimProcessingError
from winpeforge.core.job import JobResult
from winpeforge.core.locking import COPY_SECTION, REGISTRY_SECTION
from winpeforge.core.logging import get_logger
from winpeforge.runtime.registry import SOFTWARE_HIVE_KEY, offline_hive
from winpeforge.runtime.startnet import RUNTIME_DIR_IN_PE, StartnetEditor

if TYPE_CHECKING:
    from winpeforge.core.context import BuildContext
    from winpeforge.core.models import WorkspaceInstance

logger = get_logger(__name__)

RUNTIME_RELATIVE = Path("Windows") / "System32" / "PowerShell7"
SOFTWARE_HIVE_RELATIVE = Path("Windows") / "System32" / "config" / "SOFTWARE"
APP_PATHS_SUBKEY = r"Microsoft\Windows\CurrentVersion\App Paths\pwsh.exe"
RUNTIME_EXECUTABLE = "pwsh.exe"


def safe_extract(archive: Path, destination: Path) -> int:
    """Extract a zip archive, refusing members that escape ``destination``."""
    destination = destination.resolve()
    with zipfile.ZipFile(archive) as zf:
        members = zf.infolist()
        for member in members:
            target = (destination / member.filename).resolve()
            if not target.is_relative_to(destination):
                raise WimProcessingError(
                    f"Archive member escapes extraction directory: {member.filename}",
                    context={"archive": str(archive)},
                )
        zf.extractall(destination)
    return len(members)


class RuntimeInjector:
    """Injects the PowerShell 7 runtime into a mounted WinPE image."""

    name = "inject_runtime"

    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.backend = context.backend
        self.log = context.logger

    def inject(
        self,
        package_path: Path,
        workspace: WorkspaceInstance,
        mount_path: Path,
    ) -> JobResult:
        """Run all injection steps. Never raises past the job boundary."""
        package_path = Path(package_path)
        mount_path = Path(mount_path)
        steps: list[tuple[str, Callable[[], Any]]] = [
            ("Extract runtime package", lambda: self.extract(package_path, workspace.runtime_staging_path)),
            ("Copy runtime into image", lambda: self.copy_runtime(workspace.runtime_staging_path, mount_path)),
            ("Register App Paths entry", lambda: self.register_app_path(mount_path)),
            ("Update startnet.cmd", lambda: self.update_startnet(mount_path)),
        ]

        executor = self.context.retry_executor()
        for step_name, step in steps:
            try:
                executor.execute(step, step_name)
            except OperationCancelledError as e:
                return JobResult(success=False, message=f"{step_name} cancelled: {e}", name=self.name)
            except Exception as e:
                self.log.error("Runtime injection step failed", step=step_name, error=str(e))
                return JobResult(success=False, message=f"{step_name} failed: {e}", name=self.name)

        return JobResult(
            success=True,
            message=f"PowerShell runtime injected into {mount_path}",
            name=self.name,
        )

    # ==================== Steps ====================

    def extract(self, package_path: Path, staging_path: Path) -> Path:
        if staging_path.exists():
            shutil.rmtree(staging_path)
        staging_path.mkdir(parents=True)

        count = safe_extract(package_path, staging_path)
        if not (staging_path / RUNTIME_EXECUTABLE).is_file():
            raise WimProcessingError(
                f"{RUNTIME_EXECUTABLE} not found at the root of {package_path.name}",
                context={"package": str(package_path)},
            )
        self.log.info("Runtime package extracted", files=count, staging=str(staging_path))
        return staging_path

    def copy_runtime(self, staging_path: Path, mount_path: Path) -> Path:
        target = mount_path / RUNTIME_RELATIVE
        with self.context.critical_section(COPY_SECTION):
            shutil.copytree(staging_path, target, dirs_exist_ok=True)
        self.log.info("Runtime copied into image", target=str(target))
        return target

    def register_app_path(self, mount_path: Path) -> None:
        hive_file = mount_path / SOFTWARE_HIVE_RELATIVE
        executable = f"{RUNTIME_DIR_IN_PE}\\{RUNTIME_EXECUTABLE}"

        with self.context.critical_section(REGISTRY_SECTION):
            with offline_hive(self.backend, hive_file, SOFTWARE_HIVE_KEY, log=self.log) as key:
                app_key = f"{key}\\{APP_PATHS_SUBKEY}"
                for value_name, value in ((None, executable), ("Path", RUNTIME_DIR_IN_PE)):
                    ok, message = self.backend.set_registry_value(app_key, value_name, value)
                    if not ok:
                        raise WimProcessingError(message, context={"key": app_key})
        self.log.info("App Paths entry registered", executable=executable)

    def update_startnet(self, mount_path: Path) -> bool:
        return StartnetEditor(mount_path).update()
