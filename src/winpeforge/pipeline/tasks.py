"""
Customization task descriptions.

Each task carries plain, picklable inputs and builds its own BuildContext in
the worker, so the same description runs on a thread or in a spawned process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from winpeforge.core.config import WinPEForgeConfig
from winpeforge.core.context import BuildContext
from winpeforge.core.job import JobContext, JobResult, Task
from winpeforge.core.logging import get_logger
from winpeforge.core.models import WorkspaceInstance
from winpeforge.imaging.optimizer import IsoSizeOptimizer
from winpeforge.platform.base import ImagingBackend
from winpeforge.runtime.injector import RuntimeInjector


def _worker_context(
    config: WinPEForgeConfig, backend: ImagingBackend, job_context: JobContext, name: str
) -> BuildContext:
    return BuildContext(
        config,
        backend,
        logger=get_logger("winpeforge.jobs").bind(job=name),
        cancellation=job_context.cancellation,
    )


@dataclass
class InjectRuntimeTask(Task):
    """Inject the PowerShell runtime into the mounted image."""

    config: WinPEForgeConfig
    backend: ImagingBackend
    package_path: Path
    workspace: WorkspaceInstance
    mount_path: Path
    name: str = field(default="inject_runtime")

    def run(self, context: JobContext) -> JobResult:
        build_context = _worker_context(self.config, self.backend, context, self.name)
        return RuntimeInjector(build_context).inject(
            self.package_path, self.workspace, self.mount_path
        )


@dataclass
class OptimizeMediaTask(Task):
    """Strip unneeded language resources from the media tree."""

    config: WinPEForgeConfig
    backend: ImagingBackend
    media_path: Path
    keep_languages: list[str] | None = None
    name: str = field(default="optimize_media")

    def run(self, context: JobContext) -> JobResult:
        build_context = _worker_context(self.config, self.backend, context, self.name)
        return IsoSizeOptimizer(build_context).optimize(
            self.media_path, self.keep_languages, job_context=context
        )
