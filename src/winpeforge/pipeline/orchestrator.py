"""
WinPEForge build pipeline.

Sequences one customization run: preflight, workspace allocation, runtime
package resolution, mount, the parallel customization jobs, dismount with
commit, ISO assembly and cleanup. Any failure moves the run to FAILED, which
discards the mounted image and removes the workspace unless cleanup was
skipped for inspection.
"""

from __future__ import annotations

import shutil
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import requests

from winpeforge.core.config import WinPEForgeConfig, load_config
from winpeforge.core.context import BuildContext, BuildReport
from winpeforge.core.coordinator import ParallelJobCoordinator
from winpeforge.core.errors import (
    MountPreconditionError,
    OperationCancelledError,
    OperationTimeoutError,
    ValidationError,
    classify_exception,
)
from winpeforge.core.job import CancellationToken
from winpeforge.core.logging import BuildLogger, get_logger, log_event, setup_logging
from winpeforge.core.models import (
    BuildRequest,
    BuildResult,
    PipelineState,
    WorkspaceInstance,
    validate_powershell_version,
)
from winpeforge.core.safety import (
    create_standard_preflight_checker,
    raise_for_report,
    required_space,
)
from winpeforge.imaging.iso import IsoAssembler, validate_label
from winpeforge.imaging.mount import ImageMountService
from winpeforge.imaging.workspace import MOUNT_PREFIX, MountPointAllocator
from winpeforge.pipeline.tasks import InjectRuntimeTask, OptimizeMediaTask
from winpeforge.platform import get_imaging_backend
from winpeforge.platform.base import ImagingBackend
from winpeforge.runtime.download import PackageDownloader, PackageResolver

logger = get_logger(__name__)

PIPELINE_TIMEOUT_REASON = "pipeline timeout"


class BuildPipeline:
    """Runs BuildRequests against one configuration and imaging backend."""

    def __init__(
        self,
        config: WinPEForgeConfig,
        backend: ImagingBackend,
        session: requests.Session | None = None,
        allocator: MountPointAllocator | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.cancellation = cancellation or CancellationToken()
        self.allocator = allocator or MountPointAllocator()
        self.session = session
        setup_logging(config.logging)

    def run(self, request: BuildRequest) -> BuildResult:
        """Execute one build. Failures are returned in the BuildResult."""
        instance_id = request.instance_id or uuid.uuid4()
        temp_root = Path(request.temp_root or self.config.paths.temp_root).expanduser().resolve()
        label = request.label or self.config.iso.label

        report_path = self.config.get_report_file(str(instance_id))
        build_log = BuildLogger(
            report_path.with_suffix(".log.json"),
            logger=get_logger("winpeforge.pipeline").bind(instance_id=str(instance_id)),
        )
        token = self.cancellation.child()
        context = BuildContext(self.config, self.backend, logger=build_log, cancellation=token)
        report = BuildReport(
            instance_id=str(instance_id),
            started_at=datetime.now(),
            config_snapshot=self.config.model_dump(mode="json"),
        )
        result = BuildResult(success=False, state=PipelineState.INIT, started_at=report.started_at)
        report.record_transition(PipelineState.INIT.name)

        mount_service = ImageMountService(context)
        workspace: WorkspaceInstance | None = None
        mount_attempted = False

        timer = threading.Timer(
            self.config.timeouts.pipeline,
            token.cancel,
            args=(PIPELINE_TIMEOUT_REASON,),
        )
        timer.daemon = True
        timer.start()

        build_log.info(
            "Build started",
            wim=str(request.wim_path),
            output=str(request.output_path),
            powershell_version=request.powershell_version,
            temp_root=str(temp_root),
        )

        try:
            version = validate_powershell_version(request.powershell_version)
            label = validate_label(label)
            self._preflight(request, version, temp_root, instance_id)

            workspace = self.allocator.allocate(temp_root, instance_id)
            result.workspace = workspace
            self._checkpoint(token)

            package = self._package_resolver(context).ensure(version)
            self._transition(result, report, build_log, PipelineState.PACKAGE_RESOLVED)
            self._checkpoint(token)

            image_path = self._stage_media(Path(request.wim_path), workspace.media_path)
            mount_attempted = True
            mount_service.mount(image_path, workspace.mount_path, request.image_index)
            self._transition(result, report, build_log, PipelineState.MOUNTED)

            coordinator = ParallelJobCoordinator(
                max_workers=self.config.jobs.max_workers,
                worker_backend=self.config.jobs.worker_backend,
                cancellation=token,
                log=build_log,
            )
            jobs = [
                InjectRuntimeTask(
                    config=self.config,
                    backend=self.backend,
                    package_path=package.archive_path,
                    workspace=workspace,
                    mount_path=workspace.mount_path,
                ),
                OptimizeMediaTask(
                    config=self.config,
                    backend=self.backend,
                    media_path=workspace.media_path,
                    keep_languages=self.config.iso.keep_languages,
                ),
            ]
            results = coordinator.run_all(jobs, timeout=self.config.timeouts.job)
            result.job_results = results
            report.record_jobs(results)
            coordinator.raise_for_failures(results)
            self._transition(result, report, build_log, PipelineState.INJECTED_OPTIMIZED)
            self._checkpoint(token)

            # Every job succeeded, so the image is consistent and can be committed
            mount_service.dismount(workspace.mount_path, save=True)
            self._transition(result, report, build_log, PipelineState.DISMOUNTED)
            self._checkpoint(token)

            iso_path = IsoAssembler(context).build(workspace.media_path, request.output_path, label)
            result.iso_path = iso_path
            result.iso_size_bytes = iso_path.stat().st_size
            self._transition(result, report, build_log, PipelineState.ASSEMBLED)

            if request.skip_cleanup:
                build_log.info("Cleanup skipped; workspace kept", **workspace.to_dict())
            else:
                for failure in self.allocator.release(workspace):
                    report.warnings.append(failure)
                    build_log.warning("Workspace cleanup incomplete", detail=failure)
            self._transition(result, report, build_log, PipelineState.CLEANED)
            result.success = True

        except Exception as e:
            error = self._normalize_error(e, token)
            category = classify_exception(error)
            result.error = str(error)
            result.error_category = category.name
            result.exception = error
            report.record_error(str(error), category.name)
            self._transition(result, report, build_log, PipelineState.FAILED)
            build_log.error("Build failed", error=str(error), category=category.name)

            foreign_mount = isinstance(error, MountPreconditionError)
            self._cleanup_after_failure(
                mount_service,
                workspace,
                dismount=mount_attempted and not foreign_mount,
                foreign_mount=foreign_mount,
                skip_cleanup=request.skip_cleanup,
                report=report,
            )

        finally:
            timer.cancel()
            result.finished_at = datetime.now()
            report.ended_at = result.finished_at
            result.report_path = self._save_report(report, build_log, report_path)

        build_log.info(
            "Build finished",
            success=result.success,
            state=result.state.name,
            duration_seconds=result.duration_seconds,
        )
        return result

    # ==================== Steps ====================

    def _package_resolver(self, context: BuildContext) -> PackageResolver:
        return PackageResolver(context, downloader=PackageDownloader(context, session=self.session))

    def _preflight(
        self, request: BuildRequest, version: str, temp_root: Path, instance_id: uuid.UUID
    ) -> None:
        wim_path = Path(request.wim_path)
        checker = create_standard_preflight_checker()
        report = checker.run_checks(
            {
                "is_admin": self.backend.is_admin(),
                "wim_path": wim_path,
                "powershell_version": version,
                "temp_root": temp_root,
                "required_bytes": required_space(wim_path),
                "mount_path": temp_root / f"{MOUNT_PREFIX}{instance_id}",
                "mounted_paths": self.backend.get_mounted_images(),
            }
        )
        raise_for_report(report)

    def _stage_media(self, wim_path: Path, media_path: Path) -> Path:
        """
        Copy the source image into the media tree and return the copy.

        A WIM inside a media layout (``<root>/sources/*.wim`` next to
        ``<root>/boot``) brings the whole tree along; a bare WIM becomes
        ``sources/boot.wim``.
        """
        wim_path = wim_path.expanduser().resolve()
        sources = wim_path.parent
        media_root = sources.parent
        if sources.name.lower() == "sources" and (media_root / "boot").is_dir():
            shutil.copytree(media_root, media_path, dirs_exist_ok=True)
            staged = media_path / "sources" / wim_path.name
        else:
            staged = media_path / "sources" / "boot.wim"
            staged.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(wim_path, staged)
        logger.info("Source image staged", source=str(wim_path), staged=str(staged))
        return staged

    @staticmethod
    def _checkpoint(token: CancellationToken) -> None:
        if token.is_cancelled:
            raise OperationCancelledError(
                f"Build cancelled: {token.reason}",
                context={"reason": token.reason},
            )

    def _normalize_error(self, error: Exception, token: CancellationToken) -> Exception:
        # Anything that failed because the pipeline timer fired is reported as a timeout
        if token.reason == PIPELINE_TIMEOUT_REASON and not isinstance(error, OperationTimeoutError):
            timeout_error = OperationTimeoutError(
                f"Build exceeded the pipeline timeout of {self.config.timeouts.pipeline}s",
                context={"timeout": self.config.timeouts.pipeline},
            )
            timeout_error.__cause__ = error
            return timeout_error
        return error

    @staticmethod
    def _transition(
        result: BuildResult, report: BuildReport, build_log: BuildLogger, state: PipelineState
    ) -> None:
        previous = result.state
        result.state = state
        report.record_transition(state.name)
        build_log.info("Pipeline state changed", previous=previous.name, state=state.name)

    def _cleanup_after_failure(
        self,
        mount_service: ImageMountService,
        workspace: WorkspaceInstance | None,
        dismount: bool,
        foreign_mount: bool,
        skip_cleanup: bool,
        report: BuildReport,
    ) -> None:
        """
        Best-effort cleanup; failures become warnings.

        ``foreign_mount`` means the mount directory belongs to another image
        or run; the workspace is then kept untouched.
        """
        if workspace is None:
            return

        dismounted = True
        if dismount:
            try:
                mount_service.dismount(workspace.mount_path, save=False, cancellable=False)
            except Exception as e:
                dismounted = False
                message = f"Dismount-discard of {workspace.mount_path} failed: {e}"
                report.warnings.append(message)
                log_event(
                    "Cleanup dismount failed; run 'dism /Cleanup-Mountpoints'",
                    level="WARNING",
                    component="pipeline",
                    exception=e,
                    context={"mount_path": str(workspace.mount_path)},
                )

        if skip_cleanup:
            logger.info("Cleanup skipped; workspace kept for inspection", **workspace.to_dict())
            return
        if foreign_mount:
            message = f"Workspace kept: {workspace.mount_path} is in use or holds foreign content"
            report.warnings.append(message)
            logger.warning("Workspace kept because the mount directory is not ours", **workspace.to_dict())
            return
        if not dismounted:
            # Deleting a directory with a live mount would corrupt the image
            logger.warning("Workspace kept because the image is still mounted", **workspace.to_dict())
            return

        for failure in self.allocator.release(workspace):
            report.warnings.append(failure)
            log_event(
                "Workspace cleanup incomplete",
                level="WARNING",
                component="pipeline",
                context={"detail": failure},
            )

    def _save_report(self, report: BuildReport, build_log: BuildLogger, path: Path) -> Path | None:
        try:
            report.save(path)
            build_log.save()
        except OSError as e:
            log_event(
                "Could not save build report",
                level="WARNING",
                component="pipeline",
                exception=e,
                context={"path": str(path)},
            )
            return None
        return path


def update_custom_wim_with_pwsh7(
    wim_path: Path | str,
    output_path: Path | str,
    *,
    powershell_version: str | None = None,
    temp_root: Path | str | None = None,
    instance_id: uuid.UUID | str | None = None,
    skip_cleanup: bool = False,
    label: str | None = None,
    image_index: int = 1,
    config: WinPEForgeConfig | None = None,
    backend: ImagingBackend | None = None,
    cancellation: CancellationToken | None = None,
    **pipeline_options: Any,
) -> BuildResult:
    """
    Inject PowerShell 7 into a WinPE image and build a bootable ISO.

    Returns the BuildResult; call ``result.raise_for_error()`` to surface the
    original failure as an exception.
    """
    config = config or load_config()
    backend = backend or get_imaging_backend(config)

    if instance_id is not None and not isinstance(instance_id, uuid.UUID):
        try:
            instance_id = uuid.UUID(str(instance_id))
        except ValueError as e:
            raise ValidationError(f"Invalid workspace instance id: {instance_id}") from e

    request = BuildRequest(
        wim_path=Path(wim_path),
        output_path=Path(output_path),
        powershell_version=powershell_version or config.powershell_versions.default,
        temp_root=Path(temp_root) if temp_root is not None else None,
        instance_id=instance_id,
        image_index=image_index,
        label=label,
        skip_cleanup=skip_cleanup,
    )
    pipeline = BuildPipeline(config, backend, cancellation=cancellation, **pipeline_options)
    return pipeline.run(request)


__all__ = [
    "BuildPipeline",
    "PIPELINE_TIMEOUT_REASON",
    "update_custom_wim_with_pwsh7",
]
