"""
Workspace allocation.

Each pipeline run gets its own mount, runtime staging and media directories
under a shared temp root, named after a UUID so concurrent runs never collide.
"""

from __future__ import annotations

import os
import shutil
import stat
import uuid
from pathlib import Path
from typing import Any

from winpeforge.core.errors import FileSystemError, ValidationError
from winpeforge.core.logging import get_logger
from winpeforge.core.models import WorkspaceInstance

logger = get_logger(__name__)

MOUNT_PREFIX = "Mount_"
STAGING_PREFIX = "PS7_"
MEDIA_PREFIX = "Media_"


def _clear_readonly(func: Any, path: str, exc: BaseException) -> None:
    """rmtree error handler: clear the read-only bit and retry once."""
    os.chmod(path, stat.S_IWRITE)
    func(path)


class MountPointAllocator:
    """Creates and releases per-run workspaces."""

    def allocate(
        self,
        temp_root: Path,
        instance_id: uuid.UUID | str | None = None,
    ) -> WorkspaceInstance:
        """
        Create the workspace directories for one run.

        A new UUID is generated when ``instance_id`` is not given. Reusing an
        explicit id (to resume a build) is allowed; existing directories are
        kept.
        """
        if instance_id is None:
            instance_id = uuid.uuid4()
        elif not isinstance(instance_id, uuid.UUID):
            try:
                instance_id = uuid.UUID(str(instance_id))
            except ValueError as e:
                raise ValidationError(
                    f"Invalid workspace instance id: {instance_id}",
                    context={"instance_id": str(instance_id)},
                ) from e

        temp_root = Path(temp_root).expanduser().resolve()
        workspace = WorkspaceInstance(
            instance_id=instance_id,
            temp_root=temp_root,
            mount_path=temp_root / f"{MOUNT_PREFIX}{instance_id}",
            runtime_staging_path=temp_root / f"{STAGING_PREFIX}{instance_id}",
            media_path=temp_root / f"{MEDIA_PREFIX}{instance_id}",
        )

        try:
            for directory in workspace.directories:
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(
                f"Could not create workspace under {temp_root}: {e}",
                context=workspace.to_dict(),
            ) from e

        logger.info("Workspace allocated", **workspace.to_dict())
        return workspace

    def release(self, workspace: WorkspaceInstance) -> list[str]:
        """
        Delete the workspace directories, then the temp root if it is empty.

        Returns a list of failure messages; nothing is raised so cleanup can
        never mask the error that triggered it. The temp root is shared with
        concurrent runs, so it is only removed once nothing else lives there.
        """
        failures: list[str] = []

        for directory in workspace.directories:
            if not directory.exists():
                continue
            try:
                shutil.rmtree(directory, onexc=_clear_readonly)
            except OSError as e:
                failures.append(f"{directory}: {e}")
                logger.warning("Could not remove workspace directory", path=str(directory), error=str(e))

        if not failures:
            try:
                workspace.temp_root.rmdir()
            except FileNotFoundError:
                pass
            except OSError:
                logger.debug("Temp root still in use, kept", temp_root=str(workspace.temp_root))
            logger.info("Workspace released", instance_id=str(workspace.instance_id))
        return failures
