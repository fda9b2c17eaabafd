"""
Image mount service.

Mounts and dismounts WIM images through the platform imaging backend, with
every call wrapped in a RetryExecutor. Dismount discards changes unless the
caller explicitly asks to save them.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from winpeforge.core.errors import MountPreconditionError, ValidationError, WimProcessingError
from winpeforge.core.logging import get_logger
from winpeforge.core.models import MountedImage, MountState

if TYPE_CHECKING:
    from winpeforge.core.context import BuildContext

logger = get_logger(__name__)

_NOT_MOUNTED = re.compile(r"not mounted|no mounted image|0xc1420115", re.IGNORECASE)


def _normalize(path: Path) -> Path:
    return Path(path).expanduser().resolve()


class ImageMountService:
    """Mount lifecycle for WIM images."""

    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.backend = context.backend
        self._mounted: dict[Path, MountedImage] = {}

    def is_mounted(self, mount_path: Path) -> bool:
        image = self._mounted.get(_normalize(mount_path))
        return image is not None and image.is_mounted

    def _check_mount_free(self, mount_path: Path) -> None:
        if self.is_mounted(mount_path):
            raise MountPreconditionError(
                f"An image is already mounted at {mount_path}",
                context={"mount_path": str(mount_path)},
            )

        backend_mounts = {_normalize(p) for p in self.backend.get_mounted_images()}
        if mount_path in backend_mounts:
            raise MountPreconditionError(
                f"Mount directory {mount_path} is in use by another image",
                context={"mount_path": str(mount_path)},
            )

        if mount_path.exists() and any(mount_path.iterdir()):
            raise MountPreconditionError(
                f"Mount directory {mount_path} is not empty",
                context={"mount_path": str(mount_path)},
            )

    def mount(self, image_path: Path, mount_path: Path, index: int = 1) -> MountedImage:
        """Mount ``image_path`` at ``index`` into ``mount_path``."""
        image_path = _normalize(image_path)
        mount_path = _normalize(mount_path)

        if not image_path.is_file():
            raise ValidationError(
                f"Image file not found: {image_path}",
                context={"image_path": str(image_path)},
            )
        if index < 1:
            raise ValidationError(f"Image index must be >= 1, got {index}")

        self._check_mount_free(mount_path)
        mount_path.mkdir(parents=True, exist_ok=True)

        def attempt() -> str:
            ok, message = self.backend.mount_image(image_path, mount_path, index)
            if not ok:
                raise WimProcessingError(message, context={"image_path": str(image_path)})
            return message

        executor = self.context.retry_executor(self.context.mount_policy)
        executor.execute(attempt, f"Mount {image_path.name} index {index}")

        image = MountedImage(
            image_path=image_path,
            mount_path=mount_path,
            index=index,
            state=MountState.MOUNTED,
            mounted_at=datetime.now(),
        )
        self._mounted[mount_path] = image
        logger.info("Image mounted", image=str(image_path), mount_path=str(mount_path), index=index)
        return image

    def dismount(
        self, mount_path: Path, save: bool = False, cancellable: bool = True
    ) -> MountedImage | None:
        """
        Dismount the image at ``mount_path``.

        ``save`` defaults to False: changes are discarded unless the caller
        knows the image is in a committed, consistent state. Cleanup passes
        ``cancellable=False`` so a cancelled run still releases its mount.
        """
        mount_path = _normalize(mount_path)
        image = self._mounted.get(mount_path)

        def attempt() -> bool:
            ok, message = self.backend.dismount_image(mount_path, save)
            if ok:
                return True
            if _NOT_MOUNTED.search(message):
                logger.warning("Nothing mounted at dismount path", mount_path=str(mount_path))
                return False
            raise WimProcessingError(message, context={"mount_path": str(mount_path)})

        executor = self.context.retry_executor(self.context.mount_policy, cancellable=cancellable)
        action = "Save" if save else "Discard"
        executor.execute(attempt, f"Dismount {mount_path.name} ({action})")

        if image is not None:
            image.state = MountState.UNMOUNTED
            del self._mounted[mount_path]
        logger.info("Image dismounted", mount_path=str(mount_path), saved=save)
        return image
