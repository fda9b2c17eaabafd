"""
ISO size optimization.

Removes boot-manager language resources the target media does not need. Runs
concurrently with runtime injection and only touches the media tree, never the
mounted image or the WIM file inside it.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import humanize

from winpeforge.core.job import JobContext, JobResult
from winpeforge.core.logging import get_logger

if TYPE_CHECKING:
    from winpeforge.core.context import BuildContext

logger = get_logger(__name__)

LANGUAGE_DIR_PATTERN = re.compile(r"^[a-z]{2,3}(-[a-z]{2,4}){1,2}$", re.IGNORECASE)

# Relative to the media root
LANGUAGE_RESOURCE_ROOTS = (
    ".",
    "boot",
    "efi/microsoft/boot",
    "sources",
)


def _tree_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


class IsoSizeOptimizer:
    """Strips unneeded language folders from a WinPE media tree."""

    def __init__(self, context: BuildContext) -> None:
        self.context = context

    def find_removable(self, media_path: Path, keep_languages: list[str]) -> list[Path]:
        keep = {lang.lower() for lang in keep_languages}
        removable: list[Path] = []
        for relative in LANGUAGE_RESOURCE_ROOTS:
            root = media_path / relative
            if not root.is_dir():
                continue
            for child in sorted(root.iterdir()):
                if (
                    child.is_dir()
                    and LANGUAGE_DIR_PATTERN.match(child.name)
                    and child.name.lower() not in keep
                ):
                    removable.append(child)
        return removable

    def optimize(
        self,
        media_path: Path,
        keep_languages: list[str] | None = None,
        job_context: JobContext | None = None,
    ) -> JobResult:
        keep = keep_languages if keep_languages is not None else self.context.config.iso.keep_languages
        media_path = Path(media_path)

        if not media_path.is_dir():
            return JobResult(success=False, message=f"Media tree not found: {media_path}")

        executor = self.context.retry_executor()
        freed = 0
        removed = 0
        try:
            for directory in self.find_removable(media_path, keep):
                if job_context is not None:
                    job_context.check_cancelled()
                size = _tree_size(directory)
                executor.execute(lambda d=directory: shutil.rmtree(d), f"Remove {directory.name}")
                freed += size
                removed += 1
                logger.debug("Removed language resources", path=str(directory))
        except OSError as e:
            return JobResult(success=False, message=f"ISO optimization failed: {e}")

        message = (
            f"Removed {removed} language folder(s), "
            f"freed {humanize.naturalsize(freed, binary=True)}"
        )
        logger.info("Media tree optimized", media_path=str(media_path), removed=removed, freed_bytes=freed)
        return JobResult(success=True, message=message)
