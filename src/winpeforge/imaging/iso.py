"""
ISO assembly.

Burns the finished media tree into a bootable ISO through the backend's ISO
build service. Failures are structural, so nothing here is retried.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

import humanize

from winpeforge.core.errors import FileSystemError, ValidationError, WimProcessingError
from winpeforge.core.logging import OperationLogger, get_logger
from winpeforge.platform.windows.parsers import summarize_tool_output

if TYPE_CHECKING:
    from winpeforge.core.context import BuildContext

logger = get_logger(__name__)

_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9_ -]{1,32}$")


def validate_label(label: str) -> str:
    """ISO volume labels are limited to 32 characters of a safe alphabet."""
    if not _LABEL_PATTERN.match(label or ""):
        raise ValidationError(
            f"Invalid ISO label '{label}': use 1-32 letters, digits, spaces, '_' or '-'",
            context={"label": label},
        )
    return label


class IsoAssembler:
    """Builds ISO files from a workspace media tree."""

    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.backend = context.backend

    def build(
        self,
        workspace_path: Path,
        output_path: Path,
        label: str,
        overwrite: bool | None = None,
    ) -> Path:
        """Build ``output_path`` from ``workspace_path`` and verify it is non-empty."""
        label = validate_label(label)
        workspace_path = Path(workspace_path)
        output_path = Path(output_path).expanduser().resolve()
        if overwrite is None:
            overwrite = self.context.config.iso.overwrite

        if not workspace_path.is_dir():
            raise ValidationError(f"ISO source tree not found: {workspace_path}")

        if output_path.exists():
            if not overwrite:
                raise FileSystemError(
                    f"Output file already exists: {output_path}",
                    context={"output_path": str(output_path)},
                )
            output_path.unlink()
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with OperationLogger("ISO assembly", logger, output=str(output_path), label=label):
            result = self.backend.build_iso(
                workspace_path,
                output_path,
                label,
                boot_files=self.context.config.paths.boot_files,
            )

            if not result.success:
                raise WimProcessingError(
                    f"ISO build failed (exit {result.returncode}): "
                    f"{summarize_tool_output(result.output)}",
                    context={"output_path": str(output_path), "exit_code": result.returncode},
                )

            size = output_path.stat().st_size if output_path.exists() else 0
            if size == 0:
                raise WimProcessingError(
                    f"ISO build reported success but {output_path} is missing or empty",
                    context={"output_path": str(output_path)},
                )

        logger.info(
            "ISO created",
            output=str(output_path),
            size=humanize.naturalsize(size, binary=True),
        )
        return output_path
