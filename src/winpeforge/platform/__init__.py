"""
WinPEForge Platform Abstraction Layer.

Provides the platform-specific implementation of the imaging services.
"""

from __future__ import annotations

import platform
from typing import TYPE_CHECKING

from winpeforge.platform.base import CommandResult, ImagingBackend

if TYPE_CHECKING:
    from winpeforge.core.config import WinPEForgeConfig


def get_imaging_backend(config: WinPEForgeConfig | None = None) -> ImagingBackend:
    """Get the imaging backend for the current OS."""
    system = platform.system().lower()

    if system == "windows":
        from winpeforge.platform.windows import WindowsBackend

        if config is None:
            return WindowsBackend()
        return WindowsBackend(
            mount_timeout=config.timeouts.mount,
            dismount_timeout=config.timeouts.dismount,
            iso_timeout=config.timeouts.job,
        )
    raise RuntimeError(
        f"Unsupported platform: {system}. DISM and oscdimg require Windows."
    )


__all__ = [
    "CommandResult",
    "ImagingBackend",
    "get_imaging_backend",
]
