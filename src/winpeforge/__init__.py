"""
WinPEForge - Offline WinPE image customization.

Mounts a WinPE image, injects a PowerShell 7 runtime, rewrites the offline
registry and boot script, and repackages the media as a bootable ISO.
"""

__version__ = "1.0.0"
__author__ = "WinPEForge Team"

from winpeforge.core.config import WinPEForgeConfig
from winpeforge.pipeline import BuildPipeline, update_custom_wim_with_pwsh7

__all__ = ["BuildPipeline", "WinPEForgeConfig", "update_custom_wim_with_pwsh7", "__version__"]
