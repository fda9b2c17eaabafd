"""
WinPEForge Imaging - Workspace, mount, optimization and ISO services.
"""

from winpeforge.imaging.iso import IsoAssembler
from winpeforge.imaging.mount import ImageMountService
from winpeforge.imaging.optimizer import IsoSizeOptimizer
from winpeforge.imaging.workspace import MountPointAllocator

__all__ = ["ImageMountService", "IsoAssembler", "IsoSizeOptimizer", "MountPointAllocator"]
