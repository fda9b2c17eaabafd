"""
WinPEForge Windows Platform Backend.

Implements the imaging services using Windows tools:
- dism.exe for image mount/dismount
- reg.exe for offline registry hives
- oscdimg.exe for ISO authoring
"""

from winpeforge.platform.windows.backend import WindowsBackend
from winpeforge.platform.windows.parsers import (
    parse_dism_error,
    parse_mounted_images,
)

__all__ = [
    "WindowsBackend",
    "parse_dism_error",
    "parse_mounted_images",
]
