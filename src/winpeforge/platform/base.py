"""
WinPEForge Platform Backend Base.

Defines the abstract interface to the external imaging services: the image
mounting service, offline registry tooling and the ISO authoring tool.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stderr first, for error messages."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


class ImagingBackend(ABC):
    """Abstract base class for the platform imaging services."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'windows')."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with admin privileges."""

    # ==================== Image Mounting Service ====================

    @abstractmethod
    def mount_image(self, image_path: Path, mount_path: Path, index: int) -> tuple[bool, str]:
        """
        Mount a WIM image index to a directory.
        Returns (success, message/error).
        """

    @abstractmethod
    def dismount_image(self, mount_path: Path, save: bool) -> tuple[bool, str]:
        """
        Dismount the image at mount_path, committing or discarding changes.
        Returns (success, message/error).
        """

    @abstractmethod
    def get_mounted_images(self) -> list[Path]:
        """Return the mount directories currently in use by the service."""

    # ==================== Offline Registry ====================

    @abstractmethod
    def load_hive(self, hive_file: Path, key: str) -> tuple[bool, str]:
        """Load an offline hive file under a temporary key (e.g. HKLM\\X)."""

    @abstractmethod
    def unload_hive(self, key: str) -> tuple[bool, str]:
        """Unload a previously loaded hive key."""

    @abstractmethod
    def set_registry_value(
        self,
        key: str,
        name: str | None,
        value: str,
        value_type: str = "REG_SZ",
    ) -> tuple[bool, str]:
        """Write a registry value. ``name=None`` writes the default value."""

    # ==================== ISO Build Service ====================

    @abstractmethod
    def build_iso(
        self,
        source_tree: Path,
        output_file: Path,
        label: str,
        boot_files: Path | None = None,
    ) -> CommandResult:
        """Burn source_tree into a bootable ISO. The exit code is authoritative."""
