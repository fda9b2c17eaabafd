"""
WinPEForge error taxonomy.

Every failure surfaced by the build pipeline carries an ErrorCategory so the
CLI and the build report can tell configuration mistakes apart from transient
tool failures or lock contention.
"""

from __future__ import annotations

import subprocess
from enum import Enum, auto
from typing import Any


class ErrorCategory(Enum):
    """Broad classes of pipeline failures."""

    CONFIGURATION = auto()
    FILE_SYSTEM = auto()
    PERMISSION = auto()  # Administrator privileges required
    VALIDATION = auto()  # Bad version string, bad path, bad label
    WIM_PROCESSING = auto()  # Mount, dismount, injection, ISO build
    TIMEOUT = auto()
    RESOURCE_BUSY = auto()  # Lock contention
    NETWORK = auto()  # Package downloads
    CANCELLED = auto()
    UNKNOWN = auto()


class WinPEForgeError(Exception):
    """Base class for all WinPEForge errors."""

    category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "category": self.category.name,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ConfigurationError(WinPEForgeError):
    category = ErrorCategory.CONFIGURATION


class FileSystemError(WinPEForgeError):
    category = ErrorCategory.FILE_SYSTEM


class AdminPrivilegeError(WinPEForgeError):
    category = ErrorCategory.PERMISSION


class ValidationError(WinPEForgeError):
    category = ErrorCategory.VALIDATION


class WimProcessingError(WinPEForgeError):
    category = ErrorCategory.WIM_PROCESSING


class MountPreconditionError(WimProcessingError):
    """Raised when a mount path is already in use. Never retried."""


class DownloadError(WinPEForgeError):
    category = ErrorCategory.NETWORK


class OperationTimeoutError(WinPEForgeError):
    category = ErrorCategory.TIMEOUT


class ResourceBusyError(WinPEForgeError):
    category = ErrorCategory.RESOURCE_BUSY


class OperationCancelledError(WinPEForgeError):
    category = ErrorCategory.CANCELLED


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map any exception onto the WinPEForge taxonomy."""
    if isinstance(exc, WinPEForgeError):
        return exc.category
    if isinstance(exc, (TimeoutError, subprocess.TimeoutExpired)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMISSION
    if isinstance(exc, OSError):
        return ErrorCategory.FILE_SYSTEM
    if isinstance(exc, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN
