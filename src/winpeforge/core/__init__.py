"""
WinPEForge Core - Shared services for the build pipeline.

Contains configuration, errors, logging, retry and locking primitives, job
execution and preflight checks.
"""

from winpeforge.core.config import WinPEForgeConfig
from winpeforge.core.context import BuildContext, BuildReport
from winpeforge.core.coordinator import ParallelJobCoordinator
from winpeforge.core.errors import ErrorCategory, WinPEForgeError
from winpeforge.core.job import CancellationToken, JobResult, Task
from winpeforge.core.locking import CriticalSection, FileLock
from winpeforge.core.logging import get_logger, log_event, setup_logging
from winpeforge.core.retry import RetryExecutor, RetryPolicy

__all__ = [
    "BuildContext",
    "BuildReport",
    "CancellationToken",
    "CriticalSection",
    "ErrorCategory",
    "FileLock",
    "JobResult",
    "ParallelJobCoordinator",
    "RetryExecutor",
    "RetryPolicy",
    "Task",
    "WinPEForgeConfig",
    "WinPEForgeError",
    "get_logger",
    "log_event",
    "setup_logging",
]
