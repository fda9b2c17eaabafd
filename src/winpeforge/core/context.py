"""
WinPEForge Build Context.

A BuildContext bundles the configuration, imaging backend, logger and
cancellation token of one pipeline run and is passed to every component
constructor. BuildReport records the run for audit and post-mortem review.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from winpeforge.core.config import WinPEForgeConfig
from winpeforge.core.job import CancellationToken
from winpeforge.core.locking import CriticalSection
from winpeforge.core.logging import get_logger
from winpeforge.core.retry import RetryExecutor, RetryPolicy

if TYPE_CHECKING:
    from winpeforge.core.job import JobResult
    from winpeforge.platform.base import ImagingBackend

logger = get_logger(__name__)


@dataclass
class BuildReport:
    """Complete build report for audit and review."""

    instance_id: str
    started_at: datetime
    ended_at: datetime | None = None
    transitions: list[dict[str, Any]] = field(default_factory=list)
    job_results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def record_transition(self, state: str) -> None:
        self.transitions.append({"timestamp": datetime.now().isoformat(), "state": state})

    def record_jobs(self, results: list[JobResult]) -> None:
        self.job_results.extend(r.to_dict() for r in results)

    def record_error(self, error: str, category: str) -> None:
        self.errors.append(
            {"timestamp": datetime.now().isoformat(), "error": error, "category": category}
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": (
                (self.ended_at - self.started_at).total_seconds()
                if self.ended_at
                else None
            ),
            "transitions": self.transitions,
            "job_results": self.job_results,
            "errors": self.errors,
            "warnings": self.warnings,
            "config_snapshot": self.config_snapshot,
            "summary": {
                "final_state": self.transitions[-1]["state"] if self.transitions else None,
                "failed_jobs": sum(1 for r in self.job_results if not r.get("success")),
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings),
            },
        }

    def save(self, path: Path) -> None:
        """Save report to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class BuildContext:
    """Explicit per-run state threaded through every pipeline component."""

    def __init__(
        self,
        config: WinPEForgeConfig,
        backend: ImagingBackend,
        logger: Any | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.logger = logger or get_logger("winpeforge.pipeline")
        self.cancellation = cancellation or CancellationToken()

    @property
    def cache_root(self) -> Path:
        return self.config.paths.cache

    @property
    def default_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.config.retry.max_retries,
            base_delay=self.config.retry.base_delay,
        )

    @property
    def mount_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.config.retry.mount_max_retries,
            base_delay=self.config.retry.mount_base_delay,
        )

    def retry_executor(
        self, policy: RetryPolicy | None = None, cancellable: bool = True
    ) -> RetryExecutor:
        """Executor bound to this run. Cleanup paths pass ``cancellable=False``."""
        return RetryExecutor(
            policy or self.default_policy,
            logger=self.logger,
            cancellation=self.cancellation if cancellable else None,
        )

    def critical_section(self, name: str) -> CriticalSection:
        return CriticalSection(name, self.config.paths.locks, timeout=self.config.timeouts.lock)
