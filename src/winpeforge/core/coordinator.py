"""
WinPEForge job coordinator.

Runs the customization tasks of a build on a bounded worker pool, waits for
all of them under one shared timeout, and turns worker crashes into failed
JobResults.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import wait
from typing import Any

from winpeforge.core.errors import OperationTimeoutError, WimProcessingError
from winpeforge.core.job import (
    CancellationToken,
    JobResult,
    Task,
    WorkerPool,
    select_worker_pool,
)
from winpeforge.core.logging import get_logger

logger = get_logger(__name__)

TERMINATION_GRACE = 10.0


class ParallelJobCoordinator:
    """
    Executes a batch of tasks concurrently and collects one result per task.

    The pool implementation is chosen once, when the coordinator is created.
    On timeout the shared cancellation token is set, the pool is terminated
    and OperationTimeoutError is raised; no partial results are returned.
    """

    def __init__(
        self,
        max_workers: int = 2,
        worker_backend: str = "thread",
        cancellation: CancellationToken | None = None,
        pool_factory: Callable[[int], WorkerPool] | None = None,
        termination_grace: float = TERMINATION_GRACE,
        log: Any | None = None,
    ) -> None:
        if not 1 <= max_workers <= 4:
            raise ValueError(f"max_workers must be between 1 and 4, got {max_workers}")
        self.max_workers = max_workers
        self.cancellation = cancellation or CancellationToken()
        self.termination_grace = termination_grace
        self.log = log or logger
        self._pool_factory = pool_factory or (
            lambda width: select_worker_pool(width, preferred=worker_backend)
        )

    def run_all(self, jobs: list[Task], timeout: float) -> list[JobResult]:
        """Run ``jobs`` and return their results in submission order."""
        if not jobs:
            return []

        token = self.cancellation.child()
        pool = self._pool_factory(min(self.max_workers, len(jobs)))
        started = time.monotonic()
        self.log.info(
            "Starting parallel jobs",
            jobs=[job.name for job in jobs],
            pool=pool.kind,
            timeout=timeout,
        )

        futures = [pool.submit(job, token) for job in jobs]
        _, pending = wait(futures, timeout=timeout)

        if pending:
            unfinished = [job.name for job, future in zip(jobs, futures) if future in pending]
            token.cancel("timeout")
            for future in pending:
                future.cancel()
            pool.terminate()
            # Thread workers stop at their next cancellation check
            _, alive = wait(pending, timeout=self.termination_grace)
            still_running = [job.name for job, future in zip(jobs, futures) if future in alive]
            if still_running:
                self.log.warning(
                    "Jobs still running after termination grace",
                    jobs=still_running,
                    grace_seconds=self.termination_grace,
                )
            self.log.error(
                "Parallel jobs timed out",
                unfinished=unfinished,
                still_running=still_running,
                timeout=timeout,
            )
            raise OperationTimeoutError(
                f"Jobs did not finish within {timeout}s: {', '.join(unfinished)}",
                context={"unfinished": unfinished, "still_running": still_running, "timeout": timeout},
            )

        pool.shutdown()

        results: list[JobResult] = []
        for job, future in zip(jobs, futures):
            result = self._collect(job, future)
            results.append(result)
            log = self.log.info if result.success else self.log.error
            log("Job finished", job=result.name, success=result.success, detail=result.message)

        self.log.info(
            "Parallel jobs complete",
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return results

    def _collect(self, job: Task, future: Any) -> JobResult:
        try:
            result = future.result()
        except Exception as e:
            self.log.error("Worker raised outside the job boundary", job=job.name, error=str(e))
            result = None

        if result is None:
            return JobResult(
                success=False,
                message=f"{job.name} returned no result (worker crashed)",
                name=job.name,
                crashed=True,
            )
        return result

    @staticmethod
    def raise_for_failures(results: list[JobResult]) -> None:
        """Raise WimProcessingError naming every failed job."""
        failed = [r for r in results if not r.success]
        if failed:
            raise WimProcessingError(
                "Customization jobs failed: "
                + "; ".join(f"{r.name}: {r.message}" for r in failed),
                context={"failed_jobs": [r.name for r in failed]},
            )
