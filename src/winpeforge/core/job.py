"""
WinPEForge job primitives.

Provides cancellation tokens, job results, task descriptions and the worker
pools that execute customization tasks concurrently.
"""

from __future__ import annotations

import multiprocessing
import sys
import threading
import time
import traceback
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from winpeforge.core.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal shared by the pipeline and its jobs.

    A child token is cancelled when its parent is, but cancelling the child
    leaves the parent untouched.
    """

    POLL_INTERVAL = 0.1

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self.parent = parent

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent is not None and self.parent.is_cancelled

    @property
    def reason(self) -> str | None:
        if self._event.is_set():
            return self._reason
        return self.parent.reason if self.parent is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        if self.parent is None:
            return self._event.wait(timeout)

        deadline = time.monotonic() + timeout
        while not self.is_cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, self.POLL_INTERVAL))
        return True


@dataclass
class JobResult:
    """Result of a customization job."""

    success: bool
    message: str = ""
    name: str = ""
    crashed: bool = False
    warnings: list[str] = field(default_factory=list)
    error_traceback: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "message": self.message,
            "crashed": self.crashed,
            "warnings": self.warnings,
            "duration_seconds": self.duration_seconds,
        }


class JobCancelledException(Exception):
    """Raised when a job observes cancellation between steps."""


class JobContext:
    """Context passed to a running task for cancellation and warnings."""

    def __init__(self, cancellation: CancellationToken | None = None) -> None:
        self.cancellation = cancellation or CancellationToken()
        self._warnings: list[str] = []
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation.is_cancelled

    def cancel(self) -> None:
        """Request cancellation of the job."""
        self.cancellation.cancel()

    def check_cancelled(self) -> None:
        """Check if cancelled and raise if so."""
        if self.cancellation.is_cancelled:
            raise JobCancelledException(self.cancellation.reason or "Job was cancelled")

    def add_warning(self, warning: str) -> None:
        with self._lock:
            self._warnings.append(warning)

    def get_warnings(self) -> list[str]:
        with self._lock:
            return self._warnings.copy()


class Task(ABC):
    """
    Description of one unit of work submitted to a worker pool.

    Tasks carry their inputs as plain attributes so they can be pickled to a
    worker process. ``run`` must return a JobResult and report failures as
    data rather than raising.
    """

    name: str = "task"

    @abstractmethod
    def run(self, context: JobContext) -> JobResult:
        """Execute the task."""


def run_task(task: Task, context: JobContext | None = None) -> JobResult | None:
    """Run a task, converting unexpected exceptions into a failed JobResult."""
    context = context or JobContext()
    started = datetime.now()
    try:
        result = task.run(context)
    except JobCancelledException as e:
        result = JobResult(success=False, message=f"{task.name} cancelled: {e}")
    except Exception as e:
        logger.error("Task raised unexpectedly", task=task.name, error=str(e))
        result = JobResult(
            success=False,
            message=f"{task.name} failed: {e}",
            error_traceback=traceback.format_exc(),
        )
    if result is None:
        logger.error("Task returned no result", task=task.name)
        return None
    result.name = result.name or task.name
    result.start_time = result.start_time or started
    result.end_time = result.end_time or datetime.now()
    result.warnings = result.warnings or context.get_warnings()
    return result


def _run_task_in_process(task: Task) -> JobResult | None:
    """Entry point for process workers; cancellation is by termination."""
    return run_task(task, JobContext())


class WorkerPool(ABC):
    """Bounded pool executing tasks concurrently."""

    kind: str = "abstract"

    def __init__(self, max_workers: int) -> None:
        self.max_workers = max_workers

    @abstractmethod
    def submit(self, task: Task, cancellation: CancellationToken) -> Future[JobResult]:
        """Submit a task and return a future for its result."""

    @abstractmethod
    def terminate(self) -> None:
        """Forcibly stop all work; used on timeout."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release the pool after all submitted work has finished."""

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            self.terminate()
        else:
            self.shutdown()


class ThreadWorkerPool(WorkerPool):
    """Thread based pool. Termination is cooperative via the cancellation token."""

    kind = "thread"

    def __init__(self, max_workers: int) -> None:
        super().__init__(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="winpeforge-job"
        )
        self._tokens: list[CancellationToken] = []

    def submit(self, task: Task, cancellation: CancellationToken) -> Future[JobResult | None]:
        self._tokens.append(cancellation)
        return self._executor.submit(run_task, task, JobContext(cancellation))

    def terminate(self) -> None:
        for token in self._tokens:
            token.cancel("terminated")
        self._executor.shutdown(wait=False, cancel_futures=True)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class ProcessWorkerPool(WorkerPool):
    """Process based pool. Termination kills the worker processes."""

    kind = "process"

    def __init__(self, max_workers: int) -> None:
        super().__init__(max_workers)
        self._pool = multiprocessing.get_context("spawn").Pool(processes=max_workers)

    def submit(self, task: Task, cancellation: CancellationToken) -> Future[JobResult]:
        future: Future[JobResult] = Future()
        future.set_running_or_notify_cancel()
        self._pool.apply_async(
            _run_task_in_process,
            (task,),
            callback=future.set_result,
            error_callback=future.set_exception,
        )
        return future

    def terminate(self) -> None:
        self._pool.terminate()
        self._pool.join()

    def shutdown(self) -> None:
        self._pool.close()
        self._pool.join()


def threads_available() -> bool:
    """Capability check for thread based workers."""
    return sys.platform not in ("emscripten", "wasi")


def select_worker_pool(max_workers: int, preferred: str = "thread") -> WorkerPool:
    """Pick the worker pool implementation once, at pipeline start."""
    if preferred == "thread" and threads_available():
        pool: WorkerPool = ThreadWorkerPool(max_workers)
    else:
        pool = ProcessWorkerPool(max_workers)
    logger.debug("Worker pool selected", kind=pool.kind, max_workers=max_workers)
    return pool
