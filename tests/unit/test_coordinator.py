"""
Tests for winpeforge.core.coordinator module.
"""

import threading
import time
from concurrent.futures import Future
from unittest.mock import Mock

import pytest

from winpeforge.core.coordinator import ParallelJobCoordinator
from winpeforge.core.errors import OperationTimeoutError, WimProcessingError
from winpeforge.core.job import (
    CancellationToken,
    JobContext,
    JobResult,
    Task,
    ThreadWorkerPool,
    WorkerPool,
)


class SleepTask(Task):
    """Sleeps in small steps, honoring cancellation."""

    def __init__(self, name: str, seconds: float = 0.0, succeed: bool = True) -> None:
        self.name = name
        self.seconds = seconds
        self.succeed = succeed
        self.thread_names: list[str] = []

    def run(self, context: JobContext) -> JobResult:
        self.thread_names.append(threading.current_thread().name)
        deadline = time.monotonic() + self.seconds
        while time.monotonic() < deadline:
            context.check_cancelled()
            time.sleep(0.01)
        return JobResult(success=self.succeed, message="ok" if self.succeed else "hive load failed")


class StuckTask(Task):
    """Blocks until released, never checking for cancellation."""

    def __init__(self, name: str, release: threading.Event) -> None:
        self.name = name
        self.release = release

    def run(self, context: JobContext) -> JobResult:
        self.release.wait(10)
        return JobResult(success=True, message="released")


class CrashingPool(WorkerPool):
    """Pool whose workers die without producing results."""

    kind = "crashing"

    def __init__(self, max_workers: int, outcome: object = None) -> None:
        super().__init__(max_workers)
        self.outcome = outcome
        self.terminated = False
        self.shut_down = False

    def submit(self, task: Task, cancellation: CancellationToken) -> Future:
        future: Future = Future()
        if isinstance(self.outcome, BaseException):
            future.set_exception(self.outcome)
        else:
            future.set_result(self.outcome)
        return future

    def terminate(self) -> None:
        self.terminated = True

    def shutdown(self) -> None:
        self.shut_down = True


class TestConstruction:
    @pytest.mark.parametrize("width", [0, 5, -1])
    def test_width_bounds(self, width: int) -> None:
        with pytest.raises(ValueError):
            ParallelJobCoordinator(max_workers=width)

    def test_empty_batch(self) -> None:
        assert ParallelJobCoordinator().run_all([], timeout=1) == []


class TestRunAll:
    """Tests for ParallelJobCoordinator.run_all."""

    def test_results_in_submission_order(self) -> None:
        jobs = [SleepTask("inject_runtime", 0.05), SleepTask("optimize_media", 0.01)]
        results = ParallelJobCoordinator(max_workers=2, log=Mock()).run_all(jobs, timeout=10)

        assert [r.name for r in results] == ["inject_runtime", "optimize_media"]
        assert all(r.success for r in results)

    def test_jobs_run_concurrently(self) -> None:
        jobs = [SleepTask("a", 0.3), SleepTask("b", 0.3)]
        started = time.monotonic()
        ParallelJobCoordinator(max_workers=2, log=Mock()).run_all(jobs, timeout=10)
        assert time.monotonic() - started < 0.55

    def test_failed_job_is_reported(self) -> None:
        jobs = [SleepTask("inject_runtime", succeed=False), SleepTask("optimize_media")]
        results = ParallelJobCoordinator(log=Mock()).run_all(jobs, timeout=10)
        assert [r.success for r in results] == [False, True]

    def test_pool_factory_receives_bounded_width(self) -> None:
        widths: list[int] = []

        def factory(width: int) -> WorkerPool:
            widths.append(width)
            return ThreadWorkerPool(width)

        coordinator = ParallelJobCoordinator(max_workers=4, pool_factory=factory, log=Mock())
        coordinator.run_all([SleepTask("a"), SleepTask("b")], timeout=10)
        assert widths == [2]

    @pytest.mark.parametrize("outcome", [None, RuntimeError("BrokenProcessPool")])
    def test_crashed_worker_becomes_failed_result(self, outcome: object) -> None:
        pools: list[CrashingPool] = []

        def factory(width: int) -> WorkerPool:
            pools.append(CrashingPool(width, outcome))
            return pools[-1]

        coordinator = ParallelJobCoordinator(pool_factory=factory, log=Mock())
        results = coordinator.run_all([SleepTask("inject_runtime")], timeout=5)

        assert len(results) == 1
        assert results[0].success is False
        assert results[0].crashed is True
        assert results[0].name == "inject_runtime"
        assert "returned no result" in results[0].message
        assert pools[0].shut_down is True


class TestTimeout:
    """Tests for the shared job timeout."""

    def test_timeout_cancels_and_raises(self) -> None:
        log = Mock()
        slow = SleepTask("inject_runtime", 30)
        fast = SleepTask("optimize_media", 0)
        parent = CancellationToken()
        coordinator = ParallelJobCoordinator(
            max_workers=2, cancellation=parent, termination_grace=2.0, log=log
        )

        started = time.monotonic()
        with pytest.raises(OperationTimeoutError) as exc_info:
            coordinator.run_all([slow, fast], timeout=0.2)

        assert time.monotonic() - started < 5
        assert exc_info.value.context["unfinished"] == ["inject_runtime"]
        assert exc_info.value.context["still_running"] == []
        assert log.error.call_args.args[0] == "Parallel jobs timed out"
        # Only the per-batch token is cancelled
        assert parent.is_cancelled is False

    def test_reports_jobs_that_ignore_cancellation(self) -> None:
        log = Mock()
        release = threading.Event()
        stuck = StuckTask("inject_runtime", release)
        coordinator = ParallelJobCoordinator(max_workers=2, termination_grace=0.1, log=log)

        try:
            with pytest.raises(OperationTimeoutError) as exc_info:
                coordinator.run_all([stuck, SleepTask("optimize_media", 0)], timeout=0.2)
        finally:
            release.set()

        assert exc_info.value.context["still_running"] == ["inject_runtime"]
        log.warning.assert_called_once_with(
            "Jobs still running after termination grace",
            jobs=["inject_runtime"],
            grace_seconds=0.1,
        )
        assert log.error.call_args.kwargs["still_running"] == ["inject_runtime"]

    def test_parent_cancellation_reaches_jobs(self) -> None:
        parent = CancellationToken()
        coordinator = ParallelJobCoordinator(cancellation=parent, log=Mock())
        timer = threading.Timer(0.1, parent.cancel, args=("pipeline timeout",))
        timer.start()
        try:
            results = coordinator.run_all([SleepTask("inject_runtime", 30)], timeout=10)
        finally:
            timer.cancel()
        assert results[0].success is False
        assert "cancelled" in results[0].message


class TestRaiseForFailures:
    def test_all_succeeded(self) -> None:
        ParallelJobCoordinator.raise_for_failures([JobResult(success=True, name="a")])

    def test_names_failed_jobs(self) -> None:
        results = [
            JobResult(success=False, name="inject_runtime", message="hive load failed"),
            JobResult(success=True, name="optimize_media"),
        ]
        with pytest.raises(WimProcessingError, match="inject_runtime: hive load failed") as exc_info:
            ParallelJobCoordinator.raise_for_failures(results)
        assert exc_info.value.context["failed_jobs"] == ["inject_runtime"]
