"""
WinPEForge retry execution.

Runs operations against external imaging tooling with exponential backoff and
jitter. Errors are classified as transient or fatal by matching their text
against known transient conditions; fatal errors propagate immediately.
"""

from __future__ import annotations

import random
import re
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from winpeforge.core.errors import (
    AdminPrivilegeError,
    ConfigurationError,
    MountPreconditionError,
    OperationCancelledError,
    OperationTimeoutError,
    ResourceBusyError,
    ValidationError,
    WinPEForgeError,
)
from winpeforge.core.job import CancellationToken
from winpeforge.core.logging import get_logger

T = TypeVar("T")
logger = get_logger(__name__)

TRANSIENT_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"being used by another process",
        r"file (is )?in use",
        r"sharing violation",
        r"access (is )?denied",
        r"device is not ready",
        r"timed out",
        r"time-?out",
        r"resource (is )?busy",
        r"device or resource busy",
        r"resource temporarily unavailable",
        r"try again",
        r"0x80070020",  # ERROR_SHARING_VIOLATION
        r"0x800700aa",  # ERROR_BUSY
        r"0x80070015",  # ERROR_NOT_READY
    )
)

# Errors that indicate a programming or precondition mistake. Never retried.
NON_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    TypeError,
    ValueError,
    AttributeError,
    KeyError,
    AssertionError,
    NotImplementedError,
    ValidationError,
    ConfigurationError,
    AdminPrivilegeError,
    MountPreconditionError,
    OperationCancelledError,
    ResourceBusyError,
)


def is_retryable_error(exc: BaseException) -> bool:
    """Return True when ``exc`` describes a transient condition."""
    if isinstance(exc, NON_RETRYABLE_TYPES):
        return False
    if isinstance(exc, WinPEForgeError) and exc.retryable:
        return True
    if isinstance(exc, (TimeoutError, subprocess.TimeoutExpired, OperationTimeoutError)):
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry limits and backoff shape.

    The delay before retry ``n`` is ``base_delay * multiplier ** (n - 1)``
    plus jitter. The multiplier is ``base_delay`` itself, except that it never
    drops below 2: a 0.5s base would otherwise shrink each delay and a 1s base
    would never grow.
    """

    max_retries: int = 3
    base_delay: float = 2.0
    jitter_range: tuple[float, float] = (-0.5, 0.5)

    @property
    def multiplier(self) -> float:
        return self.base_delay if self.base_delay >= 2.0 else 2.0

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based), jitter included."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        low, high = self.jitter_range
        jitter = (rng or random).uniform(low, high)
        return max(0.0, delay + delay * jitter)


class RetryExecutor:
    """Executes callables under a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        logger: Any | None = None,
        cancellation: CancellationToken | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.logger = logger or get_logger(__name__)
        self.cancellation = cancellation
        self._sleep = sleep
        self._rng = rng

    def execute(
        self,
        operation: Callable[[], T],
        operation_name: str,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or retries are exhausted.

        Raises the last underlying error once ``max_retries`` retries have
        failed, or immediately for errors that are not transient.
        """
        policy = RetryPolicy(
            max_retries=self.policy.max_retries if max_retries is None else max_retries,
            base_delay=self.policy.base_delay if base_delay is None else base_delay,
            jitter_range=self.policy.jitter_range,
        )
        attempt = 0

        while True:
            self._check_cancelled(operation_name)
            attempt += 1
            try:
                result = operation()
            except Exception as exc:
                if not is_retryable_error(exc):
                    self.logger.error(
                        "Operation failed with non-retryable error",
                        operation=operation_name,
                        attempt=attempt,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise

                if attempt > policy.max_retries:
                    self.logger.error(
                        "Operation failed after exhausting retries",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise

                delay = policy.delay_for(attempt, self._rng)
                self.logger.warning(
                    "Retrying operation after transient error",
                    operation=operation_name,
                    attempt=attempt,
                    max_retries=policy.max_retries,
                    delay_seconds=round(delay, 3),
                    error=str(exc),
                )
                self._wait(delay, operation_name)
                continue

            self.logger.info(
                "Operation succeeded",
                operation=operation_name,
                attempts=attempt,
            )
            return result

    def _check_cancelled(self, operation_name: str) -> None:
        if self.cancellation is not None and self.cancellation.is_cancelled:
            raise OperationCancelledError(
                f"{operation_name} cancelled",
                context={"operation": operation_name},
            )

    def _wait(self, delay: float, operation_name: str) -> None:
        if self.cancellation is None:
            self._sleep(delay)
            return
        if self.cancellation.wait(delay):
            self.logger.warning("Retry schedule abandoned after cancellation", operation=operation_name)
            raise OperationCancelledError(
                f"{operation_name} cancelled while waiting to retry",
                context={"operation": operation_name},
            )
