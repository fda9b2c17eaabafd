"""
WinPEForge locking primitives.

FileLock guards a single artifact with an exclusively created ``.lock`` file.
CriticalSection is a named mutex shared by threads of one process and by
concurrent pipeline processes on the same machine. Every wait is bounded by a
timeout so a crashed holder cannot wedge a build.
"""

from __future__ import annotations

import json
import os
import re
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from winpeforge.core.errors import ResourceBusyError
from winpeforge.core.logging import get_logger

logger = get_logger(__name__)

COPY_SECTION = "WinPE_CustomizeCopy"
REGISTRY_SECTION = "WinPE_CustomizeRegistry"

_section_locks: dict[str, threading.Lock] = {}
_section_locks_guard = threading.Lock()


class FileLock:
    """Lock represented by the existence of a file created with O_EXCL."""

    def __init__(self, path: Path, timeout: float = 30.0, poll_interval: float = 0.05) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._held = False
        self._token: str | None = None

    @property
    def is_held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise ResourceBusyError(
                        f"Timed out after {self.timeout}s waiting for lock {self.path}",
                        context={"lock_path": str(self.path), "holder": self._read_owner()},
                    ) from None
                time.sleep(self.poll_interval)
                continue

            self._token = uuid.uuid4().hex
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "token": self._token,
                        "pid": os.getpid(),
                        "thread": threading.get_ident(),
                        "acquired_at": datetime.now().isoformat(),
                    },
                    f,
                )
            self._held = True
            logger.debug("Lock acquired", lock_path=str(self.path))
            return

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        owner = self._read_owner()
        if owner is not None and owner.get("token") != self._token:
            logger.warning("Lock was taken over; leaving it in place", lock_path=str(self.path), holder=owner)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Lock file vanished before release", lock_path=str(self.path))
        logger.debug("Lock released", lock_path=str(self.path))

    def _read_owner(self, path: Path | None = None) -> dict[str, Any] | None:
        try:
            return json.loads((path or self.path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _break_if_stale(self) -> bool:
        """
        Remove the lock file when its recorded owner process is gone.

        The file is first renamed to a unique name, so only one waiter can
        claim it. If the claimed file turns out to be a fresh lock taken
        after the owner was read, it is linked back into place untouched.
        Returns True when the caller should retry creating the lock.
        """
        owner = self._read_owner()
        if not owner or "pid" not in owner:
            return False
        pid = owner["pid"]
        if psutil.pid_exists(pid):
            return False

        claimed = self.path.with_name(f"{self.path.name}.stale.{uuid.uuid4().hex}")
        try:
            os.replace(self.path, claimed)
        except FileNotFoundError:
            return True

        try:
            if self._read_owner(claimed) == owner:
                logger.warning("Breaking stale lock", lock_path=str(self.path), dead_pid=pid)
                return True
            try:
                os.link(claimed, self.path)
            except FileExistsError:
                logger.warning(
                    "Could not restore a live lock claimed as stale",
                    lock_path=str(self.path),
                    holder=self._read_owner(claimed),
                )
            return False
        finally:
            claimed.unlink(missing_ok=True)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def _section_lock(name: str) -> threading.Lock:
    with _section_locks_guard:
        lock = _section_locks.get(name)
        if lock is None:
            lock = threading.Lock()
            _section_locks[name] = lock
        return lock


def section_file_name(name: str) -> str:
    """File name used for a named section's cross-process lock."""
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name) + ".lock"


class CriticalSection:
    """
    Named mutual exclusion across threads and processes.

    Usage::

        with CriticalSection(REGISTRY_SECTION, config.paths.locks, timeout=30):
            ...
    """

    def __init__(self, name: str, lock_directory: Path, timeout: float = 30.0) -> None:
        self.name = name
        self.timeout = timeout
        self._thread_lock = _section_lock(name)
        self._file_lock = FileLock(Path(lock_directory) / section_file_name(name), timeout)
        self._owns_thread_lock = False

    def acquire(self) -> None:
        started = time.monotonic()
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise ResourceBusyError(
                f"Timed out after {self.timeout}s waiting for critical section {self.name}",
                context={"section": self.name},
            )
        self._owns_thread_lock = True
        remaining = max(0.0, self.timeout - (time.monotonic() - started))
        self._file_lock.timeout = remaining
        try:
            self._file_lock.acquire()
        except BaseException:
            self._owns_thread_lock = False
            self._thread_lock.release()
            raise
        logger.debug(
            "Entered critical section",
            section=self.name,
            waited_seconds=round(time.monotonic() - started, 3),
        )

    def release(self) -> None:
        try:
            self._file_lock.release()
        finally:
            if self._owns_thread_lock:
                self._owns_thread_lock = False
                self._thread_lock.release()
                logger.debug("Left critical section", section=self.name)

    def __enter__(self) -> CriticalSection:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


@contextmanager
def critical_section(name: str, lock_directory: Path, timeout: float = 30.0) -> Iterator[None]:
    """Function form of CriticalSection."""
    with CriticalSection(name, lock_directory, timeout):
        yield
