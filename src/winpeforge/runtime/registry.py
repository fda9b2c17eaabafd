"""
Offline registry hive access.

An offline hive is loaded under a temporary key, edited, and unloaded again.
Unloading is attempted on every exit path: a hive left loaded keeps the
image's hive file locked and the image cannot be dismounted cleanly.
"""

from __future__ import annotations

import gc
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from winpeforge.core.errors import WimProcessingError
from winpeforge.core.logging import get_logger

if TYPE_CHECKING:
    from winpeforge.platform.base import ImagingBackend

logger = get_logger(__name__)

SOFTWARE_HIVE_KEY = r"HKLM\WinPEForge_SOFTWARE"
UNLOAD_ATTEMPTS = 3
UNLOAD_RETRY_DELAY = 1.0


def _unload(
    backend: ImagingBackend,
    key: str,
    loaded: bool,
    log: Any,
    raise_on_failure: bool,
    retry_delay: float,
) -> None:
    # Release any handles to the hive file held by this process
    gc.collect()
    log.info("Attempting offline hive unload", hive_key=key, loaded=loaded)

    attempts = UNLOAD_ATTEMPTS if loaded else 1
    message = ""
    for attempt in range(1, attempts + 1):
        ok, message = backend.unload_hive(key)
        if ok:
            log.info("Offline hive unloaded", hive_key=key)
            return
        if attempt < attempts:
            gc.collect()
            time.sleep(retry_delay)

    if not loaded:
        log.warning("No hive to unload", hive_key=key, detail=message)
        return

    log.error("Offline hive unload failed; image hive may stay locked", hive_key=key, error=message)
    if raise_on_failure:
        raise WimProcessingError(
            f"Failed to unload offline hive {key}: {message}",
            context={"hive_key": key},
        )


@contextmanager
def offline_hive(
    backend: ImagingBackend,
    hive_file: Path,
    key: str = SOFTWARE_HIVE_KEY,
    log: Any | None = None,
    unload_retry_delay: float = UNLOAD_RETRY_DELAY,
) -> Iterator[str]:
    """
    Load ``hive_file`` under ``key`` for the duration of the block.

    Yields the key to write under. An unload failure is raised only when the
    block itself succeeded, so it never masks the original error.
    """
    log = log or logger
    loaded = False
    try:
        if not Path(hive_file).is_file():
            raise WimProcessingError(
                f"Offline hive not found: {hive_file}",
                context={"hive_file": str(hive_file)},
            )
        ok, message = backend.load_hive(Path(hive_file), key)
        if not ok:
            raise WimProcessingError(message, context={"hive_file": str(hive_file), "hive_key": key})
        loaded = True
        log.info("Offline hive loaded", hive_file=str(hive_file), hive_key=key)
        yield key
    except BaseException:
        _unload(backend, key, loaded, log, raise_on_failure=False, retry_delay=unload_retry_delay)
        raise
    else:
        _unload(backend, key, loaded, log, raise_on_failure=True, retry_delay=unload_retry_delay)
