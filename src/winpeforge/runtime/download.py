"""
PowerShell runtime download and package resolution.

Downloads are HTTPS only, negotiated with TLS 1.2 or newer, streamed to a
partial file and retried with the same RetryExecutor policy used for the
imaging tools. PackageResolver ties the download to the verified cache.
"""

from __future__ import annotations

import ssl
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests
from requests.adapters import HTTPAdapter

from winpeforge.core.errors import ConfigurationError, DownloadError, OperationCancelledError
from winpeforge.core.logging import OperationLogger, get_logger
from winpeforge.core.models import CachedPackage, validate_powershell_version
from winpeforge.runtime.cache import PackageCache

if TYPE_CHECKING:
    from winpeforge.core.context import BuildContext

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024
RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class TLS12Adapter(HTTPAdapter):
    """HTTP adapter refusing anything older than TLS 1.2."""

    def _context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        return ctx

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        kwargs["ssl_context"] = self._context()
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> Any:
        proxy_kwargs["ssl_context"] = self._context()
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def create_session() -> requests.Session:
    session = requests.Session()
    session.mount("https://", TLS12Adapter())
    session.headers["User-Agent"] = "winpeforge"
    return session


class PackageDownloader:
    """Fetches PowerShell runtime archives from the configured source."""

    def __init__(self, context: BuildContext, session: requests.Session | None = None) -> None:
        self.context = context
        self.session = session or create_session()

    def url_for(self, version: str) -> str:
        url = self.context.config.download_sources.powershell_url(version)
        if not url.lower().startswith("https://"):
            raise ConfigurationError(f"Refusing non-HTTPS download source: {url}")
        return url

    def download(self, version: str, destination: Path) -> Path:
        """Download ``version`` to ``destination`` and return the path."""
        version = validate_powershell_version(version)
        url = self.url_for(version)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".partial")
        timeout = (10, self.context.config.timeouts.download)

        def attempt() -> Path:
            try:
                with self.session.get(url, stream=True, timeout=timeout) as response:
                    if response.status_code in RETRYABLE_STATUS:
                        raise DownloadError(
                            f"Download of {url} returned HTTP {response.status_code}",
                            retryable=True,
                            context={"url": url, "status": response.status_code},
                        )
                    if response.status_code >= 400:
                        raise DownloadError(
                            f"Download of {url} returned HTTP {response.status_code}",
                            context={"url": url, "status": response.status_code},
                        )
                    with open(partial, "wb") as f:
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            if self.context.cancellation.is_cancelled:
                                raise OperationCancelledError(
                                    f"Download of {url} cancelled", context={"url": url}
                                )
                            if chunk:
                                f.write(chunk)
            except (requests.ConnectionError, requests.Timeout) as e:
                partial.unlink(missing_ok=True)
                raise DownloadError(
                    f"Network error downloading {url}: {e}",
                    retryable=True,
                    context={"url": url},
                ) from e
            except BaseException:
                partial.unlink(missing_ok=True)
                raise

            partial.replace(destination)
            return destination

        with OperationLogger("PowerShell download", logger, version=version, url=url) as op:
            executor = self.context.retry_executor()
            path = executor.execute(attempt, f"Download PowerShell {version}")
            op.update(size_bytes=path.stat().st_size)
        return path


class PackageResolver:
    """Ensures a verified runtime package is present in the cache."""

    def __init__(
        self,
        context: BuildContext,
        cache: PackageCache | None = None,
        downloader: PackageDownloader | None = None,
    ) -> None:
        self.context = context
        self.cache = cache or PackageCache.from_context(context)
        self.downloader = downloader or PackageDownloader(context)

    def ensure(self, version: str) -> CachedPackage:
        """Return a verified cached package, downloading it when needed."""
        version = validate_powershell_version(version)
        cached = self.cache.lookup(version)
        if cached is not None:
            return cached

        logger.info("Package not cached or invalid; downloading", version=version)
        self.context.config.paths.cache.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.context.config.paths.cache) as tmp:
            download = self.downloader.download(
                version, Path(tmp) / PackageCache.artifact_name(version)
            )
            return self.cache.store(version, download)
