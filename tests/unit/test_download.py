"""
Tests for winpeforge.runtime.download module.
"""

import ssl
from pathlib import Path

import pytest
import requests

from conftest import PS_VERSION, FakeResponse, FakeSession
from winpeforge.core.context import BuildContext
from winpeforge.core.errors import (
    ConfigurationError,
    DownloadError,
    OperationCancelledError,
    ValidationError,
)
from winpeforge.runtime.cache import PackageCache
from winpeforge.runtime.download import (
    PackageDownloader,
    PackageResolver,
    TLS12Adapter,
    create_session,
)


class TestSession:
    def test_https_uses_tls12_adapter(self) -> None:
        session = create_session()
        assert isinstance(session.get_adapter("https://github.com/x"), TLS12Adapter)
        assert session.headers["User-Agent"] == "winpeforge"

    def test_minimum_tls_version(self) -> None:
        assert TLS12Adapter()._context().minimum_version == ssl.TLSVersion.TLSv1_2


class TestPackageDownloader:
    """Tests for PackageDownloader."""

    def test_url(self, build_context: BuildContext) -> None:
        url = PackageDownloader(build_context, session=FakeSession()).url_for(PS_VERSION)
        assert url.startswith("https://")
        assert f"v{PS_VERSION}" in url

    def test_refuses_plain_http(self, build_context: BuildContext) -> None:
        build_context.config.download_sources.powershell = "http://mirror/PowerShell-{version}.zip"
        with pytest.raises(ConfigurationError):
            PackageDownloader(build_context, session=FakeSession()).url_for(PS_VERSION)

    def test_download(self, build_context: BuildContext, temp_dir: Path) -> None:
        session = FakeSession(FakeResponse(200, b"zip-bytes" * 100))
        destination = temp_dir / "dl" / "pwsh.zip"

        result = PackageDownloader(build_context, session=session).download(PS_VERSION, destination)

        assert result == destination
        assert destination.read_bytes() == b"zip-bytes" * 100
        assert not destination.with_name("pwsh.zip.partial").exists()
        assert len(session.requests) == 1

    def test_retries_transient_status(self, build_context: BuildContext, temp_dir: Path) -> None:
        session = FakeSession(FakeResponse(503), FakeResponse(429), FakeResponse(200, b"ok"))
        destination = temp_dir / "pwsh.zip"

        PackageDownloader(build_context, session=session).download(PS_VERSION, destination)

        assert len(session.requests) == 3
        assert destination.read_bytes() == b"ok"

    def test_retries_connection_errors(self, build_context: BuildContext, temp_dir: Path) -> None:
        session = FakeSession(requests.ConnectionError("reset"), FakeResponse(200, b"ok"))
        PackageDownloader(build_context, session=session).download(PS_VERSION, temp_dir / "pwsh.zip")
        assert len(session.requests) == 2

    def test_not_found_is_not_retried(self, build_context: BuildContext, temp_dir: Path) -> None:
        session = FakeSession(FakeResponse(404))
        with pytest.raises(DownloadError, match="HTTP 404") as exc_info:
            PackageDownloader(build_context, session=session).download(PS_VERSION, temp_dir / "pwsh.zip")
        assert exc_info.value.context["status"] == 404
        assert len(session.requests) == 1

    def test_gives_up(self, build_context: BuildContext, temp_dir: Path) -> None:
        session = FakeSession(requests.Timeout("slow"))
        destination = temp_dir / "pwsh.zip"
        with pytest.raises(DownloadError):
            PackageDownloader(build_context, session=session).download(PS_VERSION, destination)
        assert len(session.requests) == build_context.config.retry.max_retries + 1
        assert not destination.exists()

    def test_cancelled(self, build_context: BuildContext, temp_dir: Path) -> None:
        build_context.cancellation.cancel()
        session = FakeSession(FakeResponse(200, b"ok"))
        with pytest.raises(OperationCancelledError):
            PackageDownloader(build_context, session=session).download(PS_VERSION, temp_dir / "pwsh.zip")
        assert session.requests == []

    def test_invalid_version(self, build_context: BuildContext, temp_dir: Path) -> None:
        with pytest.raises(ValidationError):
            PackageDownloader(build_context, session=FakeSession()).download("7", temp_dir / "x.zip")


class TestPackageResolver:
    """Tests for PackageResolver."""

    def test_downloads_on_miss(self, build_context: BuildContext, runtime_zip: tuple[Path, str]) -> None:
        archive, digest = runtime_zip
        session = FakeSession(FakeResponse(200, archive.read_bytes()))
        resolver = PackageResolver(build_context, downloader=PackageDownloader(build_context, session=session))

        package = resolver.ensure(PS_VERSION)

        assert package.sha256 == digest
        assert package.archive_path.read_bytes() == archive.read_bytes()
        assert len(session.requests) == 1
        # Temporary download directory is gone
        assert [p.name for p in build_context.cache_root.iterdir() if p.is_dir()] == []

    def test_cache_hit_skips_download(self, build_context: BuildContext, runtime_zip: tuple[Path, str]) -> None:
        archive, _ = runtime_zip
        PackageCache.from_context(build_context).store(PS_VERSION, archive)
        session = FakeSession(FakeResponse(500))
        resolver = PackageResolver(build_context, downloader=PackageDownloader(build_context, session=session))

        resolver.ensure(PS_VERSION)

        assert session.requests == []

    def test_corrupt_cache_is_redownloaded(
        self, build_context: BuildContext, runtime_zip: tuple[Path, str]
    ) -> None:
        archive, digest = runtime_zip
        cache = PackageCache.from_context(build_context)
        cache.artifact_path(PS_VERSION).write_bytes(b"corrupted")
        session = FakeSession(FakeResponse(200, archive.read_bytes()))
        resolver = PackageResolver(
            build_context, cache=cache, downloader=PackageDownloader(build_context, session=session)
        )

        package = resolver.ensure(PS_VERSION)

        assert len(session.requests) == 1
        assert package.sha256 == digest
        assert cache.get(PS_VERSION) is not None

    def test_tampered_download_is_rejected(self, build_context: BuildContext) -> None:
        session = FakeSession(FakeResponse(200, b"evil payload"))
        cache = PackageCache.from_context(build_context)
        resolver = PackageResolver(
            build_context, cache=cache, downloader=PackageDownloader(build_context, session=session)
        )

        with pytest.raises(ValidationError, match="hash mismatch"):
            resolver.ensure(PS_VERSION)

        assert not cache.artifact_path(PS_VERSION).exists()
