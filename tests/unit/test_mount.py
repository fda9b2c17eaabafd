"""
Tests for winpeforge.imaging.mount module.
"""

from pathlib import Path

import pytest

from conftest import FakeBackend
from winpeforge.core.context import BuildContext
from winpeforge.core.errors import (
    MountPreconditionError,
    OperationCancelledError,
    ValidationError,
    WimProcessingError,
)
from winpeforge.core.models import MountState
from winpeforge.imaging.mount import ImageMountService

IN_USE = "Error: 0x80070020 The process cannot access the file because it is being used by another process."
ALREADY_MOUNTED = "Error: 0xc1420127 The specified image in the specified wim is already mounted."


@pytest.fixture
def service(build_context: BuildContext) -> ImageMountService:
    return ImageMountService(build_context)


@pytest.fixture
def mount_dir(temp_dir: Path) -> Path:
    return temp_dir / "Mount_test"


class TestMount:
    """Tests for ImageMountService.mount."""

    def test_mount(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        image = service.mount(source_wim, mount_dir, index=1)

        assert image.state == MountState.MOUNTED
        assert image.mounted_at is not None
        assert service.is_mounted(mount_dir)
        assert fake_backend.mount_calls == [(source_wim.resolve(), mount_dir.resolve(), 1)]
        assert (mount_dir / "Windows" / "System32" / "config" / "SOFTWARE").exists()

    def test_missing_image(self, service: ImageMountService, temp_dir: Path, mount_dir: Path) -> None:
        with pytest.raises(ValidationError):
            service.mount(temp_dir / "missing.wim", mount_dir)

    def test_bad_index(self, service: ImageMountService, source_wim: Path, mount_dir: Path) -> None:
        with pytest.raises(ValidationError):
            service.mount(source_wim, mount_dir, index=0)

    def test_transient_failures_are_retried(
        self,
        service: ImageMountService,
        build_context: BuildContext,
        fake_backend: FakeBackend,
        source_wim: Path,
        mount_dir: Path,
    ) -> None:
        fake_backend.mount_errors = [IN_USE, IN_USE]

        service.mount(source_wim, mount_dir)

        assert len(fake_backend.mount_calls) == 3
        warnings = [
            c for c in build_context.logger.warning.call_args_list
            if c.args[0] == "Retrying operation after transient error"
        ]
        assert len(warnings) == 2

    def test_fatal_failure_is_not_retried(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        fake_backend.mount_errors = [ALREADY_MOUNTED]

        with pytest.raises(WimProcessingError, match="0xc1420127"):
            service.mount(source_wim, mount_dir)

        assert len(fake_backend.mount_calls) == 1
        assert not service.is_mounted(mount_dir)

    def test_gives_up_after_mount_retries(
        self,
        service: ImageMountService,
        build_context: BuildContext,
        fake_backend: FakeBackend,
        source_wim: Path,
        mount_dir: Path,
    ) -> None:
        retries = build_context.config.retry.mount_max_retries
        fake_backend.mount_errors = [IN_USE] * (retries + 1)

        with pytest.raises(WimProcessingError):
            service.mount(source_wim, mount_dir)

        assert len(fake_backend.mount_calls) == retries + 1


class TestMountPreconditions:
    """Mount directories must be free."""

    def test_already_mounted_here(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        service.mount(source_wim, mount_dir)
        with pytest.raises(MountPreconditionError):
            service.mount(source_wim, mount_dir)
        assert len(fake_backend.mount_calls) == 1

    def test_mounted_by_someone_else(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        fake_backend.mounted[mount_dir.resolve()] = source_wim
        with pytest.raises(MountPreconditionError, match="in use"):
            service.mount(source_wim, mount_dir)
        assert fake_backend.mount_calls == []

    def test_non_empty_directory(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        mount_dir.mkdir()
        (mount_dir / "leftover.txt").write_text("x")
        with pytest.raises(MountPreconditionError, match="not empty"):
            service.mount(source_wim, mount_dir)
        assert fake_backend.mount_calls == []


class TestDismount:
    """Tests for ImageMountService.dismount."""

    def test_discards_by_default(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        service.mount(source_wim, mount_dir)
        image = service.dismount(mount_dir)

        assert fake_backend.dismount_calls == [(mount_dir.resolve(), False)]
        assert image is not None
        assert image.state == MountState.UNMOUNTED
        assert not service.is_mounted(mount_dir)
        assert list(mount_dir.iterdir()) == []

    def test_save(
        self, service: ImageMountService, fake_backend: FakeBackend, source_wim: Path, mount_dir: Path
    ) -> None:
        service.mount(source_wim, mount_dir)
        service.dismount(mount_dir, save=True)
        assert fake_backend.dismount_calls == [(mount_dir.resolve(), True)]

    def test_nothing_mounted_is_not_an_error(
        self, service: ImageMountService, fake_backend: FakeBackend, mount_dir: Path
    ) -> None:
        assert service.dismount(mount_dir) is None
        assert len(fake_backend.dismount_calls) == 1

    def test_cancelled_run_raises(
        self, service: ImageMountService, build_context: BuildContext, source_wim: Path, mount_dir: Path
    ) -> None:
        service.mount(source_wim, mount_dir)
        build_context.cancellation.cancel("pipeline timeout")

        with pytest.raises(OperationCancelledError):
            service.dismount(mount_dir)

    def test_cleanup_dismount_ignores_cancellation(
        self,
        service: ImageMountService,
        build_context: BuildContext,
        fake_backend: FakeBackend,
        source_wim: Path,
        mount_dir: Path,
    ) -> None:
        service.mount(source_wim, mount_dir)
        build_context.cancellation.cancel("pipeline timeout")

        service.dismount(mount_dir, save=False, cancellable=False)

        assert fake_backend.dismount_calls == [(mount_dir.resolve(), False)]
        assert fake_backend.mounted == {}
