"""
Pytest configuration and fixtures for WinPEForge tests.
"""

import hashlib
import shutil
import sys
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Generator
from unittest.mock import Mock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from winpeforge.platform.base import CommandResult, ImagingBackend  # noqa: E402

PS_VERSION = "7.4.6"


class FakeBackend(ImagingBackend):
    """In-memory imaging backend that mimics DISM, reg.exe and oscdimg."""

    SUCCESS = "The operation completed successfully."

    def __init__(self) -> None:
        self.admin = True
        self.mounted: dict[Path, Path] = {}
        self.loaded_hives: dict[str, Path] = {}
        self.registry: dict[tuple[str, str | None], str] = {}
        self.mount_calls: list[tuple[Path, Path, int]] = []
        self.dismount_calls: list[tuple[Path, bool]] = []
        self.unload_calls: list[str] = []
        self.iso_calls: list[tuple[Path, Path, str]] = []
        self.mount_errors: list[str] = []
        self.load_hive_error: str | None = None
        self.set_value_error: str | None = None
        self.iso_exit_code = 0

    @property
    def name(self) -> str:
        return "fake"

    def is_admin(self) -> bool:
        return self.admin

    def mount_image(self, image_path: Path, mount_path: Path, index: int) -> tuple[bool, str]:
        self.mount_calls.append((image_path, mount_path, index))
        if self.mount_errors:
            return False, self.mount_errors.pop(0)

        system32 = mount_path / "Windows" / "System32"
        (system32 / "config").mkdir(parents=True, exist_ok=True)
        (system32 / "config" / "SOFTWARE").write_bytes(b"regf")
        (system32 / "startnet.cmd").write_text("wpeinit\r\n", encoding="utf-8")
        self.mounted[Path(mount_path)] = Path(image_path)
        return True, self.SUCCESS

    def dismount_image(self, mount_path: Path, save: bool) -> tuple[bool, str]:
        self.dismount_calls.append((Path(mount_path), save))
        if Path(mount_path) not in self.mounted:
            return False, "Error: 0xc1420115 The specified mount point has no mounted image."
        del self.mounted[Path(mount_path)]
        for child in list(Path(mount_path).iterdir()):
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
        return True, self.SUCCESS

    def get_mounted_images(self) -> list[Path]:
        return list(self.mounted)

    def load_hive(self, hive_file: Path, key: str) -> tuple[bool, str]:
        if self.load_hive_error:
            return False, self.load_hive_error
        self.loaded_hives[key] = Path(hive_file)
        return True, self.SUCCESS

    def unload_hive(self, key: str) -> tuple[bool, str]:
        self.unload_calls.append(key)
        if key not in self.loaded_hives:
            return False, "ERROR: The parameter is incorrect."
        del self.loaded_hives[key]
        return True, self.SUCCESS

    def set_registry_value(
        self,
        key: str,
        name: str | None,
        value: str,
        value_type: str = "REG_SZ",
    ) -> tuple[bool, str]:
        if self.set_value_error:
            return False, self.set_value_error
        self.registry[(key, name)] = value
        return True, self.SUCCESS

    def build_iso(
        self,
        source_tree: Path,
        output_file: Path,
        label: str,
        boot_files: Path | None = None,
    ) -> CommandResult:
        self.iso_calls.append((Path(source_tree), Path(output_file), label))
        if self.iso_exit_code != 0:
            return CommandResult(self.iso_exit_code, "", "ERROR: Could not open boot sector", "oscdimg")
        files = sorted(str(p.relative_to(source_tree)) for p in Path(source_tree).rglob("*"))
        Path(output_file).write_text(f"{label}\n" + "\n".join(files), encoding="utf-8")
        return CommandResult(0, "Done.", "", "oscdimg")


class FakeResponse:
    """Streaming response stand-in for requests.Response."""

    def __init__(self, status_code: int = 200, content: bytes = b"") -> None:
        self.status_code = status_code
        self.content = content

    def iter_content(self, chunk_size: int = 1) -> Generator[bytes, None, None]:
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args: Any) -> None:
        pass


class FakeSession:
    """requests.Session stand-in returning queued responses or raising errors."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append(url)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


def build_runtime_zip(path: Path) -> str:
    """Write a minimal PowerShell runtime archive and return its SHA-256."""
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("pwsh.exe", b"MZ fake pwsh")
        zf.writestr("pwsh.dll", b"fake dll")
        zf.writestr("Modules/Microsoft.PowerShell.Utility/Utility.psd1", "@{}")
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def runtime_zip(temp_dir: Path) -> tuple[Path, str]:
    """A PowerShell runtime archive and its hash."""
    source = temp_dir / "source"
    source.mkdir()
    archive = source / f"PowerShell-{PS_VERSION}-win-x64.zip"
    return archive, build_runtime_zip(archive)


@pytest.fixture
def sample_config(temp_dir: Path, runtime_zip: tuple[Path, str]) -> "WinPEForgeConfig":
    """Create a sample configuration for testing."""
    from winpeforge.core.config import (
        JobsConfig,
        LoggingConfig,
        PathsConfig,
        PowerShellVersionsConfig,
        RetryConfig,
        TimeoutsConfig,
        WinPEForgeConfig,
    )

    _, digest = runtime_zip
    root = temp_dir / "winpeforge"
    config = WinPEForgeConfig(
        logging=LoggingConfig(log_directory=root / "logs", file_enabled=False, console_enabled=False),
        paths=PathsConfig(
            cache=root / "cache",
            temp_root=root / "tmp",
            locks=root / "locks",
            reports=root / "reports",
        ),
        timeouts=TimeoutsConfig(lock=5.0, job=60, pipeline=120),
        retry=RetryConfig(base_delay=0.0, mount_base_delay=0.0),
        jobs=JobsConfig(max_workers=2),
        powershell_versions=PowerShellVersionsConfig(default=PS_VERSION, hashes={PS_VERSION: digest}),
    )
    config.ensure_directories()
    return config


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def build_context(sample_config: "WinPEForgeConfig", fake_backend: FakeBackend) -> "BuildContext":
    """BuildContext over the fake backend with a mock logger."""
    from winpeforge.core.context import BuildContext

    return BuildContext(sample_config, fake_backend, logger=Mock())


@pytest.fixture
def source_wim(temp_dir: Path) -> Path:
    wim = temp_dir / "images" / "boot.wim"
    wim.parent.mkdir(parents=True)
    wim.write_bytes(b"MSWIM\x00\x00\x00" + b"\x00" * 1024)
    return wim


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
