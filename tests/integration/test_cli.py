"""
Tests for the winpeforge command-line interface.
"""

import json
import os
import time
from collections import namedtuple
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import PS_VERSION, FakeBackend
from winpeforge import __version__
from winpeforge.cli.main import cli
from winpeforge.core.config import WinPEForgeConfig
from winpeforge.runtime.cache import PackageCache

pytestmark = pytest.mark.integration

DiskUsage = namedtuple("DiskUsage", "total used free percent")


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(sample_config: WinPEForgeConfig, temp_dir: Path) -> Path:
    path = temp_dir / "config.json"
    sample_config.save(path)
    return path


@pytest.fixture
def cache(sample_config: WinPEForgeConfig) -> PackageCache:
    return PackageCache(sample_config.paths.cache, sample_config.powershell_versions)


@pytest.fixture
def cli_backend(fake_backend: FakeBackend, mocker) -> FakeBackend:
    mocker.patch("winpeforge.cli.main.get_imaging_backend", return_value=fake_backend)
    mocker.patch(
        "winpeforge.core.safety.psutil.disk_usage",
        return_value=DiskUsage(10 * 1024**4, 0, 10 * 1024**4, 0.0),
    )
    return fake_backend


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestBuildCommand:
    """Tests for ``winpeforge build``."""

    def test_build_json(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
        cli_backend: FakeBackend,
        source_wim: Path,
        temp_dir: Path,
    ) -> None:
        cache.store(PS_VERSION, runtime_zip[0])
        output = temp_dir / "out.iso"

        result = runner.invoke(
            cli,
            ["-c", str(config_file), "--json", "build", str(source_wim), str(output), "--yes"],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["success"] is True
        assert data["state"] == "CLEANED"
        assert data["iso_size_bytes"] > 0
        assert [job["name"] for job in data["job_results"]] == ["inject_runtime", "optimize_media"]
        assert output.exists()

    def test_build_failure_exit_code(
        self,
        runner: CliRunner,
        config_file: Path,
        cli_backend: FakeBackend,
        source_wim: Path,
        temp_dir: Path,
    ) -> None:
        cli_backend.admin = False

        result = runner.invoke(
            cli,
            ["-c", str(config_file), "--json", "build", str(source_wim), str(temp_dir / "out.iso"), "-y"],
        )

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["error_category"] == "PERMISSION"

    def test_build_rejects_bad_instance_id(
        self,
        runner: CliRunner,
        config_file: Path,
        cli_backend: FakeBackend,
        source_wim: Path,
        temp_dir: Path,
    ) -> None:
        result = runner.invoke(
            cli,
            [
                "-c", str(config_file),
                "build", str(source_wim), str(temp_dir / "out.iso"),
                "--instance-id", "not-a-uuid", "--yes",
            ],
        )

        assert result.exit_code == 1
        assert "VALIDATION" in result.output
        assert cli_backend.mount_calls == []

    def test_build_declined(
        self,
        runner: CliRunner,
        config_file: Path,
        cli_backend: FakeBackend,
        source_wim: Path,
        temp_dir: Path,
    ) -> None:
        result = runner.invoke(
            cli,
            ["-c", str(config_file), "build", str(source_wim), str(temp_dir / "out.iso")],
            input="n\n",
        )

        assert result.exit_code == 1
        assert "Build cancelled" in result.output
        assert cli_backend.mount_calls == []

    def test_build_missing_wim(self, runner: CliRunner, config_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(
            cli,
            ["-c", str(config_file), "build", str(temp_dir / "missing.wim"), str(temp_dir / "out.iso")],
        )
        assert result.exit_code == 2

    def test_unsupported_platform(
        self, runner: CliRunner, config_file: Path, source_wim: Path, temp_dir: Path, mocker
    ) -> None:
        mocker.patch(
            "winpeforge.cli.main.get_imaging_backend",
            side_effect=RuntimeError("Imaging operations require Windows"),
        )

        result = runner.invoke(
            cli,
            ["-c", str(config_file), "build", str(source_wim), str(temp_dir / "out.iso"), "--yes"],
        )

        assert result.exit_code == 1
        assert "require Windows" in result.output


class TestCacheCommands:
    """Tests for ``winpeforge cache``."""

    def test_list_empty(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["-c", str(config_file), "--json", "cache", "list"])
        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_list(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
    ) -> None:
        archive, digest = runtime_zip
        cache.store(PS_VERSION, archive)

        result = runner.invoke(cli, ["-c", str(config_file), "--json", "cache", "list"])

        assert result.exit_code == 0
        entries = json.loads(result.output)
        assert len(entries) == 1
        assert entries[0]["version"] == PS_VERSION
        assert entries[0]["sha256"] == digest

    def test_list_table(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
    ) -> None:
        cache.store(PS_VERSION, runtime_zip[0])
        result = runner.invoke(cli, ["-c", str(config_file), "cache", "list"])
        assert result.exit_code == 0
        assert PS_VERSION in result.output

    def test_verify(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
    ) -> None:
        cache.store(PS_VERSION, runtime_zip[0])

        result = runner.invoke(cli, ["-c", str(config_file), "--json", "cache", "verify", PS_VERSION])

        assert result.exit_code == 0
        assert json.loads(result.output)["valid"] is True

    def test_verify_corrupt_package(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
    ) -> None:
        cache.store(PS_VERSION, runtime_zip[0])
        cache.artifact_path(PS_VERSION).write_bytes(b"tampered")
        future = time.time() + 60
        os.utime(cache.artifact_path(PS_VERSION), (future, future))

        result = runner.invoke(cli, ["-c", str(config_file), "cache", "verify", PS_VERSION])

        assert result.exit_code == 1
        assert not cache.artifact_path(PS_VERSION).exists()

    def test_verify_unpinned(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["-c", str(config_file), "cache", "verify", "7.9.0"])
        assert result.exit_code == 1
        assert "CONFIGURATION" in result.output

    def test_purge(
        self,
        runner: CliRunner,
        config_file: Path,
        cache: PackageCache,
        runtime_zip: tuple[Path, str],
    ) -> None:
        cache.store(PS_VERSION, runtime_zip[0])

        result = runner.invoke(cli, ["-c", str(config_file), "--json", "cache", "purge"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"removed": [PS_VERSION], "kept": 0}
        assert cache.list_entries() == []


class TestConfigCommands:
    """Tests for ``winpeforge config``."""

    def test_show_json(self, runner: CliRunner, config_file: Path, sample_config: WinPEForgeConfig) -> None:
        result = runner.invoke(cli, ["-c", str(config_file), "--json", "config", "show"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["powershell_versions"]["default"] == PS_VERSION
        assert data["jobs"]["max_workers"] == sample_config.jobs.max_workers

    def test_init(self, runner: CliRunner, config_file: Path, temp_dir: Path) -> None:
        target = temp_dir / "new" / "config.json"

        result = runner.invoke(cli, ["-c", str(config_file), "config", "init", str(target)])

        assert result.exit_code == 0
        assert WinPEForgeConfig.load(target).iso.label == "WINPE_PWSH7"

    def test_init_refuses_overwrite(self, runner: CliRunner, config_file: Path) -> None:
        before = config_file.read_text(encoding="utf-8")

        result = runner.invoke(cli, ["-c", str(config_file), "config", "init", str(config_file)])

        assert result.exit_code == 1
        assert config_file.read_text(encoding="utf-8") == before

    def test_init_force(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            cli, ["-c", str(config_file), "config", "init", str(config_file), "--force"]
        )
        assert result.exit_code == 0
        assert WinPEForgeConfig.load(config_file).powershell_versions.default != ""
