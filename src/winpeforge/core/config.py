"""
WinPEForge configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from winpeforge.core.errors import ConfigurationError

DEFAULT_HOME = Path.home() / ".winpeforge"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"

_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class PathsConfig(BaseModel):
    """Locations used by the build pipeline."""

    cache: Path = Field(default_factory=lambda: DEFAULT_HOME / "cache")
    temp_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "winpeforge"
    )
    locks: Path = Field(default_factory=lambda: DEFAULT_HOME / "locks")
    reports: Path = Field(default_factory=lambda: DEFAULT_HOME / "reports")
    boot_files: Path | None = None

    @field_validator("cache", "temp_root", "locks", "reports", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("boot_files", mode="before")
    @classmethod
    def expand_optional_path(cls, v: str | Path | None) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()


class TimeoutsConfig(BaseModel):
    """Timeouts in seconds."""

    mount: int = Field(default=600, ge=1)
    dismount: int = Field(default=600, ge=1)
    job: int = Field(default=1800, ge=1)
    download: int = Field(default=300, ge=1)
    lock: float = Field(default=30.0, gt=0)
    pipeline: int = Field(default=3600, ge=1)


class RetryConfig(BaseModel):
    """Retry policy for operations against external tooling."""

    max_retries: int = Field(default=3, ge=0, le=20)
    base_delay: float = Field(default=2.0, ge=0)
    mount_max_retries: int = Field(default=5, ge=0, le=20)
    mount_base_delay: float = Field(default=2.0, ge=0)


class JobsConfig(BaseModel):
    """Parallel customization job settings."""

    max_workers: int = Field(default=2, ge=1, le=4)
    worker_backend: Literal["thread", "process"] = "thread"


class PowerShellVersionsConfig(BaseModel):
    """Pinned PowerShell runtime versions and their archive hashes."""

    default: str = "7.5.1"
    hashes: dict[str, str] = Field(default_factory=dict)

    @field_validator("hashes")
    @classmethod
    def normalize_hashes(cls, v: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for version, digest in v.items():
            digest = digest.strip().lower()
            if not _SHA256_PATTERN.match(digest):
                raise ValueError(f"Invalid SHA-256 for PowerShell {version}: {digest!r}")
            normalized[version.strip()] = digest
        return normalized

    def expected_hash(self, version: str) -> str:
        """Return the pinned hash for a version or raise ConfigurationError."""
        digest = self.hashes.get(version)
        if digest is None:
            raise ConfigurationError(
                f"No pinned SHA-256 hash configured for PowerShell {version}",
                context={"version": version, "known_versions": sorted(self.hashes)},
            )
        return digest


class DownloadSourcesConfig(BaseModel):
    """Download URL templates. ``{version}`` is substituted."""

    powershell: str = (
        "https://github.com/PowerShell/PowerShell/releases/download/"
        "v{version}/PowerShell-{version}-win-x64.zip"
    )

    @field_validator("powershell")
    @classmethod
    def require_https(cls, v: str) -> str:
        if not v.lower().startswith("https://"):
            raise ValueError(f"Download source must use HTTPS: {v}")
        if "{version}" not in v:
            raise ValueError("Download source template must contain '{version}'")
        return v

    def powershell_url(self, version: str) -> str:
        return self.powershell.format(version=version)


class IsoConfig(BaseModel):
    """ISO assembly settings."""

    label: str = "WINPE_PWSH7"
    keep_languages: list[str] = Field(default_factory=lambda: ["en-us"])
    overwrite: bool = True

    @field_validator("keep_languages")
    @classmethod
    def lowercase_languages(cls, v: list[str]) -> list[str]:
        return [lang.strip().lower() for lang in v if lang.strip()]


class WinPEForgeConfig(BaseModel):
    """Main WinPEForge configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    powershell_versions: PowerShellVersionsConfig = Field(
        default_factory=PowerShellVersionsConfig
    )
    download_sources: DownloadSourcesConfig = Field(default_factory=DownloadSourcesConfig)
    iso: IsoConfig = Field(default_factory=IsoConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> WinPEForgeConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    data = json.load(f)
                return cls.model_validate(data)
            except (json.JSONDecodeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid configuration file {config_path}: {e}",
                    context={"path": str(config_path)},
                ) from e

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.paths.cache.mkdir(parents=True, exist_ok=True)
        self.paths.temp_root.mkdir(parents=True, exist_ok=True)
        self.paths.locks.mkdir(parents=True, exist_ok=True)
        self.paths.reports.mkdir(parents=True, exist_ok=True)

    def get_report_file(self, instance_id: str) -> Path:
        """Get path for a new build report file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.paths.reports / f"build_{timestamp}_{instance_id[:8]}.json"


def get_default_config() -> WinPEForgeConfig:
    """Get the default configuration."""
    return WinPEForgeConfig()


def load_config(config_path: Path | None = None) -> WinPEForgeConfig:
    """Load or create configuration."""
    config = WinPEForgeConfig.load(config_path)
    config.ensure_directories()
    return config
