"""
PowerShell runtime package cache.

Archives are stored as ``PowerShell-{version}-win-x64.zip`` under the cache
root and trusted only when their SHA-256 matches the hash pinned in
configuration. Each artifact has a ``.lock`` file serializing every
read/validate/write sequence, and a ``.sha256`` sidecar holding the last
computed hash so large archives are not re-hashed on every build.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from winpeforge.core.errors import FileSystemError, ValidationError
from winpeforge.core.locking import FileLock
from winpeforge.core.logging import get_logger
from winpeforge.core.models import CachedPackage, validate_powershell_version, version_key

if TYPE_CHECKING:
    from winpeforge.core.config import PowerShellVersionsConfig
    from winpeforge.core.context import BuildContext

logger = get_logger(__name__)

ARTIFACT_TEMPLATE = "PowerShell-{version}-win-x64.zip"
ARTIFACT_PATTERN = re.compile(r"^PowerShell-(?P<version>\d+\.\d+\.\d+)-win-x64\.zip$")
_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def compute_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA-256 of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


class PackageCache:
    """Content-verified cache of PowerShell runtime archives."""

    def __init__(
        self,
        cache_root: Path,
        versions: PowerShellVersionsConfig,
        lock_timeout: float = 30.0,
    ) -> None:
        self.cache_root = Path(cache_root)
        self.versions = versions
        self.lock_timeout = lock_timeout

    @classmethod
    def from_context(cls, context: BuildContext) -> PackageCache:
        return cls(
            context.cache_root,
            context.config.powershell_versions,
            lock_timeout=context.config.timeouts.lock,
        )

    # ==================== Paths ====================

    @staticmethod
    def artifact_name(version: str) -> str:
        return ARTIFACT_TEMPLATE.format(version=version)

    def artifact_path(self, version: str) -> Path:
        return self.cache_root / self.artifact_name(version)

    def sidecar_path(self, version: str) -> Path:
        return self.cache_root / f"{self.artifact_name(version)}.sha256"

    def lock_path(self, version: str) -> Path:
        return self.cache_root / f"{self.artifact_name(version)}.lock"

    def lock(self, version: str) -> FileLock:
        return FileLock(self.lock_path(version), timeout=self.lock_timeout)

    # ==================== Lookup ====================

    def get(self, version: str) -> Path | None:
        """
        Return the cached archive for ``version`` if it verifies.

        A cached copy that does not match the pinned hash is deleted together
        with its sidecar and None is returned, forcing a fresh download.
        """
        version = validate_powershell_version(version)
        expected = self.versions.expected_hash(version)

        with self.lock(version):
            archive = self.artifact_path(version)
            if not archive.is_file():
                logger.debug("Package not cached", version=version)
                return None

            actual = self._cached_hash(version)
            if actual != expected:
                logger.warning(
                    "Cached package failed hash validation; discarding",
                    version=version,
                    expected=expected,
                    actual=actual,
                )
                self._delete_entry(version)
                return None

        logger.info("Using cached package", version=version, path=str(archive))
        return archive

    def lookup(self, version: str) -> CachedPackage | None:
        """Like ``get`` but returns the full CachedPackage record."""
        archive = self.get(version)
        if archive is None:
            return None
        return CachedPackage(
            version=version,
            archive_path=archive,
            sha256=self.versions.expected_hash(version),
            lock_path=self.lock_path(version),
        )

    def _cached_hash(self, version: str) -> str:
        """Sidecar hash, recomputed only when the archive is newer than it."""
        archive = self.artifact_path(version)
        sidecar = self.sidecar_path(version)

        if sidecar.is_file() and archive.stat().st_mtime <= sidecar.stat().st_mtime:
            stored = sidecar.read_text(encoding="ascii").strip().lower()
            if _HEX64.match(stored):
                return stored

        digest = compute_sha256(archive)
        sidecar.write_text(digest, encoding="ascii")
        return digest

    # ==================== Mutation ====================

    def store(self, version: str, source_path: Path) -> CachedPackage:
        """
        Copy ``source_path`` into the cache after verifying its hash.

        Raises ValidationError when the file does not match the pinned hash;
        nothing is left behind in that case.
        """
        version = validate_powershell_version(version)
        expected = self.versions.expected_hash(version)
        source_path = Path(source_path)
        if not source_path.is_file():
            raise FileSystemError(f"Package file not found: {source_path}")

        self.cache_root.mkdir(parents=True, exist_ok=True)
        archive = self.artifact_path(version)
        partial = self.cache_root / f".{archive.name}.partial"

        with self.lock(version):
            try:
                shutil.copyfile(source_path, partial)
                actual = compute_sha256(partial)
                if actual != expected:
                    raise ValidationError(
                        f"PowerShell {version} package hash mismatch",
                        context={"expected": expected, "actual": actual, "source": str(source_path)},
                    )
                os.replace(partial, archive)
                # Written after the archive so its mtime is never older.
                self.sidecar_path(version).write_text(actual, encoding="ascii")
            finally:
                partial.unlink(missing_ok=True)

        logger.info("Package cached", version=version, path=str(archive))
        return CachedPackage(
            version=version,
            archive_path=archive,
            sha256=actual,
            lock_path=self.lock_path(version),
        )

    def invalidate(self, version: str) -> bool:
        """Delete a cache entry. Returns True if anything was removed."""
        version = validate_powershell_version(version)
        with self.lock(version):
            return self._delete_entry(version)

    def _delete_entry(self, version: str) -> bool:
        removed = False
        for path in (self.artifact_path(version), self.sidecar_path(version)):
            if path.exists():
                path.unlink()
                removed = True
        return removed

    # ==================== Maintenance ====================

    def list_entries(self) -> list[CachedPackage]:
        """Cached archives, newest version first. ``sha256`` is the sidecar value or ''."""
        if not self.cache_root.is_dir():
            return []
        entries: list[CachedPackage] = []
        for path in self.cache_root.iterdir():
            match = ARTIFACT_PATTERN.match(path.name)
            if not match:
                continue
            version = match.group("version")
            sidecar = self.sidecar_path(version)
            digest = sidecar.read_text(encoding="ascii").strip() if sidecar.is_file() else ""
            entries.append(
                CachedPackage(
                    version=version,
                    archive_path=path,
                    sha256=digest,
                    lock_path=self.lock_path(version),
                )
            )
        return sorted(entries, key=lambda e: version_key(e.version), reverse=True)

    def prune(self, keep: int = 1) -> list[str]:
        """Remove all but the ``keep`` newest versions. Returns removed versions."""
        removed: list[str] = []
        for entry in self.list_entries()[max(keep, 0):]:
            if self.invalidate(entry.version):
                removed.append(entry.version)
        if removed:
            logger.info("Pruned package cache", removed=removed, kept=keep)
        return removed
