"""
Windows Platform Backend Implementation.

Drives the Windows imaging tools:
- dism.exe for WIM mount/dismount
- reg.exe for offline registry hives
- oscdimg.exe (Windows ADK) for ISO authoring
"""

from __future__ import annotations

import ctypes
import subprocess
import time
from pathlib import Path

from winpeforge.core.logging import get_logger
from winpeforge.platform.base import CommandResult, ImagingBackend
from winpeforge.platform.windows.parsers import (
    parse_dism_error,
    parse_mounted_images,
    summarize_tool_output,
)

logger = get_logger(__name__)


class WindowsBackend(ImagingBackend):
    """Windows implementation of the imaging services."""

    DISM = "dism.exe"
    REG = "reg.exe"
    OSCDIMG = "oscdimg.exe"

    def __init__(
        self,
        mount_timeout: int = 600,
        dismount_timeout: int = 600,
        iso_timeout: int = 1800,
        oscdimg_path: Path | None = None,
    ) -> None:
        self.mount_timeout = mount_timeout
        self.dismount_timeout = dismount_timeout
        self.iso_timeout = iso_timeout
        self.oscdimg = str(oscdimg_path) if oscdimg_path else self.OSCDIMG

    @property
    def name(self) -> str:
        return "windows"

    def is_admin(self) -> bool:
        try:
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except Exception:
            return False

    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run a system command."""
        logger.debug("Running command", command=command)
        start_time = time.time()

        startupinfo = None
        if hasattr(subprocess, "STARTUPINFO"):
            # Hide the console window of the child tool
            startupinfo = subprocess.STARTUPINFO()
            startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
            startupinfo.wShowWindow = subprocess.SW_HIDE

        try:
            result = subprocess.run(
                command,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
                startupinfo=startupinfo,
            )
            duration = time.time() - start_time

            cmd_result = CommandResult(
                returncode=result.returncode,
                stdout=result.stdout if capture_output else "",
                stderr=result.stderr if capture_output else "",
                command=command,
                duration_seconds=duration,
            )

            if check and result.returncode != 0:
                logger.warning(
                    "Command failed",
                    command=command,
                    returncode=result.returncode,
                    stderr=result.stderr[:500] if result.stderr else "",
                )

            return cmd_result
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=timeout,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

    def _tool_failure(self, action: str, result: CommandResult) -> str:
        code = parse_dism_error(result.output)
        summary = summarize_tool_output(result.output)
        if code:
            return f"{action} failed ({code}): {summary}"
        return f"{action} failed (exit {result.returncode}): {summary}"

    # ==================== Image Mounting Service ====================

    def mount_image(self, image_path: Path, mount_path: Path, index: int) -> tuple[bool, str]:
        result = self.run_command(
            [
                self.DISM,
                "/Mount-Image",
                f"/ImageFile:{image_path}",
                f"/Index:{index}",
                f"/MountDir:{mount_path}",
            ],
            timeout=self.mount_timeout,
        )
        if not result.success:
            return False, self._tool_failure("DISM mount", result)
        return True, f"Mounted {image_path} index {index} at {mount_path}"

    def dismount_image(self, mount_path: Path, save: bool) -> tuple[bool, str]:
        mode = "/Commit" if save else "/Discard"
        result = self.run_command(
            [self.DISM, "/Unmount-Image", f"/MountDir:{mount_path}", mode],
            timeout=self.dismount_timeout,
        )
        if not result.success:
            return False, self._tool_failure("DISM dismount", result)
        return True, f"Dismounted {mount_path} ({'saved' if save else 'discarded'})"

    def get_mounted_images(self) -> list[Path]:
        result = self.run_command([self.DISM, "/Get-MountedImageInfo"], check=False)
        if not result.success:
            logger.warning("Could not query mounted images", error=result.stderr[:200])
            return []
        return [image["mount_dir"] for image in parse_mounted_images(result.stdout)]

    # ==================== Offline Registry ====================

    def load_hive(self, hive_file: Path, key: str) -> tuple[bool, str]:
        result = self.run_command([self.REG, "load", key, str(hive_file)])
        if not result.success:
            return False, f"reg load {key} failed: {summarize_tool_output(result.output)}"
        return True, f"Loaded {hive_file} at {key}"

    def unload_hive(self, key: str) -> tuple[bool, str]:
        result = self.run_command([self.REG, "unload", key])
        if not result.success:
            return False, f"reg unload {key} failed: {summarize_tool_output(result.output)}"
        return True, f"Unloaded {key}"

    def set_registry_value(
        self,
        key: str,
        name: str | None,
        value: str,
        value_type: str = "REG_SZ",
    ) -> tuple[bool, str]:
        command = [self.REG, "add", key]
        command += ["/ve"] if name is None else ["/v", name]
        command += ["/t", value_type, "/d", value, "/f"]
        result = self.run_command(command)
        if not result.success:
            return False, f"reg add {key} failed: {summarize_tool_output(result.output)}"
        return True, f"Set {key}\\{name or '(Default)'}"

    # ==================== ISO Build Service ====================

    def _boot_data_argument(self, source_tree: Path, boot_files: Path | None) -> str | None:
        search_roots = [boot_files] if boot_files else []
        search_roots.append(source_tree)

        def find(*candidates: str) -> Path | None:
            for root in search_roots:
                for candidate in candidates:
                    path = root / candidate
                    if path.exists():
                        return path
            return None

        bios = find("etfsboot.com", "boot/etfsboot.com")
        uefi = find("efisys.bin", "efi/microsoft/boot/efisys.bin")

        entries = []
        if bios:
            entries.append(f"p0,e,b{bios}")
        if uefi:
            entries.append(f"pEF,e,b{uefi}")
        if not entries:
            return None
        return f"-bootdata:{len(entries)}#" + "#".join(entries)

    def build_iso(
        self,
        source_tree: Path,
        output_file: Path,
        label: str,
        boot_files: Path | None = None,
    ) -> CommandResult:
        command = [self.oscdimg, "-m", "-o", "-u2", "-udfver102", f"-l{label}"]
        boot_data = self._boot_data_argument(source_tree, boot_files)
        if boot_data:
            command.append(boot_data)
        else:
            logger.warning("No boot sector files found; ISO will not be bootable", source=str(source_tree))
        command += [str(source_tree), str(output_file)]
        return self.run_command(command, timeout=self.iso_timeout)
