"""
startnet.cmd rewriting.

WinPE runs ``Windows\\System32\\startnet.cmd`` at boot. The rewritten script
keeps the original commands, extends PATH with the injected runtime and
starts PowerShell 7.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from winpeforge.core.errors import WimProcessingError
from winpeforge.core.logging import get_logger

logger = get_logger(__name__)

STARTNET_RELATIVE = Path("Windows") / "System32" / "startnet.cmd"
RUNTIME_DIR_IN_PE = r"X:\Windows\System32\PowerShell7"
MARKER = "REM winpeforge: PowerShell 7 runtime"
SCRIPT_ENCODING = "latin-1"


def render_startnet(original: str, runtime_dir: str = RUNTIME_DIR_IN_PE) -> str:
    """Return the new script text. Already rewritten scripts are returned unchanged."""
    if MARKER in original:
        return original

    lines = [line.rstrip() for line in original.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    if not any(line.strip().lower() == "wpeinit" for line in lines):
        lines.insert(1 if lines and lines[0].lower().startswith("@echo") else 0, "wpeinit")

    lines += [
        "",
        MARKER,
        f"set PATH=%PATH%;{runtime_dir}",
        f'start "PowerShell 7" /D X:\\ "{runtime_dir}\\pwsh.exe" -NoLogo -NoExit',
    ]
    return "\r\n".join(lines) + "\r\n"


class StartnetEditor:
    """Rewrites startnet.cmd inside a mounted image with backup/restore."""

    def __init__(self, mount_path: Path, runtime_dir: str = RUNTIME_DIR_IN_PE) -> None:
        self.script = Path(mount_path) / STARTNET_RELATIVE
        self.backup = self.script.with_name(self.script.name + ".bak")
        self.runtime_dir = runtime_dir

    def update(self) -> bool:
        """Rewrite the script. Returns False when it already launches the runtime."""
        # Scripts are in the console code page; latin-1 keeps every byte as is
        original = self.script.read_text(encoding=SCRIPT_ENCODING) if self.script.exists() else "wpeinit\r\n"
        content = render_startnet(original, self.runtime_dir)
        if content == original:
            logger.info("startnet.cmd already configured", path=str(self.script))
            return False

        had_original = self.script.exists()
        if had_original:
            shutil.copy2(self.script, self.backup)

        try:
            self.script.parent.mkdir(parents=True, exist_ok=True)
            with open(self.script, "w", encoding=SCRIPT_ENCODING, newline="") as f:
                f.write(content)
        except OSError as e:
            self.restore(had_original)
            raise WimProcessingError(
                f"Failed to write {self.script}: {e}",
                context={"path": str(self.script)},
            ) from e

        if had_original:
            self.backup.unlink(missing_ok=True)
        logger.info("startnet.cmd updated", path=str(self.script))
        return True

    def restore(self, had_original: bool = True) -> None:
        if had_original and self.backup.exists():
            shutil.copy2(self.backup, self.script)
            self.backup.unlink(missing_ok=True)
            logger.warning("startnet.cmd restored from backup", path=str(self.script))
        elif not had_original:
            self.script.unlink(missing_ok=True)
