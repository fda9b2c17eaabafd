"""
Windows output parsers.

Parsers for DISM, reg.exe and oscdimg output.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

_DISM_ERROR = re.compile(r"Error:\s*(0x[0-9A-Fa-f]{8}|\d+)")
_PROGRESS_BAR = re.compile(r"^\[[=\s]*(\d+(\.\d+)?%)?[=\s]*\]$")
_MOUNT_FIELD = re.compile(r"^\s*(Mount Dir|Image File|Image Index|Mounted Read/Write|Status)\s*:\s*(.*)$")

_FIELD_NAMES = {
    "Mount Dir": "mount_dir",
    "Image File": "image_file",
    "Image Index": "index",
    "Mounted Read/Write": "read_write",
    "Status": "status",
}


def parse_mounted_images(output: str) -> list[dict[str, Any]]:
    """
    Parse ``dism /Get-MountedImageInfo`` output.

    Each mounted image is reported as a block starting with ``Mount Dir :``.
    """
    images: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for line in output.splitlines():
        match = _MOUNT_FIELD.match(line)
        if not match:
            continue

        key = _FIELD_NAMES[match.group(1)]
        value = match.group(2).strip()

        if key == "mount_dir":
            current = {"mount_dir": Path(value)}
            images.append(current)
            continue
        if current is None:
            continue

        if key == "index":
            current[key] = int(value) if value.isdigit() else None
        elif key == "read_write":
            current[key] = value.lower() == "yes"
        elif key == "image_file":
            current[key] = Path(value)
        else:
            current[key] = value

    return images


def parse_dism_error(output: str) -> str | None:
    """Extract the DISM error code (e.g. ``0x80070020``) from tool output."""
    match = _DISM_ERROR.search(output)
    if not match:
        return None
    code = match.group(1)
    if code.isdigit():
        return f"0x{int(code) & 0xFFFFFFFF:08x}"
    return code.lower()


def summarize_tool_output(output: str, max_lines: int = 6) -> str:
    """Keep the informative tail of noisy tool output for error messages."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    lines = [
        line
        for line in lines
        if not _PROGRESS_BAR.match(line) and not set(line) <= {"=", "-", ".", " "}
    ]
    return " | ".join(lines[-max_lines:])

