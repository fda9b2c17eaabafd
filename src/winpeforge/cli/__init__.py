"""
WinPEForge CLI Module.

Provides command-line interface for WinPEForge builds.
"""

from winpeforge.cli.main import cli, main

__all__ = ["main", "cli"]
