"""
WinPEForge Runtime - PowerShell package cache, download and injection.
"""

from winpeforge.runtime.cache import PackageCache
from winpeforge.runtime.download import PackageDownloader, PackageResolver
from winpeforge.runtime.injector import RuntimeInjector
from winpeforge.runtime.registry import offline_hive
from winpeforge.runtime.startnet import StartnetEditor

__all__ = [
    "PackageCache",
    "PackageDownloader",
    "PackageResolver",
    "RuntimeInjector",
    "StartnetEditor",
    "offline_hive",
]
