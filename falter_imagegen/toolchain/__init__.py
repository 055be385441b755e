"""Toolchain (OpenWrt Image Builder) management module.

This module handles:
- Finding the Image Builder archive for a (target, subtarget)
- Conditional download into a persistent cache keyed by filename
- Extraction into the build workspace and local patching
- Feed repository and signing key installation
- Device profile discovery via `make info`
"""

from falter_imagegen.toolchain.cache import ToolchainCache, ToolchainHandle
from falter_imagegen.toolchain.catalog import (
    MakeInfoCatalog,
    ToolchainCatalog,
    install_feed_repository,
    install_signing_key,
)

__all__ = [
    "MakeInfoCatalog",
    "ToolchainCache",
    "ToolchainCatalog",
    "ToolchainHandle",
    "install_feed_repository",
    "install_signing_key",
]
