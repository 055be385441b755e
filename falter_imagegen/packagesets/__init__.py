"""Packageset module.

This module handles:
- Resolving packageset identifiers (explicit path or "all") to files
- Parsing packageset files into package lists
- Computing per-device package lists (low-flash omissions)
"""

from falter_imagegen.packagesets.packagelist import (
    OMITTED_LOW_FLASH_PACKAGES,
    DevicePackageListBuilder,
    FlashSizeLookup,
    Packageset,
    format_package_list,
    load_packageset,
    packageset_names,
)
from falter_imagegen.packagesets.resolver import (
    resolve_packagesets,
    strip_release_qualifier,
)

__all__ = [
    "OMITTED_LOW_FLASH_PACKAGES",
    "DevicePackageListBuilder",
    "FlashSizeLookup",
    "Packageset",
    "format_package_list",
    "load_packageset",
    "packageset_names",
    "resolve_packagesets",
    "strip_release_qualifier",
]
