"""Package feed metadata module.

This module handles:
- Locating the release metadata package in the falter feed
- Extracting the release file from the nested package archive
- Parsing release and OpenWrt base version
"""

from falter_imagegen.feed.config import parse_release_file, resolve_release

__all__ = ["parse_release_file", "resolve_release"]
