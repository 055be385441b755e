"""Remote directory listing module.

This module handles:
- Listing entries of HTML or plain-text directory indexes
- Discovering targets and subtargets of an OpenWrt release
"""

from falter_imagegen.remote.index import (
    list_entries,
    list_subtargets,
    list_targets,
)

__all__ = ["list_entries", "list_subtargets", "list_targets"]
