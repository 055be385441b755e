"""Build orchestration module.

This module handles:
- Running Image Builder `make image`
- Relocating artifacts into the firmwares/ output tree
- Iterating the (target, subtarget, packageset, device) build matrix
"""

# Access submodules directly: falter_imagegen.builds.matrix, etc.
