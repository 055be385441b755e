"""Falter Image Generator - build-matrix orchestration for falter firmware.

This package drives the official OpenWrt Image Builder to produce falter
firmware images across targets, subtargets, packagesets and device profiles.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
