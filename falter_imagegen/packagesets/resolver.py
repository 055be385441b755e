"""Packageset resolution.

A packageset identifier is either an explicit path to a packageset file
or the sentinel ``all``, which expands to the newest packageset files of
the active release found below the packageset directory.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from falter_imagegen.errors import NoPackagesetsForRelease, PackagesetNotFound

logger = logging.getLogger(__name__)

ALL_PACKAGESETS = "all"
PACKAGESET_SUFFIX = ".txt"
DEFAULT_MAX_PACKAGESETS = 3

# Snapshot and release-candidate builds reuse the stable packagesets
RELEASE_QUALIFIER_RE = re.compile(r"-(snapshot|rc\d*)$", re.IGNORECASE)


def strip_release_qualifier(release: str) -> str:
    """Strip a trailing '-snapshot' or '-rc<N>' qualifier from a release.

    Examples:
        '2.0-rc1' -> '2.0', '1.3-snapshot' -> '1.3', '1.2.3' -> '1.2.3'.
    """
    return RELEASE_QUALIFIER_RE.sub("", release)


def find_release_packagesets(
    packageset_dir: Path,
    release: str,
    limit: int = DEFAULT_MAX_PACKAGESETS,
) -> list[Path]:
    """Find the newest packageset files of a release.

    Args:
        packageset_dir: Root of the packageset tree.
        release: Release string (qualifiers are stripped).
        limit: Maximum number of files returned.

    Returns:
        Up to ``limit`` files, most recent first.
    """
    search_release = strip_release_qualifier(release)
    logger.debug(
        "Searching packagesets for release %s in %s", search_release, packageset_dir
    )

    if not packageset_dir.is_dir():
        return []

    matches = sorted(
        path
        for path in packageset_dir.rglob(f"*{PACKAGESET_SUFFIX}")
        if path.is_file()
        and search_release in path.relative_to(packageset_dir).as_posix()
    )
    newest = matches[-limit:] if limit > 0 else []
    return list(reversed(newest))


def resolve_packagesets(
    identifier: str,
    release: str,
    packageset_dir: Path,
    limit: int = DEFAULT_MAX_PACKAGESETS,
) -> list[Path]:
    """Resolve a packageset identifier to packageset files.

    Args:
        identifier: Path to a packageset file, or 'all'.
        release: Active release string.
        packageset_dir: Root of the packageset tree (used for 'all').
        limit: Maximum number of packagesets for 'all'.

    Returns:
        Ordered list of packageset paths.

    Raises:
        PackagesetNotFound: If an explicit path does not exist.
        NoPackagesetsForRelease: If 'all' matches nothing.
    """
    if identifier == ALL_PACKAGESETS:
        found = find_release_packagesets(packageset_dir, release, limit=limit)
        if not found:
            raise NoPackagesetsForRelease(strip_release_qualifier(release))
        logger.info(
            "Resolved %d packageset(s) for %s: %s",
            len(found),
            release,
            ", ".join(p.name for p in found),
        )
        return found

    path = Path(identifier)
    if not path.is_file():
        raise PackagesetNotFound(identifier)
    return [path]


__all__ = [
    "ALL_PACKAGESETS",
    "DEFAULT_MAX_PACKAGESETS",
    "PACKAGESET_SUFFIX",
    "find_release_packagesets",
    "resolve_packagesets",
    "strip_release_qualifier",
]
