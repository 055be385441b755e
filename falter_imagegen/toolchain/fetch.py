"""Image Builder archive fetch module.

This module handles:
- Locating the Image Builder archive below a target/subtarget URL
- Deriving the OpenWrt branch from the URL shape
- Conditional download into a cache keyed by filename (Last-Modified)
- Extraction and local patching of the Image Builder
"""

from __future__ import annotations

import email.utils
import logging
import os
import re
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from falter_imagegen.errors import ToolchainFetchFailed
from falter_imagegen.types import Release

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

SNAPSHOT_BRANCH = "snapshot"

TOOLCHAIN_ARCHIVE_RE = re.compile(
    r"^openwrt-imagebuilder-.+\.Linux-x86_64\.tar\.(xz|zst)$"
)
TOOLCHAIN_DIR_PREFIX = "openwrt-imagebuilder"

BRANCH_RE = re.compile(r"^(\d+\.\d+)")


@dataclass
class CachedArchive:
    """An Image Builder archive in the download cache.

    Attributes:
        url: Source URL.
        path: Path of the cached file.
        last_modified: Modification marker (POSIX time) of the cached copy.
        downloaded: Whether this fetch replaced the cached copy.
    """

    url: str
    path: Path
    last_modified: float | None
    downloaded: bool


def targets_url(openwrt_base_url: str, release: Release) -> str:
    """Return the ``targets/`` directory URL of a release's OpenWrt base."""
    base = openwrt_base_url.rstrip("/")
    if release.is_snapshot_base:
        return f"{base}/snapshots/targets/"
    return f"{base}/releases/{release.base_version}/targets/"


def derive_branch(url: str) -> str:
    """Derive the OpenWrt branch from a target/subtarget URL.

    ``.../releases/21.02.1/targets/...`` yields '21.02';
    ``.../snapshots/targets/...`` yields 'snapshot'.

    Raises:
        ToolchainFetchFailed: If the URL has neither shape.
    """
    segments = [s for s in urlparse(url).path.split("/") if s]
    if "snapshots" in segments:
        return SNAPSHOT_BRANCH
    if "releases" in segments:
        index = segments.index("releases")
        if index + 1 < len(segments):
            version = segments[index + 1]
            match = BRANCH_RE.match(version)
            return match.group(1) if match else version
    raise ToolchainFetchFailed(
        f"Cannot derive branch from URL: {url}",
        code="unknown_url_shape",
    )


def find_toolchain_archive(entries: list[str]) -> str:
    """Pick the single Image Builder archive from a directory listing.

    Raises:
        ToolchainFetchFailed: If no entry matches.
    """
    matches = [e for e in entries if TOOLCHAIN_ARCHIVE_RE.match(e)]
    if not matches:
        raise ToolchainFetchFailed(
            "No Image Builder archive found in listing",
            code="archive_not_found",
        )
    if len(matches) > 1:
        logger.warning("Multiple Image Builder archives found: %s", matches)
    return matches[0]


def _parse_http_date(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError):
        logger.debug("Unparseable Last-Modified header: %s", value)
        return None


def download_if_newer(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> CachedArchive:
    """Download ``url`` to ``dest_path`` unless the cached copy is current.

    The cached file's mtime holds the server's Last-Modified marker. It is
    sent as If-Modified-Since; a 304, or a Last-Modified not newer than the
    cached copy, keeps the cache untouched.

    Args:
        client: HTTPX client instance.
        url: Archive URL.
        dest_path: Cache path (keyed by filename).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        CachedArchive describing the cache entry.

    Raises:
        ToolchainFetchFailed: If the download fails.
    """
    headers: dict[str, str] = {}
    cached_mtime: float | None = None
    if dest_path.exists():
        cached_mtime = dest_path.stat().st_mtime
        headers["If-Modified-Since"] = email.utils.formatdate(cached_mtime, usegmt=True)

    tmp_path: Path | None = None
    try:
        with client.stream(
            "GET", url, headers=headers, timeout=timeout, follow_redirects=True
        ) as response:
            if response.status_code == 304 and cached_mtime is not None:
                logger.info("Cached %s is up to date", dest_path.name)
                return CachedArchive(url, dest_path, cached_mtime, downloaded=False)

            response.raise_for_status()
            remote_mtime = _parse_http_date(response.headers.get("Last-Modified"))

            if (
                cached_mtime is not None
                and remote_mtime is not None
                and remote_mtime <= cached_mtime
            ):
                logger.info("Cached %s is up to date", dest_path.name)
                return CachedArchive(url, dest_path, cached_mtime, downloaded=False)

            logger.info("Downloading %s to %s", url, dest_path)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=dest_path.parent, suffix=".tmp", delete=False
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                total_bytes = 0
                for chunk in response.iter_bytes(chunk_size):
                    tmp_file.write(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPError as e:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        if isinstance(e, httpx.HTTPStatusError):
            raise ToolchainFetchFailed(
                f"HTTP error downloading {url}: {e.response.status_code}",
                code="http_error",
            ) from e
        if isinstance(e, httpx.TimeoutException):
            raise ToolchainFetchFailed(
                f"Timeout downloading {url}", code="timeout"
            ) from e
        raise ToolchainFetchFailed(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    os.replace(tmp_path, dest_path)
    if remote_mtime is not None:
        os.utime(dest_path, (remote_mtime, remote_mtime))

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return CachedArchive(
        url, dest_path, dest_path.stat().st_mtime, downloaded=True
    )


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract an Image Builder archive into ``dest_dir``.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction.

    Returns:
        Path to the extracted Image Builder root directory.

    Raises:
        ToolchainFetchFailed: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    suffixes = "".join(archive_path.suffixes).lower()

    try:
        if suffixes.endswith(".tar.zst"):
            # tarfile has no zstd support; list args, no shell
            result = subprocess.run(
                [
                    "tar",
                    "-xf",
                    str(archive_path.resolve()),
                    "-C",
                    str(dest_dir.resolve()),
                ],
                capture_output=True,
                text=True,
                check=False,
            )
            if result.returncode != 0:
                raise ToolchainFetchFailed(
                    f"Failed to extract {archive_path}: {result.stderr}",
                    code="tar_error",
                )
        elif suffixes.endswith((".tar.xz", ".tar.gz", ".tar")):
            with tarfile.open(archive_path, "r:*") as tar:
                members = tar.getmembers()
                if not members:
                    raise ToolchainFetchFailed(
                        f"Archive {archive_path} is empty",
                        code="empty_archive",
                    )
                for member in members:
                    member_path = Path(member.name)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise ToolchainFetchFailed(
                            f"Refusing to extract {member.name}: "
                            "path traversal detected",
                            code="path_traversal",
                        )
                tar.extractall(dest_dir, filter="data")
        else:
            raise ToolchainFetchFailed(
                f"Unsupported archive format: {archive_path.name}",
                code="unsupported_format",
            )
    except tarfile.TarError as e:
        raise ToolchainFetchFailed(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ToolchainFetchFailed(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    extracted_dirs = [
        d
        for d in dest_dir.iterdir()
        if d.is_dir() and d.name.startswith(TOOLCHAIN_DIR_PREFIX)
    ]
    if not extracted_dirs:
        raise ToolchainFetchFailed(
            f"No Image Builder directory found in {archive_path.name}",
            code="missing_root",
        )
    if len(extracted_dirs) > 1:
        logger.warning(
            "Multiple directories found after extraction: %s",
            [d.name for d in extracted_dirs],
        )
    return extracted_dirs[0]


def find_patches(patches_dir: Path, branch: str) -> list[Path]:
    """Return common patches, then branch-specific patches, each sorted."""
    patches: list[Path] = []
    for directory in (patches_dir, patches_dir / branch):
        if directory.is_dir():
            patches.extend(sorted(directory.glob("*.patch")))
    return patches


def apply_patches(root_dir: Path, patches_dir: Path, branch: str) -> list[Path]:
    """Apply local patches to an extracted Image Builder.

    Args:
        root_dir: Image Builder root.
        patches_dir: Directory with common patches and per-branch subdirectories.
        branch: OpenWrt branch selecting the subdirectory.

    Returns:
        Patches applied, in order.

    Raises:
        ToolchainFetchFailed: If a patch does not apply.
    """
    patches = find_patches(patches_dir, branch)
    for patch_file in patches:
        logger.info("Applying %s", patch_file.name)
        try:
            result = subprocess.run(
                [
                    "patch",
                    "-p1",
                    "--forward",
                    "--batch",
                    "-i",
                    str(patch_file.resolve()),
                ],
                cwd=root_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ToolchainFetchFailed(
                f"Failed to run patch: {e}",
                code="execution_error",
            ) from e
        if result.returncode != 0:
            raise ToolchainFetchFailed(
                f"Patch {patch_file.name} failed: {result.stdout}{result.stderr}",
                code="patch_error",
            )
    return patches


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "SNAPSHOT_BRANCH",
    "TOOLCHAIN_ARCHIVE_RE",
    "CachedArchive",
    "apply_patches",
    "derive_branch",
    "download_if_newer",
    "extract_archive",
    "find_patches",
    "find_toolchain_archive",
    "targets_url",
]
