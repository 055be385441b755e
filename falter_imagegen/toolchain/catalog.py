"""Image Builder introspection and feed installation.

This module handles:
- Discovering device profiles through `make info`
- Reading the package architecture from ``repositories.conf``
- Adding the falter feed to ``repositories.conf``
- Installing the feed's usign public key into ``keys/``
"""

from __future__ import annotations

import base64
import binascii
import logging
import subprocess
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import httpx

from falter_imagegen.errors import InvalidSigningKey, ToolchainFetchFailed
from falter_imagegen.toolchain.fetch import SNAPSHOT_BRANCH

logger = logging.getLogger(__name__)

REPOSITORIES_CONF = "repositories.conf"
BASE_FEED_KEY = "openwrt_base"
SIGNING_KEY_MARKER = "untrusted comment:"

# Header lines of `make info` that end in ':' but are not profiles
NON_PROFILE_HEADERS = frozenset({"Available Profiles", "Default Packages"})

# Index of the architecture among the URL path segments, per branch, for
# base feed URLs without a 'packages' segment to anchor on.
ARCH_SEGMENT_INDEX = {
    SNAPSHOT_BRANCH: 2,  # snapshots/packages/<arch>/base
}
DEFAULT_ARCH_SEGMENT_INDEX = 3  # releases/<version>/packages/<arch>/base

# usign public key: 2 bytes algorithm, 8 bytes fingerprint, 32 bytes key
USIGN_PUBKEY_LENGTH = 42


class ToolchainCatalog(Protocol):
    """Source of the device profiles a toolchain can build."""

    def list_profiles(self) -> list[str]: ...


def parse_profiles(output: str) -> list[str]:
    """Extract device profile names from `make info` output.

    Profiles are unindented lines ending in ':'; the known section
    headers are skipped.
    """
    profiles: list[str] = []
    for line in output.splitlines():
        if not line or line[0].isspace():
            continue
        stripped = line.rstrip()
        if not stripped.endswith(":"):
            continue
        name = stripped[:-1]
        if name in NON_PROFILE_HEADERS:
            continue
        profiles.append(name)
    return profiles


class MakeInfoCatalog:
    """Profile catalog of an extracted Image Builder, via `make info`."""

    def __init__(self, root_dir: Path, timeout: int = 300) -> None:
        self.root_dir = root_dir
        self.timeout = timeout

    def list_profiles(self) -> list[str]:
        try:
            result = subprocess.run(
                ["make", "info"],
                cwd=self.root_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolchainFetchFailed(
                f"make info timed out after {self.timeout}s",
                code="timeout",
            ) from e
        except subprocess.CalledProcessError as e:
            raise ToolchainFetchFailed(
                f"make info failed: {e.stderr}",
                code="make_info_error",
            ) from e
        except OSError as e:
            raise ToolchainFetchFailed(
                f"Failed to run make info: {e}",
                code="execution_error",
            ) from e

        profiles = parse_profiles(result.stdout)
        logger.info("Image Builder offers %d profiles", len(profiles))
        return profiles


def parse_repositories(content: str) -> dict[str, str]:
    """Map feed names to URLs for ``src/gz <name> <url>`` lines."""
    feeds: dict[str, str] = {}
    for line in content.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0].startswith("src"):
            feeds[parts[1]] = parts[2]
    return feeds


def parse_base_arch(content: str, branch: str) -> str:
    """Return the package architecture of the ``openwrt_base`` feed.

    The architecture is the path segment following 'packages'. URLs
    without that segment fall back to a per-branch segment index.

    Raises:
        ToolchainFetchFailed: If no architecture can be determined.
    """
    url = parse_repositories(content).get(BASE_FEED_KEY)
    if url is None:
        raise ToolchainFetchFailed(
            f"No {BASE_FEED_KEY} feed in {REPOSITORIES_CONF}",
            code="missing_base_feed",
        )

    segments = [s for s in urlparse(url).path.split("/") if s]
    if "packages" in segments:
        index = segments.index("packages") + 1
    else:
        index = ARCH_SEGMENT_INDEX.get(branch, DEFAULT_ARCH_SEGMENT_INDEX)

    if index >= len(segments):
        raise ToolchainFetchFailed(
            f"Cannot find architecture in {BASE_FEED_KEY} URL: {url}",
            code="missing_arch",
        )
    return segments[index]


def feed_repository_line(feed_url: str, release: str, arch: str, feed_name: str) -> str:
    """Return the ``src/gz`` line for the falter feed."""
    url = f"{feed_url.rstrip('/')}/{release}/packages/{arch}/{feed_name}"
    return f"src/gz {feed_name} {url}"


def install_feed_repository(
    root_dir: Path,
    feed_url: str,
    release: str,
    feed_name: str,
    branch: str,
) -> str:
    """Append the falter feed to the Image Builder's ``repositories.conf``.

    Returns:
        The package architecture used in the feed URL.

    Raises:
        ToolchainFetchFailed: If ``repositories.conf`` is missing or unusable.
    """
    conf = root_dir / REPOSITORIES_CONF
    try:
        content = conf.read_text(encoding="utf-8")
    except OSError as e:
        raise ToolchainFetchFailed(
            f"Cannot read {conf}: {e}",
            code="missing_repositories",
        ) from e

    arch = parse_base_arch(content, branch)
    line = feed_repository_line(feed_url, release, arch, feed_name)
    if line not in content.splitlines():
        with conf.open("a", encoding="utf-8") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(line + "\n")
    logger.info("Added feed: %s", line)
    return arch


def usign_fingerprint(key_text: str) -> str:
    """Return the hex fingerprint of a usign public key.

    Raises:
        InvalidSigningKey: If the key body cannot be decoded.
    """
    lines = [ln.strip() for ln in key_text.splitlines() if ln.strip()]
    body = next((ln for ln in lines if not ln.startswith(SIGNING_KEY_MARKER)), None)
    if body is None:
        raise InvalidSigningKey("Signing key has no key data", code="missing_key_data")
    try:
        raw = base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise InvalidSigningKey(
            f"Signing key is not valid base64: {e}",
            code="invalid_key_data",
        ) from e
    if len(raw) != USIGN_PUBKEY_LENGTH:
        raise InvalidSigningKey(
            f"Signing key has {len(raw)} bytes, expected {USIGN_PUBKEY_LENGTH}",
            code="invalid_key_data",
        )
    return raw[2:10].hex()


def validate_signing_key(key_text: str) -> str:
    """Check a usign public key and return its fingerprint.

    Raises:
        InvalidSigningKey: If the marker is absent or the key is malformed.
    """
    if SIGNING_KEY_MARKER not in key_text:
        raise InvalidSigningKey(
            f"Signing key lacks '{SIGNING_KEY_MARKER}'",
            code="missing_marker",
        )
    return usign_fingerprint(key_text)


def install_signing_key(
    client: httpx.Client,
    key_url: str,
    root_dir: Path,
    timeout: float = 30,
) -> Path:
    """Fetch, validate and install the feed's signing key.

    Returns:
        Path of the installed key file (``keys/<fingerprint>``).

    Raises:
        InvalidSigningKey: If the key cannot be fetched or is invalid.
    """
    try:
        response = client.get(key_url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise InvalidSigningKey(
            f"Cannot fetch signing key {key_url}: {e}",
            code="key_unavailable",
        ) from e

    key_text = response.text
    fingerprint = validate_signing_key(key_text)

    keys_dir = root_dir / "keys"
    keys_dir.mkdir(parents=True, exist_ok=True)
    key_path = keys_dir / fingerprint
    key_path.write_text(key_text, encoding="utf-8")
    logger.info("Installed signing key %s", fingerprint)
    return key_path


__all__ = [
    "BASE_FEED_KEY",
    "SIGNING_KEY_MARKER",
    "MakeInfoCatalog",
    "ToolchainCatalog",
    "feed_repository_line",
    "install_feed_repository",
    "install_signing_key",
    "parse_base_arch",
    "parse_profiles",
    "parse_repositories",
    "usign_fingerprint",
    "validate_signing_key",
]
