"""Release metadata from the falter package feed.

The feed publishes a small metadata package whose payload contains a
shell-style release file::

    FREIFUNK_RELEASE='1.2.3'
    FREIFUNK_OPENWRT_BASE='21.02.1'

The package is an ``.ipk``: a gzipped tar holding ``data.tar.gz``, which
in turn holds the release file. Both values are required for every
downstream URL, so a missing feed or key is fatal.
"""

from __future__ import annotations

import io
import logging
import shlex
import tarfile
from typing import TYPE_CHECKING

import httpx

from falter_imagegen.errors import FeedUnavailable, MalformedFeedConfig
from falter_imagegen.types import Release

if TYPE_CHECKING:
    from falter_imagegen.config import Settings

logger = logging.getLogger(__name__)

RELEASE_KEY = "FREIFUNK_RELEASE"
BASE_VERSION_KEY = "FREIFUNK_OPENWRT_BASE"
PAYLOAD_MEMBER = "data.tar.gz"


def feed_package_url(
    feed_url: str,
    release: str,
    arch: str,
    feed_name: str,
) -> str:
    """Build ``<feed>/<release>/packages/<arch>/<feed_name>/``."""
    return f"{feed_url.rstrip('/')}/{release}/packages/{arch}/{feed_name}/"


def parse_packages_index(content: str) -> list[dict[str, str]]:
    """Parse an opkg ``Packages`` index into one dict per stanza.

    Args:
        content: Text of the index.

    Returns:
        List of field mappings (continuation lines are ignored).
    """
    stanzas: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in content.splitlines():
        if not line.strip():
            if current:
                stanzas.append(current)
                current = {}
            continue
        if line[0].isspace() or ":" not in line:
            continue
        key, value = line.split(":", 1)
        current[key.strip()] = value.strip()
    if current:
        stanzas.append(current)
    return stanzas


def find_package_filename(content: str, package: str) -> str | None:
    """Return the ``Filename`` of the last stanza for ``package``."""
    filename: str | None = None
    for stanza in parse_packages_index(content):
        if stanza.get("Package") == package and stanza.get("Filename"):
            filename = stanza["Filename"]
    return filename


def parse_release_file(content: str) -> dict[str, str]:
    """Parse shell-style ``KEY=value`` assignments.

    Quotes are removed the way a shell would; comments and lines without
    an assignment are skipped.
    """
    values: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :]
        key, raw_value = line.split("=", 1)
        try:
            parts = shlex.split(raw_value, comments=True)
        except ValueError:
            parts = [raw_value.strip("'\"")]
        values[key.strip()] = " ".join(parts)
    return values


def _member(tar: tarfile.TarFile, name: str) -> tarfile.TarInfo | None:
    """Find a member by path, ignoring a leading './'."""
    wanted = name.removeprefix("./")
    for member in tar.getmembers():
        if member.isfile() and member.name.removeprefix("./") == wanted:
            return member
    return None


def extract_release_file(package_data: bytes, release_file: str) -> str:
    """Read ``release_file`` from an ipk's nested data archive.

    Args:
        package_data: Raw bytes of the ``.ipk``.
        release_file: Path of the file inside the data archive.

    Returns:
        Decoded content of the release file.

    Raises:
        MalformedFeedConfig: If the archive structure is unexpected.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(package_data), mode="r:*") as outer:
            payload = _member(outer, PAYLOAD_MEMBER)
            if payload is None:
                raise MalformedFeedConfig(
                    f"Package has no {PAYLOAD_MEMBER}",
                    code="missing_payload",
                )
            payload_file = outer.extractfile(payload)
            if payload_file is None:
                raise MalformedFeedConfig(f"Cannot read {PAYLOAD_MEMBER}")
            payload_data = payload_file.read()

        with tarfile.open(fileobj=io.BytesIO(payload_data), mode="r:*") as inner:
            member = _member(inner, release_file)
            if member is None:
                raise MalformedFeedConfig(
                    f"Package payload has no {release_file}",
                    code="missing_release_file",
                )
            extracted = inner.extractfile(member)
            if extracted is None:
                raise MalformedFeedConfig(f"Cannot read {release_file}")
            return extracted.read().decode("utf-8")

    except tarfile.TarError as e:
        raise MalformedFeedConfig(
            f"Invalid package archive: {e}",
            code="invalid_archive",
        ) from e


def _fetch(client: httpx.Client, url: str, timeout: float) -> httpx.Response:
    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as e:
        raise FeedUnavailable(
            f"HTTP error fetching {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FeedUnavailable(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FeedUnavailable(
            f"Network error fetching {url}: {e}",
            code="network_error",
        ) from e


def resolve_release(
    client: httpx.Client,
    feed_url: str,
    release: str,
    settings: Settings,
) -> Release:
    """Resolve a release's metadata from the feed.

    Args:
        client: HTTPX client instance.
        feed_url: Feed base URL (release or development feed).
        release: Requested falter release.
        settings: Effective settings (feed layout, timeouts).

    Returns:
        Release with version and OpenWrt base version.

    Raises:
        FeedUnavailable: If the feed or release cannot be fetched.
        MalformedFeedConfig: If the metadata lacks the required keys.
    """
    package_url = feed_package_url(
        feed_url, release, settings.feed_probe_arch, settings.feed_name
    )
    logger.info("Fetching release metadata from %s", package_url)

    index = _fetch(client, package_url + "Packages", settings.http_timeout)
    filename = find_package_filename(index.text, settings.metadata_package)
    if filename is None:
        raise FeedUnavailable(
            f"Package {settings.metadata_package} not found in feed for "
            f"release {release}",
            code="metadata_package_missing",
        )

    payload = _fetch(client, package_url + filename, settings.http_timeout)
    content = extract_release_file(payload.content, settings.release_file)
    values = parse_release_file(content)

    missing = [k for k in (RELEASE_KEY, BASE_VERSION_KEY) if not values.get(k)]
    if missing:
        raise MalformedFeedConfig(
            f"Release metadata lacks {', '.join(missing)}",
            code="missing_keys",
        )

    resolved = Release(
        version=values[RELEASE_KEY],
        base_version=values[BASE_VERSION_KEY],
    )
    if resolved.version != release:
        logger.warning(
            "Feed release %s reports version %s", release, resolved.version
        )
    logger.info(
        "Release %s is based on OpenWrt %s", resolved.version, resolved.base_version
    )
    return resolved


__all__ = [
    "BASE_VERSION_KEY",
    "RELEASE_KEY",
    "extract_release_file",
    "feed_package_url",
    "find_package_filename",
    "parse_packages_index",
    "parse_release_file",
    "resolve_release",
]
