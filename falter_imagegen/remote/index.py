"""Remote directory index listing.

OpenWrt and feed servers expose their trees as directory index pages.
This module turns such a page (HTML or plain text) into entry names.
Listing is best-effort: callers report and skip failing entries.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import unquote

import httpx

from falter_imagegen.errors import RemoteIndexError

logger = logging.getLogger(__name__)

# Timeout for index requests (seconds)
INDEX_TIMEOUT = 30

HREF_RE = re.compile(r"""href\s*=\s*["']([^"'#?]+)["']""", re.IGNORECASE)


def ensure_trailing_slash(url: str) -> str:
    """Return ``url`` with exactly one trailing slash."""
    return url.rstrip("/") + "/"


def parse_index(content: str) -> list[str]:
    """Parse directory index content into entry names.

    HTML pages are scraped for relative ``href`` links; anything else is
    read as one entry per line. Directory entries keep their trailing '/'.

    Args:
        content: Body of the index page.

    Returns:
        Entry names in page order, without duplicates.
    """
    if "<" in content and HREF_RE.search(content):
        candidates = [unquote(m) for m in HREF_RE.findall(content)]
    else:
        candidates = [line.strip() for line in content.splitlines()]

    entries: list[str] = []
    for name in candidates:
        if not name or name.startswith(("/", "..", ".")):
            continue
        # Absolute links point away from this directory
        if "://" in name:
            continue
        # Only direct children
        if "/" in name.rstrip("/"):
            continue
        if name not in entries:
            entries.append(name)
    return entries


def list_entries(
    client: httpx.Client,
    url: str,
    timeout: float = INDEX_TIMEOUT,
) -> list[str]:
    """List the entries of a remote directory.

    Args:
        client: HTTPX client instance.
        url: Directory URL.
        timeout: Request timeout in seconds.

    Returns:
        Entry names; directories end with '/'.

    Raises:
        RemoteIndexError: If the index cannot be fetched.
    """
    url = ensure_trailing_slash(url)
    logger.debug("Listing %s", url)

    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise RemoteIndexError(
            f"HTTP error listing {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise RemoteIndexError(f"Timeout listing {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise RemoteIndexError(
            f"Network error listing {url}: {e}",
            code="network_error",
        ) from e

    return parse_index(response.text)


def list_directories(
    client: httpx.Client,
    url: str,
    timeout: float = INDEX_TIMEOUT,
) -> list[str]:
    """List only the subdirectory names (without trailing '/') of ``url``."""
    return [
        name.rstrip("/")
        for name in list_entries(client, url, timeout=timeout)
        if name.endswith("/")
    ]


def list_targets(
    client: httpx.Client,
    targets_url: str,
    timeout: float = INDEX_TIMEOUT,
) -> list[str]:
    """List all targets below a release's ``targets/`` directory."""
    targets = list_directories(client, targets_url, timeout=timeout)
    logger.info("Found %d targets at %s", len(targets), targets_url)
    return targets


def list_subtargets(
    client: httpx.Client,
    target_url: str,
    timeout: float = INDEX_TIMEOUT,
) -> list[str]:
    """List all subtargets of one target."""
    subtargets = list_directories(client, target_url, timeout=timeout)
    logger.debug("Found subtargets %s at %s", subtargets, target_url)
    return subtargets


__all__ = [
    "INDEX_TIMEOUT",
    "ensure_trailing_slash",
    "list_directories",
    "list_entries",
    "list_subtargets",
    "list_targets",
    "parse_index",
]
