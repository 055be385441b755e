"""Build service module.

This module provides the high-level build API:
- validate_request(): reject inconsistent selector combinations
- setup_run(): resolve release metadata and packagesets into a RunConfig
- run_matrix(): build every unit of a RunConfig

Setup failures (feed, packagesets) raise and abort the run before any
workspace or output directory is touched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from falter_imagegen.builds.matrix import BuildMatrixRunner
from falter_imagegen.errors import UsageError
from falter_imagegen.feed.config import resolve_release
from falter_imagegen.packagesets.packagelist import FlashSizeLookup
from falter_imagegen.packagesets.resolver import resolve_packagesets
from falter_imagegen.types import RunConfig, RunSummary

if TYPE_CHECKING:
    from falter_imagegen.config import Settings

logger = logging.getLogger(__name__)


def validate_request(
    release: str | None,
    target: str | None,
    subtarget: str | None = None,
    device: str | None = None,
    imagebuilder_override: Path | None = None,
) -> tuple[str, str]:
    """Check that the requested selectors form a valid run.

    Returns:
        The (release, target) pair, both known to be set.

    Raises:
        UsageError: If a required selector is missing or options conflict.
    """
    if not release:
        raise UsageError("A release is required (--release)")
    if not target:
        raise UsageError("A target is required (--target), or 'all'")
    if target == "all" and subtarget:
        raise UsageError("--subtarget cannot be combined with --target all")
    if imagebuilder_override is not None:
        if target == "all" or not subtarget or not device:
            raise UsageError(
                "--imagebuilder requires an explicit --target, --subtarget "
                "and --device"
            )
    return release, target


def setup_run(
    client: httpx.Client,
    settings: Settings,
    release: str | None,
    target: str | None,
    subtarget: str | None = None,
    packageset: str | None = None,
    device: str | None = None,
    imagebuilder_override: Path | None = None,
    dev_feed: bool = False,
    list_profiles: bool = False,
) -> RunConfig:
    """Resolve everything a run shares into one immutable RunConfig.

    Raises:
        UsageError: If the selectors are invalid.
        InvalidFlashSizeFile: If the device flash-size file is unusable.
        FeedUnavailable: If the feed or release cannot be fetched.
        MalformedFeedConfig: If the release metadata is incomplete.
        PackagesetNotFound: If an explicit packageset is missing.
        NoPackagesetsForRelease: If 'all' matches no packageset.
    """
    release, target = validate_request(
        release, target, subtarget, device, imagebuilder_override
    )
    flash_sizes = FlashSizeLookup.from_file(settings.device_flash_file).sizes

    feed_url = settings.dev_feed_base_url if dev_feed else settings.feed_base_url
    resolved = resolve_release(client, feed_url, release, settings)

    packagesets: list[Path] = []
    if packageset:
        packagesets = resolve_packagesets(
            packageset,
            resolved.version,
            settings.packageset_dir,
            limit=settings.max_packagesets,
        )

    if device and packageset == "all":
        logger.info(
            "Building device %s once per packageset (%d packagesets)",
            device,
            len(packagesets),
        )

    return RunConfig(
        release=resolved,
        target=target,
        feed_url=feed_url,
        settings=settings,
        subtarget=subtarget,
        packageset=packageset,
        packagesets=tuple(packagesets),
        device=device,
        imagebuilder_override=imagebuilder_override,
        dev_feed=dev_feed,
        list_profiles=list_profiles,
        flash_sizes=flash_sizes,
    )


def run_matrix(client: httpx.Client, config: RunConfig) -> RunSummary:
    """Build every unit described by ``config``."""
    return BuildMatrixRunner(config, client).run()


__all__ = ["run_matrix", "setup_run", "validate_request"]
