"""Image Builder cache and workspace preparation.

Archives are cached indefinitely by filename and only replaced when the
server has a newer copy. Every build extracts a fresh copy into the fixed
workspace directory, so only one toolchain is prepared at a time.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from falter_imagegen.errors import RemoteIndexError, ToolchainFetchFailed
from falter_imagegen.remote.index import ensure_trailing_slash, list_entries
from falter_imagegen.toolchain.fetch import (
    apply_patches,
    derive_branch,
    download_if_newer,
    extract_archive,
    find_toolchain_archive,
)

if TYPE_CHECKING:
    from falter_imagegen.config import Settings

logger = logging.getLogger(__name__)

# Fixed name of the extracted Image Builder inside the workspace
WORKSPACE_NAME = "imagebuilder"


@dataclass
class ToolchainHandle:
    """An extracted and patched Image Builder, ready to build.

    Attributes:
        target: Target platform.
        subtarget: Subtarget.
        branch: OpenWrt branch derived from the source URL.
        root_dir: Image Builder root inside the workspace.
        archive_path: Archive the workspace was extracted from.
        downloaded: Whether the archive was downloaded by this fetch.
    """

    target: str
    subtarget: str
    branch: str
    root_dir: Path
    archive_path: Path
    downloaded: bool = False

    @property
    def output_dir(self) -> Path:
        """Directory where `make image` places this target's images."""
        return self.root_dir / "bin" / "targets" / self.target / self.subtarget


class ToolchainCache:
    """Fetch, cache, extract and patch Image Builders."""

    def __init__(self, client: httpx.Client, settings: Settings) -> None:
        self.client = client
        self.cache_dir = settings.cache_dir
        self.work_dir = settings.work_dir
        self.patches_dir = settings.patches_dir
        self.http_timeout = settings.http_timeout
        self.download_timeout = settings.download_timeout

    @property
    def workspace(self) -> Path:
        return self.work_dir / WORKSPACE_NAME

    def _fetch_archive(self, url: str) -> tuple[Path, bool]:
        try:
            entries = list_entries(self.client, url, timeout=self.http_timeout)
        except RemoteIndexError as e:
            raise ToolchainFetchFailed(str(e), code=e.code) from e

        filename = find_toolchain_archive(entries)
        cached = download_if_newer(
            self.client,
            ensure_trailing_slash(url) + filename,
            self.cache_dir / filename,
            timeout=self.download_timeout,
        )
        return cached.path, cached.downloaded

    def _reset_workspace(self) -> Path:
        staging = self.work_dir / "extract"
        for path in (self.workspace, staging):
            if path.exists():
                shutil.rmtree(path)
        staging.mkdir(parents=True)
        return staging

    def fetch(
        self,
        url: str,
        target: str,
        subtarget: str,
        override: Path | None = None,
    ) -> ToolchainHandle:
        """Prepare the Image Builder of a target/subtarget URL.

        Args:
            url: Target/subtarget directory URL on the OpenWrt server.
            target: Target platform.
            subtarget: Subtarget.
            override: Local archive to use verbatim instead of downloading.

        Returns:
            ToolchainHandle for the extracted, patched Image Builder.

        Raises:
            ToolchainFetchFailed: If any step fails.
        """
        branch = derive_branch(url)

        if override is not None:
            if not override.is_file():
                raise ToolchainFetchFailed(
                    f"Image Builder archive not found: {override}",
                    code="override_not_found",
                )
            logger.info("Using local Image Builder %s", override)
            archive, downloaded = override, False
        else:
            archive, downloaded = self._fetch_archive(url)

        staging = self._reset_workspace()
        try:
            local_copy = staging / archive.name
            shutil.copy2(archive, local_copy)
            extracted = extract_archive(local_copy, staging)
            extracted.rename(self.workspace)
        except OSError as e:
            raise ToolchainFetchFailed(
                f"Failed to prepare workspace from {archive.name}: {e}",
                code="workspace_error",
            ) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        apply_patches(self.workspace, self.patches_dir, branch)
        logger.info(
            "Image Builder for %s/%s (%s) ready at %s",
            target,
            subtarget,
            branch,
            self.workspace,
        )
        return ToolchainHandle(
            target=target,
            subtarget=subtarget,
            branch=branch,
            root_dir=self.workspace,
            archive_path=archive,
            downloaded=downloaded,
        )


__all__ = ["WORKSPACE_NAME", "ToolchainCache", "ToolchainHandle"]
