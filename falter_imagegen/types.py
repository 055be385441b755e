"""Shared type definitions for falter_imagegen.

This module contains dataclasses and enums shared across subpackages
to avoid circular imports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from falter_imagegen.config import Settings

SNAPSHOT_BASES = ("snapshot", "snapshots")


class BuildStatus(str, Enum):
    """Status of one unit of the build matrix."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Release:
    """A falter release and the OpenWrt base it is built on.

    Attributes:
        version: falter release string (e.g. '1.2.3', '2.0-rc1', '1.3-snapshot').
        base_version: OpenWrt base version (e.g. '21.02.1' or 'snapshots').
    """

    version: str
    base_version: str

    @property
    def is_snapshot_base(self) -> bool:
        """Whether the release is built on OpenWrt snapshots."""
        return self.base_version.lower() in SNAPSHOT_BASES


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration of one run, produced once by the setup phase.

    Attributes:
        release: Resolved release metadata.
        target: Target to build, or 'all'.
        subtarget: Subtarget to build; None means every subtarget.
        packageset: Packageset identifier as given ('all', a path, or None).
        packagesets: Resolved packageset files, most recent first.
        device: Single device profile to build; None means the whole catalog.
        imagebuilder_override: Local Image Builder archive to use instead of
            downloading one.
        dev_feed: Whether the development feed is used.
        list_profiles: Only list device profiles, do not build.
        feed_url: Effective feed base URL.
        settings: Effective settings.
        flash_sizes: Device profile to flash size (MiB) from the device
            flash-size file.
    """

    release: Release
    target: str
    feed_url: str
    settings: Settings
    subtarget: str | None = None
    packageset: str | None = None
    packagesets: tuple[Path, ...] = ()
    device: str | None = None
    imagebuilder_override: Path | None = None
    dev_feed: bool = False
    list_profiles: bool = False
    flash_sizes: dict[str, int] = field(default_factory=dict)

    @property
    def all_targets(self) -> bool:
        """Whether every remote target is built."""
        return self.target == "all"

    @property
    def image_name_suffix(self) -> str:
        """EXTRA_IMAGE_NAME passed to Image Builder."""
        return f"freifunk-falter-{self.release.version}"


@dataclass(frozen=True)
class BuildUnit:
    """One (release, target, subtarget, packageset, device) work item."""

    release: Release
    target: str
    subtarget: str
    device: str
    packageset: str | None = None

    def describe(self) -> str:
        """Human-readable identifier of the unit."""
        parts = [self.target, self.subtarget, self.device]
        if self.packageset:
            parts.append(self.packageset)
        return "/".join(parts)


@dataclass
class ArtifactInfo:
    """Information about a build artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


@dataclass
class UnitResult:
    """Outcome of one matrix unit, recorded instead of raising.

    A unit is either one device build or, when a toolchain could not be
    prepared, the whole (target, subtarget) pair with ``device`` unset.
    """

    target: str
    subtarget: str
    status: BuildStatus
    packageset: str | None = None
    device: str | None = None
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    log_path: str | None = None

    @property
    def success(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class RunSummary:
    """Aggregated results of a matrix run."""

    results: list[UnitResult] = field(default_factory=list)
    profiles: dict[str, list[str]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == BuildStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == BuildStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
            "profiles": self.profiles,
        }


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "BuildUnit",
    "Release",
    "RunConfig",
    "RunSummary",
    "UnitResult",
]
