"""Packageset files and per-device package lists.

Packageset files list package names separated by whitespace; ``#``
starts a comment. Devices with 8 MiB of flash (or devices forced into
that class) cannot fit a handful of non-essential tools, which are
dropped from their package list.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from falter_imagegen.errors import InvalidFlashSizeFile

logger = logging.getLogger(__name__)

# Flash size (MiB) at or below which a device is low-flash
LOW_FLASH_THRESHOLD_MIB = 8

# Packages omitted on low-flash devices
OMITTED_LOW_FLASH_PACKAGES = ("mtr", "iperf3", "tmux", "vnstat")

# Device profiles with 8 MiB flash
LOW_FLASH_DEVICES = frozenset(
    {
        "tplink_cpe210-v1",
        "tplink_cpe510-v1",
        "tplink_tl-wdr3600-v1",
        "tplink_tl-wdr4300-v1",
        "tplink_tl-wr1043nd-v1",
        "ubnt_bullet-m-xw",
        "ubnt_nanostation-loco-m-xw",
        "ubnt_nanostation-m-xw",
    }
)

# Device profiles with 16 MiB flash that still need the low-flash list
LOW_FLASH_OVERRIDES = frozenset(
    {
        "glinet_gl-ar150",
        "glinet_gl-ar300m-nor",
        "glinet_gl-mifi",
    }
)

FlashLookup = Callable[[str], int | None]


@dataclass
class Packageset:
    """A named, ordered list of packages loaded from a packageset file."""

    name: str
    path: Path
    packages: list[str] = field(default_factory=list)


def parse_packageset(content: str) -> list[str]:
    """Parse packageset file content into an ordered package list."""
    packages: list[str] = []
    for line in content.splitlines():
        line = line.split("#", 1)[0]
        packages.extend(line.split())
    return packages


def load_packageset(path: Path, name: str | None = None) -> Packageset:
    """Load a packageset file; its name defaults to the file stem."""
    packages = parse_packageset(path.read_text(encoding="utf-8"))
    logger.debug("Loaded packageset %s with %d packages", path, len(packages))
    return Packageset(name=name or path.stem, path=path, packages=packages)


def packageset_names(paths: Sequence[Path]) -> list[str]:
    """Distinct output names for a group of packageset files.

    Each file is named after its stem. Files sharing a stem are prefixed
    with as many parent directories as it takes to tell them apart, so
    `2.0/tunneldigger.txt` and `2.0.1/tunneldigger.txt` become
    `2.0-tunneldigger` and `2.0.1-tunneldigger`.
    """
    parts = [p.with_suffix("").as_posix().strip("/").split("/") for p in paths]
    depth = [1] * len(parts)
    while True:
        names = ["-".join(segs[-d:]) for segs, d in zip(parts, depth)]
        counts = Counter(names)
        clashing = [i for i, name in enumerate(names) if counts[name] > 1]
        if not clashing:
            return names
        grown = False
        for i in clashing:
            if depth[i] < len(parts[i]):
                depth[i] += 1
                grown = True
        if not grown:
            # Same path given twice
            return [
                f"{name}-{i + 1}" if counts[name] > 1 else name
                for i, name in enumerate(names)
            ]


def format_package_list(packages: Iterable[str]) -> str:
    """Format a package list as Image Builder's space-separated PACKAGES."""
    return " ".join(packages)


class FlashSizeLookup:
    """Flash size lookup backed by a YAML mapping of profile to MiB.

    Example file::

        tplink_tl-wr842n-v3: 8
        glinet_gl-ar750: 16
    """

    def __init__(self, sizes: dict[str, int] | None = None) -> None:
        self.sizes = dict(sizes or {})

    @classmethod
    def from_file(cls, path: Path | None) -> FlashSizeLookup:
        """Load sizes from ``path``; a missing path yields an empty lookup.

        Raises:
            InvalidFlashSizeFile: If the file cannot be read or parsed, is not
                a mapping, or holds a size that is not a whole number.
        """
        if path is None or not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise InvalidFlashSizeFile(
                f"Cannot read flash sizes from {path}: {e}"
            ) from e
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidFlashSizeFile(
                f"Flash sizes in {path} must be a YAML mapping, "
                f"got {type(data).__name__}"
            )
        try:
            return cls({str(k): int(v) for k, v in data.items()})
        except (TypeError, ValueError) as e:
            raise InvalidFlashSizeFile(
                f"Flash sizes in {path} must be whole MiB: {e}"
            ) from e

    def __call__(self, device: str) -> int | None:
        return self.sizes.get(device)


class DevicePackageListBuilder:
    """Compute the final package list for one device profile."""

    def __init__(
        self,
        flash_lookup: FlashLookup | None = None,
        low_flash_devices: Iterable[str] = LOW_FLASH_DEVICES,
        low_flash_overrides: Iterable[str] = LOW_FLASH_OVERRIDES,
        omitted: Iterable[str] = OMITTED_LOW_FLASH_PACKAGES,
    ) -> None:
        self.flash_lookup = flash_lookup
        self.low_flash_devices = frozenset(low_flash_devices)
        self.low_flash_overrides = frozenset(low_flash_overrides)
        self.omitted = frozenset(omitted)

    def is_low_flash(self, device: str) -> bool:
        """Whether ``device`` belongs to the low-flash class."""
        if device in self.low_flash_devices or device in self.low_flash_overrides:
            return True
        if self.flash_lookup is None:
            return False
        flash_mib = self.flash_lookup(device)
        return flash_mib is not None and flash_mib <= LOW_FLASH_THRESHOLD_MIB

    def build(self, base: list[str], device: str) -> list[str]:
        """Return the package list for ``device``.

        Low-flash devices lose every occurrence of the omitted packages;
        the remaining order is preserved. Other devices get ``base``
        unchanged.
        """
        if not self.is_low_flash(device):
            return list(base)
        packages = [p for p in base if p not in self.omitted]
        logger.debug(
            "Low-flash device %s: omitted %d package(s)",
            device,
            len(base) - len(packages),
        )
        return packages


__all__ = [
    "LOW_FLASH_DEVICES",
    "LOW_FLASH_OVERRIDES",
    "LOW_FLASH_THRESHOLD_MIB",
    "OMITTED_LOW_FLASH_PACKAGES",
    "DevicePackageListBuilder",
    "FlashSizeLookup",
    "Packageset",
    "format_package_list",
    "load_packageset",
    "packageset_names",
    "parse_packageset",
]
