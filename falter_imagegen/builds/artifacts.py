"""Artifact classification and relocation.

This module handles:
- Classifying artifact types (sysupgrade, factory, etc.)
- Computing checksums
- Moving build output from the Image Builder into the firmwares/ tree

Each `make image` run writes its own ``sha256sums`` and ``profiles.json``
into the output directory. When successive devices land in the same
bucket these files are merged instead of replaced.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from pathlib import Path

from falter_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Ordered (kind, match, suffixes); the first matching rule wins, so
# initramfs is tried before kernel ("-initramfs-kernel.bin")
ARTIFACT_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("sysupgrade", "in", ("-sysupgrade.bin", "-sysupgrade.img.gz", "-sysupgrade.itb")),
    ("initramfs", "in", ("-initramfs-kernel.bin", "-initramfs.bin")),
    ("factory", "in", ("-factory.bin", "-factory.img", "-factory.ubi")),
    ("kernel", "in", ("-kernel.bin", "-uimage", "-vmlinux")),
    ("rootfs", "in", ("-rootfs.tar.gz", "-rootfs.squashfs", "-rootfs.ext4")),
    ("manifest", "end", (".manifest", ".buildinfo", "profiles.json", "sha256sums")),
)

CHECKSUMS_FILE = "sha256sums"
PROFILES_FILE = "profiles.json"

HASH_CHUNK_SIZE = 64 * 1024


def classify_artifact(filename: str) -> str:
    """Kind of an Image Builder output file, judged by its name.

    One of sysupgrade, initramfs, factory, kernel, rootfs, manifest or other.
    """
    name = filename.lower()
    for kind, match, suffixes in ARTIFACT_RULES:
        if match == "end" and name.endswith(suffixes):
            return kind
        if match == "in" and any(s in name for s in suffixes):
            return kind
    return "other"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def merge_checksums(source: Path, dest: Path) -> None:
    """Merge a ``sha256sums`` file into an existing one.

    Lines are keyed by filename; entries from ``source`` win.
    """
    entries: dict[str, str] = {}
    for path in (dest, source):
        for line in path.read_text(encoding="utf-8").splitlines():
            parts = line.split(maxsplit=1)
            if len(parts) == 2:
                entries[parts[1]] = line
    dest.write_text(
        "".join(f"{entries[name]}\n" for name in sorted(entries)),
        encoding="utf-8",
    )
    source.unlink()


def merge_profiles_json(source: Path, dest: Path) -> None:
    """Merge the ``profiles`` maps of two Image Builder profiles.json files."""
    with dest.open(encoding="utf-8") as f:
        merged = json.load(f)
    with source.open(encoding="utf-8") as f:
        incoming = json.load(f)
    merged.setdefault("profiles", {}).update(incoming.get("profiles", {}))
    with dest.open("w", encoding="utf-8") as f:
        json.dump(merged, f, indent=2, sort_keys=True)
    source.unlink()


MERGERS = {
    CHECKSUMS_FILE: merge_checksums,
    PROFILES_FILE: merge_profiles_json,
}


def relocate_artifacts(
    source_dir: Path,
    dest_dir: Path,
    output_root: Path | None = None,
) -> list[ArtifactInfo]:
    """Move build output from ``source_dir`` into ``dest_dir``.

    Only top-level files are moved; subdirectories (such as the package
    repository Image Builder leaves behind) stay in the workspace.

    Args:
        source_dir: Image Builder output directory for the target.
        dest_dir: Bucket in the firmwares/ tree.
        output_root: Root for computing relative paths. Defaults to ``dest_dir``.

    Returns:
        ArtifactInfo for every relocated file.
    """
    if not source_dir.is_dir():
        logger.warning("Build output directory does not exist: %s", source_dir)
        return []

    if output_root is None:
        output_root = dest_dir
    dest_dir.mkdir(parents=True, exist_ok=True)

    artifacts: list[ArtifactInfo] = []
    for path in sorted(source_dir.iterdir()):
        if not path.is_file():
            continue

        target = dest_dir / path.name
        merger = MERGERS.get(path.name)
        if target.exists() and merger is not None:
            merger(path, target)
        else:
            if target.exists():
                logger.warning("Replacing existing artifact %s", target)
            shutil.move(str(path), str(target))

        kind = classify_artifact(target.name)
        artifact = ArtifactInfo(
            filename=target.name,
            relative_path=target.relative_to(output_root).as_posix(),
            size_bytes=target.stat().st_size,
            sha256=compute_file_hash(target),
            kind=kind,
        )
        if kind == "sysupgrade":
            artifact.labels.append("for_sysupgrade")
        if kind == "factory":
            artifact.labels.append("for_factory_install")
        artifacts.append(artifact)
        logger.debug("Relocated %s (kind=%s)", target.name, kind)

    logger.info("Relocated %d artifacts to %s", len(artifacts), dest_dir)
    return artifacts


def get_primary_artifact(artifacts: list[ArtifactInfo]) -> ArtifactInfo | None:
    """Get the primary artifact for flashing (usually sysupgrade).

    Args:
        artifacts: List of artifacts.

    Returns:
        The primary artifact, or None if not found.
    """
    for kind in ("sysupgrade", "factory"):
        for artifact in artifacts:
            if artifact.kind == kind:
                return artifact

    for artifact in artifacts:
        if artifact.kind not in ("manifest", "other"):
            return artifact

    return None


__all__ = [
    "ARTIFACT_RULES",
    "CHECKSUMS_FILE",
    "HASH_CHUNK_SIZE",
    "PROFILES_FILE",
    "classify_artifact",
    "compute_file_hash",
    "get_primary_artifact",
    "merge_checksums",
    "merge_profiles_json",
    "relocate_artifacts",
]
