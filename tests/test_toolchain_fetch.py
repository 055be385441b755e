"""Tests for Image Builder fetch module.

These tests use mocked HTTP responses to test archive discovery,
conditional downloading, extraction and patching.
"""

import email.utils
import lzma
import os
import tarfile
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from falter_imagegen.errors import ToolchainFetchFailed
from falter_imagegen.toolchain.fetch import (
    apply_patches,
    derive_branch,
    download_if_newer,
    extract_archive,
    find_patches,
    find_toolchain_archive,
    targets_url,
)
from falter_imagegen.types import Release

ARCHIVE_URL = (
    "https://dl.example.com/releases/21.02.1/targets/ath79/generic/"
    "openwrt-imagebuilder-21.02.1-ath79-generic.Linux-x86_64.tar.xz"
)
OLD = 1_600_000_000
NEW = 1_700_000_000


def http_date(timestamp: float) -> str:
    return email.utils.formatdate(timestamp, usegmt=True)


def cached_file(path: Path, content: bytes, mtime: float) -> Path:
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


class TestTargetsUrl:
    """Tests for targets_url function."""

    def test_release(self):
        release = Release(version="1.2.3", base_version="21.02.1")
        url = targets_url("https://downloads.openwrt.org/", release)
        assert url == "https://downloads.openwrt.org/releases/21.02.1/targets/"

    def test_snapshot(self):
        release = Release(version="1.3-snapshot", base_version="snapshots")
        url = targets_url("https://downloads.openwrt.org", release)
        assert url == "https://downloads.openwrt.org/snapshots/targets/"


class TestDeriveBranch:
    """Tests for derive_branch function."""

    def test_release_branch(self):
        """Should reduce a release version to major.minor."""
        url = "https://dl.example.com/releases/21.02.1/targets/ath79/generic/"
        assert derive_branch(url) == "21.02"

    def test_release_candidate_branch(self):
        url = "https://dl.example.com/releases/22.03.0-rc4/targets/x86/64/"
        assert derive_branch(url) == "22.03"

    def test_snapshot_branch(self):
        url = "https://dl.example.com/snapshots/targets/ramips/mt7621/"
        assert derive_branch(url) == "snapshot"

    def test_unknown_shape(self):
        """Should raise for URLs of unknown shape."""
        with pytest.raises(ToolchainFetchFailed) as exc_info:
            derive_branch("https://dl.example.com/other/ath79/generic/")
        assert exc_info.value.code == "unknown_url_shape"


class TestFindToolchainArchive:
    """Tests for find_toolchain_archive function."""

    def test_find_xz(self):
        entries = [
            "sha256sums",
            "openwrt-21.02.1-ath79-generic-tplink_cpe210-v1-squashfs-sysupgrade.bin",
            "openwrt-imagebuilder-21.02.1-ath79-generic.Linux-x86_64.tar.xz",
            "openwrt-sdk-21.02.1-ath79-generic_gcc-8.4.0_musl.Linux-x86_64.tar.xz",
        ]
        assert (
            find_toolchain_archive(entries)
            == "openwrt-imagebuilder-21.02.1-ath79-generic.Linux-x86_64.tar.xz"
        )

    def test_find_zst(self):
        entries = ["openwrt-imagebuilder-ramips-mt7621.Linux-x86_64.tar.zst"]
        assert find_toolchain_archive(entries) == entries[0]

    def test_not_found(self):
        with pytest.raises(ToolchainFetchFailed) as exc_info:
            find_toolchain_archive(["sha256sums", "packages/"])
        assert exc_info.value.code == "archive_not_found"


class TestDownloadIfNewer:
    """Tests for download_if_newer function."""

    @respx.mock
    def test_first_download(self, tmp_path):
        """Should download and stamp the file with Last-Modified."""
        respx.get(ARCHIVE_URL).mock(
            return_value=httpx.Response(
                200, content=b"archive", headers={"Last-Modified": http_date(NEW)}
            )
        )

        dest = tmp_path / "dl" / "archive.tar.xz"
        with httpx.Client() as client:
            result = download_if_newer(client, ARCHIVE_URL, dest)

        assert result.downloaded is True
        assert dest.read_bytes() == b"archive"
        assert dest.stat().st_mtime == NEW
        assert list(dest.parent.glob("*.tmp")) == []

    @respx.mock
    def test_not_modified(self, tmp_path):
        """A 304 should keep the cached copy and send If-Modified-Since."""
        route = respx.get(ARCHIVE_URL).mock(return_value=httpx.Response(304))
        dest = cached_file(tmp_path / "archive.tar.xz", b"cached", NEW)

        with httpx.Client() as client:
            result = download_if_newer(client, ARCHIVE_URL, dest)

        assert result.downloaded is False
        assert dest.read_bytes() == b"cached"
        sent = route.calls.last.request.headers["If-Modified-Since"]
        assert email.utils.parsedate_to_datetime(sent).timestamp() == NEW

    @respx.mock
    def test_unchanged_last_modified(self, tmp_path):
        """An equal Last-Modified should not trigger a download."""
        respx.get(ARCHIVE_URL).mock(
            return_value=httpx.Response(
                200, content=b"remote", headers={"Last-Modified": http_date(NEW)}
            )
        )
        dest = cached_file(tmp_path / "archive.tar.xz", b"cached", NEW)

        with httpx.Client() as client:
            result = download_if_newer(client, ARCHIVE_URL, dest)

        assert result.downloaded is False
        assert dest.read_bytes() == b"cached"

    @respx.mock
    def test_newer_remote(self, tmp_path):
        """A newer Last-Modified should replace the cached copy."""
        respx.get(ARCHIVE_URL).mock(
            return_value=httpx.Response(
                200, content=b"remote", headers={"Last-Modified": http_date(NEW)}
            )
        )
        dest = cached_file(tmp_path / "archive.tar.xz", b"cached", OLD)

        with httpx.Client() as client:
            result = download_if_newer(client, ARCHIVE_URL, dest)

        assert result.downloaded is True
        assert dest.read_bytes() == b"remote"
        assert dest.stat().st_mtime == NEW

    @respx.mock
    def test_http_error(self, tmp_path):
        """Should raise ToolchainFetchFailed on HTTP error."""
        respx.get(ARCHIVE_URL).mock(return_value=httpx.Response(404))

        dest = tmp_path / "archive.tar.xz"
        with httpx.Client() as client, pytest.raises(ToolchainFetchFailed) as exc_info:
            download_if_newer(client, ARCHIVE_URL, dest)

        assert exc_info.value.code == "http_error"
        assert not dest.exists()

    @respx.mock
    def test_timeout_error(self, tmp_path):
        """Should raise ToolchainFetchFailed on timeout."""
        respx.get(ARCHIVE_URL).mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(ToolchainFetchFailed) as exc_info:
            download_if_newer(client, ARCHIVE_URL, tmp_path / "archive.tar.xz")

        assert exc_info.value.code == "timeout"


class TestExtractArchive:
    """Tests for extract_archive function."""

    def _create_tar_xz(self, tmp_path: Path, content_dir: str, files: dict) -> Path:
        """Helper to create a .tar.xz archive."""
        archive_path = tmp_path / "test.tar.xz"

        tar_bytes = BytesIO()
        with tarfile.open(fileobj=tar_bytes, mode="w") as tar:
            for name, content in files.items():
                info = tarfile.TarInfo(name=f"{content_dir}/{name}")
                data = content.encode()
                info.size = len(data)
                tar.addfile(info, BytesIO(data))

        tar_bytes.seek(0)
        with lzma.open(archive_path, "wb") as xz_file:
            xz_file.write(tar_bytes.read())

        return archive_path

    def test_extract_tar_xz(self, tmp_path):
        """Should extract .tar.xz archive and return its root."""
        archive = self._create_tar_xz(
            tmp_path,
            "openwrt-imagebuilder-21.02.1-ath79-generic.Linux-x86_64",
            {"Makefile": "# Test Makefile", "repositories.conf": ""},
        )

        root_dir = extract_archive(archive, tmp_path / "extracted")

        assert root_dir.name.startswith("openwrt-imagebuilder")
        assert (root_dir / "Makefile").exists()

    def test_missing_root(self, tmp_path):
        """Should fail when the archive has no Image Builder directory."""
        archive = self._create_tar_xz(tmp_path, "something-else", {"a": "b"})

        with pytest.raises(ToolchainFetchFailed) as exc_info:
            extract_archive(archive, tmp_path / "extracted")

        assert exc_info.value.code == "missing_root"

    def test_path_traversal(self, tmp_path):
        """Should refuse members escaping the destination."""
        archive = self._create_tar_xz(tmp_path, "..", {"evil": "x"})

        with pytest.raises(ToolchainFetchFailed) as exc_info:
            extract_archive(archive, tmp_path / "extracted")

        assert exc_info.value.code == "path_traversal"

    def test_unsupported_format(self, tmp_path):
        archive = tmp_path / "test.zip"
        archive.write_bytes(b"not a tar archive")

        with pytest.raises(ToolchainFetchFailed) as exc_info:
            extract_archive(archive, tmp_path / "extracted")

        assert exc_info.value.code == "unsupported_format"


class TestPatches:
    """Tests for find_patches and apply_patches."""

    def _make_patches(self, tmp_path: Path) -> Path:
        patches = tmp_path / "patches"
        (patches / "21.02").mkdir(parents=True)
        (patches / "snapshot").mkdir()
        (patches / "010-common.patch").write_text("")
        (patches / "21.02" / "020-branch.patch").write_text("")
        (patches / "snapshot" / "030-snapshot.patch").write_text("")
        return patches

    def test_find_patches(self, tmp_path):
        """Should return common patches followed by branch patches."""
        patches = self._make_patches(tmp_path)

        found = find_patches(patches, "21.02")

        assert [p.name for p in found] == ["010-common.patch", "020-branch.patch"]

    def test_find_patches_missing_dir(self, tmp_path):
        assert find_patches(tmp_path / "missing", "21.02") == []

    def test_apply_patches(self, tmp_path):
        """Should run patch -p1 for each patch inside the root."""
        patches = self._make_patches(tmp_path)
        root = tmp_path / "root"
        root.mkdir()

        with patch("falter_imagegen.toolchain.fetch.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            applied = apply_patches(root, patches, "snapshot")

        assert [p.name for p in applied] == ["010-common.patch", "030-snapshot.patch"]
        assert mock_run.call_count == 2
        args, kwargs = mock_run.call_args
        assert args[0][:2] == ["patch", "-p1"]
        assert kwargs["cwd"] == root

    def test_apply_patch_failure(self, tmp_path):
        """A failing patch should raise ToolchainFetchFailed."""
        patches = self._make_patches(tmp_path)

        with patch("falter_imagegen.toolchain.fetch.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(
                returncode=1, stdout="Hunk #1 FAILED", stderr=""
            )
            with pytest.raises(ToolchainFetchFailed) as exc_info:
                apply_patches(tmp_path, patches, "21.02")

        assert exc_info.value.code == "patch_error"
        assert "010-common.patch" in str(exc_info.value)

    def test_patch_not_installed(self, tmp_path):
        patches = self._make_patches(tmp_path)

        with patch(
            "falter_imagegen.toolchain.fetch.subprocess.run",
            side_effect=FileNotFoundError("patch"),
        ), pytest.raises(ToolchainFetchFailed) as exc_info:
            apply_patches(tmp_path, patches, "21.02")

        assert exc_info.value.code == "execution_error"
