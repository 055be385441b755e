"""Tests for Image Builder introspection and feed installation."""

import base64
import subprocess
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from falter_imagegen.errors import InvalidSigningKey, ToolchainFetchFailed
from falter_imagegen.toolchain.catalog import (
    MakeInfoCatalog,
    feed_repository_line,
    install_feed_repository,
    install_signing_key,
    parse_base_arch,
    parse_profiles,
    parse_repositories,
    usign_fingerprint,
    validate_signing_key,
)

MAKE_INFO = """Current Target: "ath79/generic"
Current Revision: "r16325-88151b8303"
Default Packages: base-files busybox ca-bundle dropbear
Available Profiles:

tplink_cpe210-v1:
    TP-Link CPE210 v1
    Packages: rssileds
    hasImageMetadata: 1
    SupportedDevices: tplink,cpe210-v1
glinet_gl-ar150:
    GL.iNet GL-AR150
    Packages: kmod-usb2 kmod-usb-core
"""

REPOSITORIES_CONF = """\
src/gz openwrt_core https://downloads.openwrt.org/releases/21.02.1/targets/ath79/generic/packages
src/gz openwrt_base https://downloads.openwrt.org/releases/21.02.1/packages/mips_24kc/base
src/gz openwrt_luci https://downloads.openwrt.org/releases/21.02.1/packages/mips_24kc/luci
## This is the local package repository, do not remove!
src imagebuilder file:packages
option check_signature
"""

FINGERPRINT = bytes.fromhex("0123456789abcdef")
KEY_BODY = base64.b64encode(b"Ed" + FINGERPRINT + bytes(32)).decode()
SIGNING_KEY = f"untrusted comment: public key 0123456789abcdef\n{KEY_BODY}\n"
KEY_URL = "https://feed.example.com/feed/packagefeed_master.pub"


class TestParseProfiles:
    """Tests for parse_profiles function."""

    def test_profiles(self):
        """Should return profile names and skip headers."""
        assert parse_profiles(MAKE_INFO) == ["tplink_cpe210-v1", "glinet_gl-ar150"]

    def test_empty_output(self):
        assert parse_profiles("") == []


class TestMakeInfoCatalog:
    """Tests for MakeInfoCatalog."""

    def test_list_profiles(self, tmp_path):
        """Should run make info in the Image Builder root."""
        with patch("falter_imagegen.toolchain.catalog.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=MAKE_INFO)
            profiles = MakeInfoCatalog(tmp_path).list_profiles()

        assert profiles == ["tplink_cpe210-v1", "glinet_gl-ar150"]
        args, kwargs = mock_run.call_args
        assert args[0] == ["make", "info"]
        assert kwargs["cwd"] == tmp_path

    def test_make_info_failure(self, tmp_path):
        """A failing make info should raise ToolchainFetchFailed."""
        error = subprocess.CalledProcessError(2, ["make", "info"], stderr="boom")
        with patch(
            "falter_imagegen.toolchain.catalog.subprocess.run", side_effect=error
        ), pytest.raises(ToolchainFetchFailed) as exc_info:
            MakeInfoCatalog(tmp_path).list_profiles()

        assert exc_info.value.code == "make_info_error"

    def test_make_info_timeout(self, tmp_path):
        error = subprocess.TimeoutExpired(["make", "info"], 300)
        with patch(
            "falter_imagegen.toolchain.catalog.subprocess.run", side_effect=error
        ), pytest.raises(ToolchainFetchFailed) as exc_info:
            MakeInfoCatalog(tmp_path).list_profiles()

        assert exc_info.value.code == "timeout"


class TestRepositories:
    """Tests for repositories.conf handling."""

    def test_parse_repositories(self):
        feeds = parse_repositories(REPOSITORIES_CONF)
        assert feeds["openwrt_base"].endswith("/mips_24kc/base")
        assert feeds["imagebuilder"] == "file:packages"

    def test_base_arch(self):
        """Should take the segment after 'packages'."""
        assert parse_base_arch(REPOSITORIES_CONF, "21.02") == "mips_24kc"

    def test_base_arch_snapshot(self):
        content = (
            "src/gz openwrt_base "
            "https://downloads.openwrt.org/snapshots/packages/aarch64_cortex-a53/base\n"
        )
        assert parse_base_arch(content, "snapshot") == "aarch64_cortex-a53"

    def test_base_arch_fallback_index(self):
        """URLs without 'packages' should use the per-branch segment index."""
        content = "src/gz openwrt_base https://mirror.example.com/snapshots/x/mipsel/base\n"
        assert parse_base_arch(content, "snapshot") == "mipsel"

    def test_missing_base_feed(self):
        with pytest.raises(ToolchainFetchFailed) as exc_info:
            parse_base_arch("src imagebuilder file:packages\n", "21.02")
        assert exc_info.value.code == "missing_base_feed"

    def test_feed_repository_line(self):
        line = feed_repository_line(
            "https://feed.example.com/feed/", "1.2.3", "mips_24kc", "falter"
        )
        assert line == (
            "src/gz falter "
            "https://feed.example.com/feed/1.2.3/packages/mips_24kc/falter"
        )

    def test_install_feed_repository(self, tmp_path):
        """Should append the falter feed once."""
        conf = tmp_path / "repositories.conf"
        conf.write_text(REPOSITORIES_CONF)

        for _ in range(2):
            arch = install_feed_repository(
                tmp_path, "https://feed.example.com/feed", "1.2.3", "falter", "21.02"
            )

        assert arch == "mips_24kc"
        lines = conf.read_text().splitlines()
        assert lines.count(
            "src/gz falter https://feed.example.com/feed/1.2.3/packages/mips_24kc/falter"
        ) == 1
        assert lines[0].startswith("src/gz openwrt_core")

    def test_install_feed_repository_missing_conf(self, tmp_path):
        with pytest.raises(ToolchainFetchFailed) as exc_info:
            install_feed_repository(
                tmp_path, "https://feed.example.com/feed", "1.2.3", "falter", "21.02"
            )
        assert exc_info.value.code == "missing_repositories"


class TestSigningKey:
    """Tests for signing key validation and installation."""

    def test_fingerprint(self):
        assert usign_fingerprint(SIGNING_KEY) == "0123456789abcdef"

    def test_missing_marker(self):
        """Keys without the untrusted comment marker should be rejected."""
        with pytest.raises(InvalidSigningKey) as exc_info:
            validate_signing_key(f"{KEY_BODY}\n")
        assert exc_info.value.code == "missing_marker"

    def test_invalid_body(self):
        with pytest.raises(InvalidSigningKey) as exc_info:
            validate_signing_key("untrusted comment: x\nnot base64!!\n")
        assert exc_info.value.code == "invalid_key_data"

    def test_wrong_length(self):
        body = base64.b64encode(b"short").decode()
        with pytest.raises(InvalidSigningKey) as exc_info:
            validate_signing_key(f"untrusted comment: x\n{body}\n")
        assert exc_info.value.code == "invalid_key_data"

    @respx.mock
    def test_install_signing_key(self, tmp_path):
        """Should store the key under keys/<fingerprint>."""
        respx.get(KEY_URL).mock(return_value=httpx.Response(200, text=SIGNING_KEY))

        with httpx.Client() as client:
            key_path = install_signing_key(client, KEY_URL, tmp_path)

        assert key_path == tmp_path / "keys" / "0123456789abcdef"
        assert key_path.read_text() == SIGNING_KEY

    @respx.mock
    def test_install_invalid_key(self, tmp_path):
        """An HTML error page instead of a key should be rejected."""
        respx.get(KEY_URL).mock(
            return_value=httpx.Response(200, text="<html>Not here</html>")
        )

        with httpx.Client() as client, pytest.raises(InvalidSigningKey):
            install_signing_key(client, KEY_URL, tmp_path)

        assert not (tmp_path / "keys").exists()

    @respx.mock
    def test_key_unavailable(self, tmp_path):
        respx.get(KEY_URL).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(InvalidSigningKey) as exc_info:
            install_signing_key(client, KEY_URL, tmp_path)

        assert exc_info.value.code == "key_unavailable"
