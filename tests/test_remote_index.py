"""Tests for remote directory index listing."""

import httpx
import pytest
import respx

from falter_imagegen.errors import RemoteIndexError
from falter_imagegen.remote.index import (
    ensure_trailing_slash,
    list_directories,
    list_entries,
    list_subtargets,
    list_targets,
    parse_index,
)

TARGETS_HTML = """<html><body>
<h1>Index of /releases/21.02.1/targets/</h1>
<table>
<tr><td><a href="../">../</a></td></tr>
<tr><td><a href="ath79/">ath79/</a></td></tr>
<tr><td><a href="ramips/">ramips/</a></td></tr>
<tr><td><a href="sha256sums">sha256sums</a></td></tr>
<tr><td><a href="https://openwrt.org/">OpenWrt</a></td></tr>
<tr><td><a href="/releases/">releases</a></td></tr>
</table>
</body></html>
"""


class TestParseIndex:
    """Tests for parse_index function."""

    def test_html_listing(self):
        """Should extract relative links from an HTML index."""
        entries = parse_index(TARGETS_HTML)
        assert entries == ["ath79/", "ramips/", "sha256sums"]

    def test_plain_listing(self):
        """Should read one entry per line from a plain listing."""
        entries = parse_index("generic/\nnand/\n\ntiny/\n")
        assert entries == ["generic/", "nand/", "tiny/"]

    def test_duplicates_removed(self):
        """Should list each entry once."""
        html = '<a href="generic/">generic/</a><a href="generic/">again</a>'
        assert parse_index(html) == ["generic/"]

    def test_nested_paths_skipped(self):
        """Should skip links below the listed directory."""
        html = '<a href="generic/packages/">x</a><a href="nand/">nand/</a>'
        assert parse_index(html) == ["nand/"]

    def test_url_encoded_names(self):
        """Should decode percent-encoded links."""
        html = '<a href="mt7621%2Dtest/">x</a>'
        assert parse_index(html) == ["mt7621-test/"]

    def test_empty_content(self):
        """Should return an empty list for empty content."""
        assert parse_index("") == []


class TestEnsureTrailingSlash:
    """Tests for ensure_trailing_slash function."""

    def test_adds_slash(self):
        assert ensure_trailing_slash("https://x/a") == "https://x/a/"

    def test_collapses_slashes(self):
        assert ensure_trailing_slash("https://x/a//") == "https://x/a/"


class TestListEntries:
    """Tests for list_entries and its wrappers."""

    @respx.mock
    def test_list_targets(self):
        """Should list target directories only."""
        respx.get("https://dl.example.com/targets/").mock(
            return_value=httpx.Response(200, text=TARGETS_HTML)
        )

        with httpx.Client() as client:
            targets = list_targets(client, "https://dl.example.com/targets")

        assert targets == ["ath79", "ramips"]

    @respx.mock
    def test_list_subtargets(self):
        """Should list subtarget directories of a target."""
        respx.get("https://dl.example.com/targets/ath79/").mock(
            return_value=httpx.Response(
                200, text='<a href="generic/">generic/</a><a href="nand/">nand/</a>'
            )
        )

        with httpx.Client() as client:
            subtargets = list_subtargets(client, "https://dl.example.com/targets/ath79/")

        assert subtargets == ["generic", "nand"]

    @respx.mock
    def test_list_directories_skips_files(self):
        """Should drop file entries."""
        respx.get("https://dl.example.com/x/").mock(
            return_value=httpx.Response(200, text="a/\nb.txt\n")
        )

        with httpx.Client() as client:
            assert list_directories(client, "https://dl.example.com/x/") == ["a"]

    @respx.mock
    def test_http_error(self):
        """Should raise RemoteIndexError with http_error code."""
        respx.get("https://dl.example.com/missing/").mock(
            return_value=httpx.Response(404)
        )

        with httpx.Client() as client, pytest.raises(RemoteIndexError) as exc_info:
            list_entries(client, "https://dl.example.com/missing/")

        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout_error(self):
        """Should raise RemoteIndexError with timeout code."""
        respx.get("https://dl.example.com/slow/").mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(RemoteIndexError) as exc_info:
            list_entries(client, "https://dl.example.com/slow/")

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self):
        """Should raise RemoteIndexError with network_error code."""
        respx.get("https://dl.example.com/down/").mock(
            side_effect=httpx.ConnectError("Connection refused")
        )

        with httpx.Client() as client, pytest.raises(RemoteIndexError) as exc_info:
            list_entries(client, "https://dl.example.com/down/")

        assert exc_info.value.code == "network_error"
