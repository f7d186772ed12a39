"""Unit tests for pinned package downloads."""

import errno
import hashlib
from unittest.mock import MagicMock, patch

import pytest
import requests

from crosspack.config.targets import MSYS2_CLANG64_TEMPLATE, NativeDependencySpec
from crosspack.packages.cache import Cache
from crosspack.packages.downloader import (
    ChecksumMismatch,
    FetchUnavailable,
    NativeDependencyFetcher,
    PackageDownloader,
)

PAYLOAD = b"pretend this is a .pkg.tar.zst" * 64
PAYLOAD_SHA = hashlib.sha256(PAYLOAD).hexdigest()


def make_response(payload: bytes = PAYLOAD) -> MagicMock:
    response = MagicMock()
    response.headers = {"content-length": str(len(payload))}
    response.iter_content.return_value = [payload[i : i + 100] for i in range(0, len(payload), 100)]
    response.raise_for_status.return_value = None
    return response


def make_spec(pinned: str = PAYLOAD_SHA, name: str = "libopus") -> NativeDependencySpec:
    return NativeDependencySpec(
        name=name,
        url_template=MSYS2_CLANG64_TEMPLATE,
        pinned_hash=pinned,
        mirror="https://mirror.example.org/clang64",
        filename="opus-1.4-2-any.pkg.tar.zst",
    )


class TestPackageDownloader:
    """Test cases for PackageDownloader."""

    def test_download_writes_file_and_returns_digest(self, tmp_path):
        """Test a successful download."""
        dest = tmp_path / "out" / "pkg.tar.zst"
        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()) as mock_get:
            digest = PackageDownloader(show_progress=False).download("https://x/pkg.tar.zst", dest, PAYLOAD_SHA)

        assert digest == PAYLOAD_SHA
        assert dest.read_bytes() == PAYLOAD
        mock_get.assert_called_once()
        assert mock_get.call_args.kwargs["stream"] is True

    def test_checksum_mismatch_leaves_nothing_behind(self, tmp_path):
        """Test that a payload with the wrong digest is never moved into place."""
        dest = tmp_path / "pkg.tar.zst"
        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()):
            with pytest.raises(ChecksumMismatch) as exc_info:
                PackageDownloader(show_progress=False).download("https://x/pkg", dest, "0" * 64)

        assert exc_info.value.expected == "0" * 64
        assert exc_info.value.actual == PAYLOAD_SHA
        assert not dest.exists()
        assert list(tmp_path.iterdir()) == []

    def test_transport_error_is_fetch_unavailable(self, tmp_path):
        """Test that requests errors are translated."""
        with patch(
            "crosspack.packages.downloader.requests.get",
            side_effect=requests.ConnectionError("connection refused"),
        ):
            with pytest.raises(FetchUnavailable) as exc_info:
                PackageDownloader(show_progress=False).download("https://x/pkg", tmp_path / "pkg")

        assert isinstance(exc_info.value.cause, requests.ConnectionError)

    def test_http_error_is_fetch_unavailable(self, tmp_path):
        """Test that HTTP status errors are translated."""
        response = make_response()
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        with patch("crosspack.packages.downloader.requests.get", return_value=response):
            with pytest.raises(FetchUnavailable, match="404"):
                PackageDownloader(show_progress=False).download("https://x/pkg", tmp_path / "pkg")

    def test_disk_error_is_fetch_unavailable(self, tmp_path):
        """Test that a full disk while writing is translated and leaves no temp file."""
        response = make_response()
        response.iter_content.side_effect = OSError(errno.ENOSPC, "No space left on device")
        with patch("crosspack.packages.downloader.requests.get", return_value=response):
            with pytest.raises(FetchUnavailable, match="No space left") as exc_info:
                PackageDownloader(show_progress=False).download("https://x/pkg", tmp_path / "pkg", PAYLOAD_SHA)

        assert isinstance(exc_info.value.cause, OSError)
        assert list(tmp_path.iterdir()) == []


class TestNativeDependencyFetcher:
    """Test cases for NativeDependencyFetcher."""

    def test_fetch_renders_url_and_caches_by_hash(self, tmp_path):
        """Test fetching a dependency into the content-addressed cache."""
        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))

        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()) as mock_get:
            archive = fetcher.fetch(make_spec())

        assert mock_get.call_args.args[0] == (
            "https://mirror.example.org/clang64/mingw-w64-clang-x86_64-opus-1.4-2-any.pkg.tar.zst"
        )
        assert archive.sha256 == PAYLOAD_SHA
        assert archive.path == cache.get_archive_path(PAYLOAD_SHA, "opus-1.4-2-any.pkg.tar.zst")
        assert archive.path.read_bytes() == PAYLOAD

    def test_repeated_fetch_never_touches_network(self, tmp_path):
        """Test that a verified archive is served from the cache."""
        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))
        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()):
            first = fetcher.fetch(make_spec())

        # New process: in-memory results are gone, the disk cache remains
        NativeDependencyFetcher.reset()
        with patch("crosspack.packages.downloader.requests.get") as mock_get:
            second = fetcher.fetch(make_spec())
            mock_get.assert_not_called()

        assert second.path == first.path
        assert second.path.read_bytes() == PAYLOAD

    def test_corrupted_cache_entry_is_refetched(self, tmp_path):
        """Test that a cache file that fails verification is replaced."""
        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))
        path = cache.get_archive_path(PAYLOAD_SHA, "opus-1.4-2-any.pkg.tar.zst")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"truncated")

        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()) as mock_get:
            archive = fetcher.fetch(make_spec())
            mock_get.assert_called_once()

        assert archive.path.read_bytes() == PAYLOAD

    def test_changed_remote_content_is_checksum_mismatch(self, tmp_path):
        """Test that different bytes under the same pin are rejected."""
        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))

        with patch(
            "crosspack.packages.downloader.requests.get",
            return_value=make_response(b"tampered content"),
        ):
            with pytest.raises(ChecksumMismatch):
                fetcher.fetch(make_spec())

        assert not cache.get_archive_path(PAYLOAD_SHA, "opus-1.4-2-any.pkg.tar.zst").exists()

    def test_nix_base32_pin(self, tmp_path):
        """Test that a Nix base-32 pin verifies the same bytes as its hex form."""
        from crosspack.packages.digest import nix_base32_encode

        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))
        pinned = nix_base32_encode(bytes.fromhex(PAYLOAD_SHA))

        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()):
            archive = fetcher.fetch(make_spec(pinned=pinned))

        assert archive.sha256 == PAYLOAD_SHA

    def test_malformed_pin_is_fetch_unavailable(self, tmp_path):
        """Test that an unparsable pin fails before any network access."""
        fetcher = NativeDependencyFetcher(Cache(tmp_path), PackageDownloader(show_progress=False))
        with patch("crosspack.packages.downloader.requests.get") as mock_get:
            with pytest.raises(FetchUnavailable, match="libopus"):
                fetcher.fetch(make_spec(pinned="not-a-hash"))
            mock_get.assert_not_called()

    def test_same_hash_different_name(self, tmp_path):
        """Test that the archive carries the requesting dependency's name."""
        cache = Cache(tmp_path)
        fetcher = NativeDependencyFetcher(cache, PackageDownloader(show_progress=False))
        with patch("crosspack.packages.downloader.requests.get", return_value=make_response()):
            first = fetcher.fetch(make_spec(name="libopus"))
            second = fetcher.fetch(make_spec(name="opus-alias"))

        assert first.name == "libopus"
        assert second.name == "opus-alias"
        assert second.path == first.path
