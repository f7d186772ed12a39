"""Pinned package downloads with progress tracking and checksum verification.

This module retrieves foreign binary packages, verifies them against their
pinned SHA-256 before anything else looks at the bytes, and keeps verified
archives in a content-addressed cache so a later fetch of the same pin is
served locally.

There is no retry loop: a transport failure surfaces as FetchUnavailable
and the caller decides whether to run the pipeline again.
"""

import hashlib
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from ..config.targets import NativeDependencySpec, TargetConfigError
from ..errors import PipelineError
from .cache import Cache
from .digest import DigestFormatError, normalize_sha256, sha256_file
from .single_flight import SingleFlight


class FetchUnavailable(PipelineError):
    """Raised when a package cannot be retrieved (network/transport failure)."""

    pass


class ChecksumMismatch(PipelineError):
    """Raised when retrieved content does not match its pinned hash."""

    def __init__(self, message: str, expected: str, actual: str, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class RawArchive:
    """A verified package archive in the content-addressed cache."""

    name: str
    path: Path
    sha256: str
    url: str


class PackageDownloader:
    """Downloads files over HTTP with progress tracking."""

    def __init__(self, chunk_size: int = 8192, timeout: float = 30, show_progress: bool = True):
        """Initialize downloader.

        Args:
            chunk_size: Size of chunks for downloading and hashing
            timeout: Connect/read timeout in seconds
            show_progress: Whether to show a progress bar
        """
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.show_progress = show_progress

    def download(self, url: str, dest_path: Path, expected_sha256: Optional[str] = None) -> str:
        """Download a file from a URL.

        The payload is written to a temporary sibling and only moved into
        place once its digest has been checked.

        Args:
            url: URL to download from
            dest_path: Destination file path
            expected_sha256: Hex SHA-256 the payload must have

        Returns:
            Hex SHA-256 of the downloaded payload

        Raises:
            FetchUnavailable: If the transfer fails or the file cannot be written
            ChecksumMismatch: If the payload digest differs from expected_sha256
        """
        dest_path = Path(dest_path)
        temp_file = dest_path.with_name(f"{dest_path.name}.{os.getpid()}.tmp")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            response = requests.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get("content-length", 0))

            progress_bar = None
            if self.show_progress and total_size > 0:
                filename = Path(urlparse(url).path).name
                progress_bar = tqdm(
                    total=total_size,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc=f"Downloading {filename}",
                )

            sha256 = hashlib.sha256()
            try:
                with open(temp_file, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            f.write(chunk)
                            sha256.update(chunk)
                            if progress_bar:
                                progress_bar.update(len(chunk))
            finally:
                if progress_bar:
                    progress_bar.close()

            actual = sha256.hexdigest()
            if expected_sha256 is not None and actual != expected_sha256:
                raise ChecksumMismatch(
                    f"Checksum mismatch for {url}\n"
                    + f"Expected: {expected_sha256}\n"
                    + f"Got: {actual}",
                    expected=expected_sha256,
                    actual=actual,
                )

            os.replace(temp_file, dest_path)
            return actual

        except requests.RequestException as e:
            raise FetchUnavailable(f"Failed to download {url}: {e}", cause=e) from e
        except OSError as e:
            raise FetchUnavailable(f"Failed to write {dest_path}: {e}", cause=e) from e
        finally:
            if temp_file.exists():
                temp_file.unlink()


class NativeDependencyFetcher:
    """Fetches pinned native dependency archives into the cache.

    Concurrent fetches of the same pinned hash are deduplicated; the first
    caller downloads, the others wait for its result.
    """

    _flights: SingleFlight[RawArchive] = SingleFlight("archives")

    def __init__(self, cache: Cache, downloader: Optional[PackageDownloader] = None):
        self.cache = cache
        self.downloader = downloader or PackageDownloader()

    def fetch(self, spec: NativeDependencySpec) -> RawArchive:
        """Retrieve and verify the archive of a dependency.

        Args:
            spec: Dependency to fetch

        Returns:
            RawArchive pointing into the content-addressed cache

        Raises:
            ChecksumMismatch: If the content does not match spec.pinned_hash
            FetchUnavailable: On transport failure or a malformed pin/URL
        """
        try:
            expected = normalize_sha256(spec.pinned_hash)
            url = spec.url
        except (DigestFormatError, TargetConfigError) as e:
            raise FetchUnavailable(f"Cannot fetch '{spec.name}': {e}", cause=e) from e

        key = (str(self.cache.archives_dir), expected)
        archive = self._flights.do(key, lambda: self._fetch_verified(spec, url, expected))
        if archive.name != spec.name:
            archive = replace(archive, name=spec.name, url=url)
        return archive

    def _fetch_verified(self, spec: NativeDependencySpec, url: str, expected: str) -> RawArchive:
        archive_path = self.cache.get_archive_path(expected, spec.archive_filename)

        if archive_path.exists():
            try:
                actual = sha256_file(archive_path)
                if actual == expected:
                    logging.info(f"Using cached {spec.name} archive {archive_path.name}")
                    return RawArchive(name=spec.name, path=archive_path, sha256=expected, url=url)
                logging.warning(
                    f"Cached archive {archive_path} failed verification "
                    f"(got {actual}), re-downloading..."
                )
                archive_path.unlink()
            except OSError as e:
                raise FetchUnavailable(f"Cannot read cached archive {archive_path}: {e}", cause=e) from e

        logging.info(f"Fetching {spec.name} from {url}")
        try:
            self.downloader.download(url, archive_path, expected_sha256=expected)
        except ChecksumMismatch as e:
            logging.error(f"Integrity failure for {spec.name}: expected {e.expected}, got {e.actual}")
            raise

        return RawArchive(name=spec.name, path=archive_path, sha256=expected, url=url)

    @classmethod
    def reset(cls) -> None:
        """Forget in-process results (the on-disk cache is untouched)."""
        cls._flights.clear()
