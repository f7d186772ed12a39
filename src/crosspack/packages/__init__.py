"""Package management for crosspack.

This module handles downloading, verifying, caching and staging the
native dependencies of a target, and assembling the Rust toolchain that
builds it.
"""

from .archive_utils import ExtractionError, FilterRules, PackageTransformer, StagingArtifact
from .cache import Cache
from .digest import DigestFormatError, normalize_sha256
from .downloader import (
    ChecksumMismatch,
    FetchUnavailable,
    NativeDependencyFetcher,
    PackageDownloader,
    RawArchive,
)
from .platform_utils import PlatformDetector, PlatformError
from .single_flight import SingleFlight
from .toolchain import Toolchain, ToolchainProvider, UnsupportedTarget

__all__ = [
    "Cache",
    "SingleFlight",
    "DigestFormatError",
    "normalize_sha256",
    "PackageDownloader",
    "NativeDependencyFetcher",
    "RawArchive",
    "FetchUnavailable",
    "ChecksumMismatch",
    "PackageTransformer",
    "FilterRules",
    "StagingArtifact",
    "ExtractionError",
    "Toolchain",
    "ToolchainProvider",
    "UnsupportedTarget",
    "PlatformDetector",
    "PlatformError",
]
