"""
Pytest configuration for the crosspack test suite.

This configuration enables the --full flag to run integration tests.
"""

import pytest

from crosspack.packages.archive_utils import PackageTransformer
from crosspack.packages.downloader import NativeDependencyFetcher
from crosspack.packages.toolchain import ToolchainProvider


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--full",
        action="store_true",
        default=False,
        help="Run full test suite including integration tests (slow, needs cargo)",
    )


def pytest_configure(config):
    """Configure pytest based on command-line options."""
    if config.getoption("--full"):
        # Remove the default marker expression that excludes integration tests
        markexpr = config.getoption("-m", "")
        if markexpr == "not integration":
            config.option.markexpr = ""


@pytest.fixture(autouse=True)
def reset_process_caches(monkeypatch):
    """Isolate the process-wide single-flight caches between tests."""
    monkeypatch.delenv("CROSSPACK_CACHE_DIR", raising=False)
    ToolchainProvider.reset()
    NativeDependencyFetcher.reset()
    PackageTransformer.reset()
    yield
    ToolchainProvider.reset()
    NativeDependencyFetcher.reset()
    PackageTransformer.reset()
