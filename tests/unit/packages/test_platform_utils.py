"""Unit tests for host platform detection."""

from unittest.mock import patch

import pytest

from crosspack.packages.platform_utils import PlatformDetector, PlatformError


class TestPlatformDetector:
    """Test cases for PlatformDetector."""

    @pytest.mark.parametrize(
        "system,machine,expected",
        [
            ("Linux", "x86_64", "x86_64-unknown-linux-gnu"),
            ("Linux", "aarch64", "aarch64-unknown-linux-gnu"),
            ("Linux", "armv7l", "armv7-unknown-linux-gnueabihf"),
            ("Darwin", "arm64", "aarch64-apple-darwin"),
            ("Darwin", "x86_64", "x86_64-apple-darwin"),
            ("Windows", "AMD64", "x86_64-pc-windows-msvc"),
            ("Windows", "x86", "i686-pc-windows-msvc"),
        ],
    )
    def test_detect_host_triple(self, system, machine, expected):
        """Test mapping OS/architecture to a Rust triple."""
        with patch("platform.system", return_value=system), patch("platform.machine", return_value=machine):
            assert PlatformDetector.detect_host_triple() == expected

    def test_unsupported_system(self):
        """Test that unknown operating systems are rejected."""
        with patch("platform.system", return_value="Haiku"), patch("platform.machine", return_value="x86_64"):
            with pytest.raises(PlatformError, match="Unsupported platform"):
                PlatformDetector.detect_host()

    def test_unsupported_architecture(self):
        """Test that unknown architectures are rejected."""
        with patch("platform.system", return_value="Linux"), patch("platform.machine", return_value="sparc64"):
            with pytest.raises(PlatformError, match="Unsupported architecture"):
                PlatformDetector.detect_host()

    def test_executable_suffix(self):
        """Test executable suffixes per triple."""
        assert PlatformDetector.executable_suffix("x86_64-pc-windows-gnu") == ".exe"
        assert PlatformDetector.executable_suffix("x86_64-pc-windows-msvc") == ".exe"
        assert PlatformDetector.executable_suffix("x86_64-unknown-linux-musl") == ""
        assert PlatformDetector.executable_suffix("aarch64-apple-darwin") == ""

    def test_get_platform_info(self):
        """Test platform info contains the host triple."""
        with patch("platform.system", return_value="Linux"), patch("platform.machine", return_value="x86_64"):
            info = PlatformDetector.get_platform_info()
        assert info["host_triple"] == "x86_64-unknown-linux-gnu"
        assert "python_version" in info
