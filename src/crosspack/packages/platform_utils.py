"""Host platform detection.

Maps the running interpreter's OS/architecture onto a Rust target triple,
which is what decides whether a TargetSpec is a cross-compilation.

Supported hosts:
    - Linux: x86_64, aarch64, i686, armv7 (gnu ABI)
    - macOS: x86_64, aarch64
    - Windows: x86_64, i686 (msvc ABI)
"""

import platform
import sys
from typing import Tuple


class PlatformError(Exception):
    """Raised when platform detection fails or platform is unsupported."""

    pass


class PlatformDetector:
    """Detects the host triple used to decide cross-compilation."""

    @staticmethod
    def detect_host() -> Tuple[str, str]:
        """Detect normalized host system and architecture.

        Returns:
            Tuple of (system, arch)
            System: 'linux', 'darwin' or 'windows'
            Arch: 'x86_64', 'i686', 'aarch64' or 'armv7'

        Raises:
            PlatformError: If the host OS is not supported
        """
        system = platform.system().lower()
        machine = platform.machine().lower()

        if system not in ("linux", "darwin", "windows"):
            raise PlatformError(f"Unsupported platform: {system} {machine}")

        if machine in ("x86_64", "amd64"):
            arch = "x86_64"
        elif machine in ("i386", "i686", "x86"):
            arch = "i686"
        elif machine in ("aarch64", "arm64"):
            arch = "aarch64"
        elif machine.startswith("arm"):
            arch = "armv7"
        else:
            raise PlatformError(f"Unsupported architecture: {system} {machine}")

        return system, arch

    @staticmethod
    def detect_host_triple() -> str:
        """Return the Rust target triple of the host.

        Raises:
            PlatformError: If the host is not supported
        """
        system, arch = PlatformDetector.detect_host()

        if system == "linux":
            if arch == "armv7":
                return "armv7-unknown-linux-gnueabihf"
            return f"{arch}-unknown-linux-gnu"
        if system == "darwin":
            return f"{arch}-apple-darwin"
        if arch == "armv7":
            raise PlatformError("Unsupported architecture: windows armv7")
        return f"{arch}-pc-windows-msvc"

    @staticmethod
    def executable_suffix(triple: str) -> str:
        """File suffix of executables produced for a triple ('.exe' or '')."""
        return ".exe" if "-windows-" in triple else ""

    @staticmethod
    def get_platform_info() -> dict:
        """Get detailed information about the host platform."""
        return {
            "system": platform.system(),
            "machine": platform.machine(),
            "platform": platform.platform(),
            "python_version": platform.python_version(),
            "is_64bit": sys.maxsize > 2**32,
            "host_triple": PlatformDetector.detect_host_triple(),
        }
