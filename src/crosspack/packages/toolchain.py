"""Rust toolchain assembly.

This module composes a minimal cargo/rustc pair with the standard library
component of the requested target triple. For the host triple the base
toolchain is enough; for a cross triple the ``rust-std`` component must be
present in the sysroot and is installed through rustup when it is missing.

Resolutions are cached process-wide by triple: concurrent pipelines asking
for the same triple share one acquisition.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..command_runner import CommandRunner, CommandTimeout
from ..config.targets import TargetSpec
from ..errors import PipelineError
from .single_flight import SingleFlight


class UnsupportedTarget(PipelineError):
    """Raised when no toolchain can produce binaries for a triple."""

    pass


@dataclass(frozen=True)
class Toolchain:
    """A cargo/rustc pair able to build for one triple."""

    triple: str
    cargo: Path
    rustc: Path
    sysroot: Path
    host_triple: str
    release: str = ""

    @property
    def is_cross(self) -> bool:
        return self.triple != self.host_triple

    @property
    def std_lib_dir(self) -> Path:
        """Directory holding the target's standard library rlibs."""
        return self.sysroot / "lib" / "rustlib" / self.triple / "lib"

    def env(self) -> Dict[str, str]:
        """Variables pinning cargo to this toolchain's rustc."""
        return {"CARGO": str(self.cargo), "RUSTC": str(self.rustc)}


class ToolchainProvider:
    """Resolves TargetSpecs to Toolchains.

    Example:
        provider = ToolchainProvider()
        toolchain = provider.resolve(targets["x86_64-pc-windows-gnu"])
        print(toolchain.std_lib_dir)
    """

    _flights: SingleFlight[Toolchain] = SingleFlight("toolchains")

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        cargo: Optional[Path] = None,
        rustc: Optional[Path] = None,
        rustup: Optional[Path] = None,
        show_progress: bool = True,
    ):
        """Initialize toolchain provider.

        Args:
            runner: Command runner used for rustc/rustup queries
            cargo: Explicit cargo path (default: found on PATH)
            rustc: Explicit rustc path (default: found on PATH)
            rustup: Explicit rustup path (default: found on PATH)
            show_progress: Print component installation progress
        """
        self.runner = runner or CommandRunner()
        self.cargo = cargo
        self.rustc = rustc
        self.rustup = rustup
        self.show_progress = show_progress

    def resolve(self, target: TargetSpec) -> Toolchain:
        """Assemble a toolchain for a target.

        Args:
            target: Target to build for

        Returns:
            Toolchain whose sysroot contains the target's standard library

        Raises:
            UnsupportedTarget: If the base toolchain is missing or no standard
                library component exists for the triple
        """
        return self._flights.do(target.triple, lambda: self._assemble(target))

    def _find_tool(self, explicit: Optional[Path], name: str) -> Optional[Path]:
        if explicit is not None:
            return Path(explicit)
        found = shutil.which(name)
        return Path(found) if found else None

    def _query(self, triple: str, *args: str) -> str:
        try:
            result = self.runner.run(list(args))
        except (FileNotFoundError, CommandTimeout) as e:
            raise UnsupportedTarget(
                f"Cannot query toolchain for {triple}: {e}", cause=e
            ) from e
        if not result.ok:
            raise UnsupportedTarget(
                f"Toolchain query failed for {triple}: {' '.join(args)}\n{result.tail()}"
            )
        return result.stdout.strip()

    def _assemble(self, target: TargetSpec) -> Toolchain:
        triple = target.triple
        cargo = self._find_tool(self.cargo, "cargo")
        rustc = self._find_tool(self.rustc, "rustc")
        if cargo is None or rustc is None:
            raise UnsupportedTarget(
                f"No Rust toolchain found for {triple}: cargo and rustc must be on PATH"
            )

        version_info = self._parse_version(self._query(triple, str(rustc), "-vV"))
        host = version_info.get("host", target.host_triple)
        release = version_info.get("release", "")
        sysroot = Path(self._query(triple, str(rustc), "--print", "sysroot"))

        toolchain = Toolchain(
            triple=triple,
            cargo=cargo,
            rustc=rustc,
            sysroot=sysroot,
            host_triple=host,
            release=release,
        )

        if not toolchain.is_cross or self._has_std(toolchain):
            logging.info(f"Toolchain for {triple}: rustc {release} ({sysroot})")
            return toolchain

        known = self._query(triple, str(rustc), "--print", "target-list").split()
        if triple not in known:
            raise UnsupportedTarget(f"rustc {release} has no standard library component for {triple}")

        self._install_std(toolchain)
        if not self._has_std(toolchain):
            raise UnsupportedTarget(
                f"Standard library for {triple} is still missing from {toolchain.std_lib_dir}"
            )
        logging.info(f"Toolchain for {triple}: rustc {release} + rust-std ({sysroot})")
        return toolchain

    def _install_std(self, toolchain: Toolchain) -> None:
        rustup = self._find_tool(self.rustup, "rustup")
        if rustup is None:
            raise UnsupportedTarget(
                f"Standard library for {toolchain.triple} is not installed and rustup "
                + "is not available to add it"
            )
        if self.show_progress:
            print(f"Installing rust-std for {toolchain.triple}...")
        try:
            result = self.runner.run([str(rustup), "target", "add", toolchain.triple])
        except (FileNotFoundError, CommandTimeout) as e:
            raise UnsupportedTarget(f"rustup failed for {toolchain.triple}: {e}", cause=e) from e
        if not result.ok:
            raise UnsupportedTarget(
                f"rustup could not add {toolchain.triple}:\n{result.tail()}"
            )

    @staticmethod
    def _has_std(toolchain: Toolchain) -> bool:
        lib_dir = toolchain.std_lib_dir
        return lib_dir.is_dir() and any(lib_dir.glob("libstd-*"))

    @staticmethod
    def _parse_version(text: str) -> Dict[str, str]:
        """Parse ``rustc -vV`` output into a dict ('host', 'release', ...)."""
        info: Dict[str, str] = {}
        for line in text.splitlines():
            if ":" in line:
                key, value = line.split(":", 1)
                info[key.strip()] = value.strip()
        return info

    @classmethod
    def reset(cls) -> None:
        """Forget cached resolutions (used by tests)."""
        cls._flights.clear()
