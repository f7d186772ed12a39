"""
crosspack.ini configuration parser.

This module reads the optional project configuration and overlays it on
the built-in target table and dependency manifest.

Example crosspack.ini:
    [project]
    binary = curses
    source = .
    dist_dir = dist

    [target:x86_64-pc-windows-gnu]
    env =
        OPUS_LIB_DIR = /opt/opus/lib
    test_runner = wine64
    platform_suffix = win64
    dependencies = libopus

    [dependency:libopus]
    filename = opus-1.4-2-any.pkg.tar.zst
    sha256 = 0zp5vbb5pj1qhdrqlyhc9dzsaixnjls82zx3c6x174miqb4f4j5z

Usage:
    config = CrosspackConfig.load(Path("."))
    targets = config.get_targets(host_triple)
    deps = config.get_dependencies()
"""

import configparser
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .targets import (
    DEFAULT_DEPENDENCIES,
    MSYS2_CLANG64_MIRROR,
    MSYS2_CLANG64_TEMPLATE,
    NativeDependencySpec,
    RuntimeSelection,
    TargetConfigError,
    TargetOverride,
    TargetSpec,
    default_target_table,
)

CONFIG_FILENAME = "crosspack.ini"


class CrosspackConfigError(Exception):
    """Exception raised for crosspack.ini configuration errors."""

    pass


@dataclass(frozen=True)
class ProjectSettings:
    """Project-wide settings from the [project] section."""

    project_dir: Path
    binary: str = "curses"
    source_dir: Path = Path(".")
    dist_dir: Path = Path("dist")
    bin_dir: str = "bin"
    cargo_package: Optional[str] = None
    companions: Tuple[str, ...] = ()

    @property
    def manifest_path(self) -> Path:
        return self.source_dir / "Cargo.toml"


class CrosspackConfig:
    """
    Parser for crosspack.ini configuration files.

    A missing file is not an error: the built-in target table and
    dependency manifest are used unchanged.
    """

    def __init__(self, project_dir: Path, ini_path: Optional[Path] = None):
        """
        Initialize the parser.

        Args:
            project_dir: Project root directory
            ini_path: Explicit config path (default: <project_dir>/crosspack.ini)

        Raises:
            CrosspackConfigError: If an explicit file doesn't exist or cannot be parsed
        """
        self.project_dir = Path(project_dir).resolve()
        self.config = configparser.ConfigParser(
            allow_no_value=True, interpolation=configparser.ExtendedInterpolation()
        )

        if ini_path is None:
            ini_path = self.project_dir / CONFIG_FILENAME
            explicit = False
        else:
            explicit = True
        self.ini_path = Path(ini_path)

        if not self.ini_path.exists():
            if explicit:
                raise CrosspackConfigError(f"Configuration file not found: {self.ini_path}")
            return

        try:
            self.config.read(self.ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise CrosspackConfigError(f"Failed to parse {self.ini_path}: {e}") from e

    @classmethod
    def load(cls, project_dir: Path, ini_path: Optional[Path] = None) -> "CrosspackConfig":
        return cls(project_dir, ini_path)

    def _get(self, section: str, key: str, fallback: Optional[str] = None) -> Optional[str]:
        try:
            value = self.config.get(section, key, fallback=fallback)
        except configparser.Error as e:
            raise CrosspackConfigError(f"Invalid value for [{section}] {key}: {e}") from e
        return value.strip() if isinstance(value, str) else value

    def get_project(self) -> ProjectSettings:
        """Read the [project] section, resolving paths against the project dir."""
        section = "project"
        settings = ProjectSettings(
            project_dir=self.project_dir,
            source_dir=self.project_dir,
            dist_dir=self.project_dir / "dist",
        )
        if section not in self.config:
            return settings

        binary = self._get(section, "binary") or settings.binary
        source = self._get(section, "source")
        dist = self._get(section, "dist_dir")
        bin_dir = self._get(section, "bin_dir")
        package = self._get(section, "package")
        companions = self._get(section, "companions")

        return replace(
            settings,
            binary=binary,
            source_dir=(self.project_dir / source).resolve() if source else settings.source_dir,
            dist_dir=(self.project_dir / dist).resolve() if dist else settings.dist_dir,
            bin_dir=bin_dir if bin_dir is not None else settings.bin_dir,
            cargo_package=package or None,
            companions=self.parse_list(companions) if companions else (),
        )

    def get_target_names(self) -> List[str]:
        """Names of all [target:<name>] sections in file order."""
        return [
            section.split(":", 1)[1]
            for section in self.config.sections()
            if section.startswith("target:")
        ]

    def get_targets(self, host_triple: str) -> Dict[str, TargetSpec]:
        """Build the effective target table.

        Built-in targets are overlaid with same-named sections; sections for
        unknown names define new targets and must give a triple.

        Args:
            host_triple: Triple of the build host

        Returns:
            Mapping from target name to TargetSpec
        """
        table = default_target_table(host_triple)
        for name in self.get_target_names():
            override = self._parse_target_override(name)
            base = table.get(name)
            if base is None:
                if not override.triple:
                    raise CrosspackConfigError(
                        f"Target '{name}' is not built in and has no 'triple'"
                    )
                base = TargetSpec(name=name, triple=override.triple, host_triple=host_triple)
            table[name] = base.with_overrides(override)
        return table

    def _parse_target_override(self, name: str) -> TargetOverride:
        section = f"target:{name}"
        env_text = self._get(section, "env")
        rustflags = self._get(section, "rustflags")
        deps = self._get(section, "dependencies")
        run_tests: Optional[bool] = None
        if self.config.has_option(section, "run_tests"):
            try:
                run_tests = self.config.getboolean(section, "run_tests")
            except ValueError as e:
                raise CrosspackConfigError(f"[{section}] run_tests: {e}") from e

        return TargetOverride(
            triple=self._get(section, "triple"),
            env=self.parse_env(env_text) if env_text is not None else None,
            rustflags=tuple(shlex.split(rustflags)) if rustflags is not None else None,
            test_runner=self._get(section, "test_runner"),
            isolation_var=self._get(section, "isolation_var"),
            platform_suffix=self._get(section, "platform_suffix"),
            dependencies=self.parse_list(deps) if deps is not None else None,
            run_tests=run_tests,
        )

    def get_dependencies(self) -> Dict[str, NativeDependencySpec]:
        """Build the dependency manifest (built-ins overlaid by [dependency:*])."""
        deps = dict(DEFAULT_DEPENDENCIES)
        for section in self.config.sections():
            if not section.startswith("dependency:"):
                continue
            name = section.split(":", 1)[1]
            deps[name] = self._parse_dependency(name, deps.get(name))
        return deps

    def _parse_dependency(
        self, name: str, base: Optional[NativeDependencySpec]
    ) -> NativeDependencySpec:
        section = f"dependency:{name}"
        pinned = self._get(section, "sha256")
        if base is None:
            if not pinned:
                raise CrosspackConfigError(f"Dependency '{name}' is missing 'sha256'")
            base = NativeDependencySpec(
                name=name,
                url_template=MSYS2_CLANG64_TEMPLATE,
                pinned_hash=pinned,
                mirror=MSYS2_CLANG64_MIRROR,
            )

        runtime = base.runtime
        runtime = RuntimeSelection(
            source_dir=self._get(section, "runtime_dir", runtime.source_dir) or "",
            pattern=self._get(section, "runtime_pattern", runtime.pattern) or runtime.pattern,
            dest_dir=self._get(section, "runtime_dest", runtime.dest_dir) or "",
        )
        discard = self._get(section, "discard")
        keep = self._get(section, "keep")

        spec = replace(
            base,
            url_template=self._get(section, "url_template", base.url_template) or base.url_template,
            pinned_hash=pinned or base.pinned_hash,
            mirror=self._get(section, "mirror", base.mirror) or base.mirror,
            filename=self._get(section, "filename", base.filename) or "",
            runtime=runtime,
            discard_patterns=self.parse_list(discard) if discard is not None else base.discard_patterns,
            keep_patterns=self.parse_list(keep) if keep is not None else base.keep_patterns,
        )
        try:
            spec.url
        except TargetConfigError as e:
            raise CrosspackConfigError(str(e)) from e
        return spec

    @staticmethod
    def parse_env(text: str) -> Dict[str, str]:
        """
        Parse a multi-line ``KEY = value`` block.

        Example:
            env =
                OPUS_LIB_DIR = /opt/opus/lib
                OPUS_STATIC = 1
            Returns: {'OPUS_LIB_DIR': '/opt/opus/lib', 'OPUS_STATIC': '1'}
        """
        env: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                raise CrosspackConfigError(f"Invalid env entry (expected KEY = value): {line}")
            key, value = line.split("=", 1)
            env[key.strip()] = value.strip()
        return env

    @staticmethod
    def parse_list(text: str) -> Tuple[str, ...]:
        """Split a newline/comma separated list, dropping empty items."""
        items = []
        for line in text.split("\n"):
            for item in line.split(","):
                item = item.strip()
                if item:
                    items.append(item)
        return tuple(items)
