"""Target and native dependency descriptions.

This module holds the immutable value types that drive a pipeline run and
the built-in static target table:

- ``default``: host build
- ``x86_64-unknown-linux-musl``: statically linked musl build
- ``x86_64-pc-windows-gnu``: Windows build bundled with the MSYS2 opus DLLs
  and archived as ``<binary>-win64.zip``

Overrides from ``crosspack.ini`` are applied by value composition: a base
TargetSpec plus a TargetOverride gives a new TargetSpec.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

MSYS2_CLANG64_MIRROR = "https://mirror.msys2.org/mingw/clang64"
MSYS2_CLANG64_TEMPLATE = "{mirror}/mingw-w64-clang-x86_64-{filename}"

DEFAULT_METADATA_ENTRIES = (".PKGINFO", ".INSTALL", ".MTREE", ".BUILDINFO")
DEFAULT_DISCARD_PATTERNS = ("*.a",)
DEFAULT_KEEP_PATTERNS = ("*.dll.a", "*main.a")


class TargetConfigError(Exception):
    """Raised for unknown targets or malformed target/dependency entries."""

    pass


@dataclass(frozen=True)
class RuntimeSelection:
    """Which staged files of a dependency are needed at runtime.

    Files under ``source_dir`` whose names match ``pattern`` are copied into
    ``dest_dir`` of the bundle.
    """

    source_dir: str = "clang64/bin"
    pattern: str = "*.dll"
    dest_dir: str = "bin"


@dataclass(frozen=True)
class NativeDependencySpec:
    """A pinned foreign binary package.

    Attributes:
        name: Dependency name (e.g. 'libopus')
        url_template: URL with ``{mirror}``, ``{filename}`` and ``{name}`` fields
        pinned_hash: SHA-256 of the archive (hex, Nix base-32 or SRI)
        mirror: Base mirror URL substituted for ``{mirror}``
        filename: Package filename substituted for ``{filename}``
        runtime: Runtime file selection used when bundling
        discard_patterns: Static-archive patterns removed after extraction
        keep_patterns: Exemptions from ``discard_patterns``
    """

    name: str
    url_template: str
    pinned_hash: str
    mirror: str = MSYS2_CLANG64_MIRROR
    filename: str = ""
    runtime: RuntimeSelection = field(default_factory=RuntimeSelection)
    discard_patterns: Tuple[str, ...] = DEFAULT_DISCARD_PATTERNS
    keep_patterns: Tuple[str, ...] = DEFAULT_KEEP_PATTERNS
    metadata_entries: Tuple[str, ...] = DEFAULT_METADATA_ENTRIES

    @property
    def url(self) -> str:
        """Concrete download URL rendered from the template.

        Raises:
            TargetConfigError: If the template references an unknown field
        """
        try:
            return self.url_template.format(
                mirror=self.mirror.rstrip("/"),
                filename=self.filename,
                name=self.name,
            )
        except (KeyError, IndexError) as e:
            raise TargetConfigError(
                f"Invalid url_template for dependency '{self.name}': {self.url_template}"
            ) from e

    @property
    def archive_filename(self) -> str:
        """Filename the archive is stored under in the cache."""
        if self.filename:
            return self.filename
        tail = self.url.rstrip("/").rsplit("/", 1)[-1]
        return tail or f"{self.name}.archive"


@dataclass(frozen=True)
class TargetOverride:
    """Partial TargetSpec read from configuration; None means 'keep base'."""

    triple: Optional[str] = None
    env: Optional[Mapping[str, str]] = None
    rustflags: Optional[Tuple[str, ...]] = None
    test_runner: Optional[str] = None
    isolation_var: Optional[str] = None
    platform_suffix: Optional[str] = None
    dependencies: Optional[Tuple[str, ...]] = None
    run_tests: Optional[bool] = None


@dataclass(frozen=True)
class TargetSpec:
    """Immutable description of one build target.

    Attributes:
        name: Selection name used on the command line
        triple: Rust target triple
        host_triple: Triple of the machine running the build
        env_items: Environment overrides as sorted (key, value) pairs
        rustflags: Extra rustc flags (e.g. '-C target-feature=+crt-static')
        test_runner: Emulator command for running test binaries of a cross target
        isolation_var: Variable the shim points at a fresh scratch directory
        platform_suffix: Archive suffix; None means the target is not archived
        dependencies: Names of native dependencies bundled with the binary
        run_tests: Whether tests run when the invocation does not say otherwise
    """

    name: str
    triple: str
    host_triple: str
    env_items: Tuple[Tuple[str, str], ...] = ()
    rustflags: Tuple[str, ...] = ()
    test_runner: Optional[str] = None
    isolation_var: str = "WINEPREFIX"
    platform_suffix: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    run_tests: bool = False

    @property
    def is_cross_compile(self) -> bool:
        return self.triple != self.host_triple

    @property
    def env(self) -> Dict[str, str]:
        return dict(self.env_items)

    @property
    def cargo_triple_key(self) -> str:
        """Triple in the upper-case form cargo uses for per-target variables."""
        return self.triple.upper().replace("-", "_").replace(".", "_")

    def cargo_target_var(self, suffix: str) -> str:
        """Name of a ``CARGO_TARGET_<TRIPLE>_<SUFFIX>`` variable."""
        return f"CARGO_TARGET_{self.cargo_triple_key}_{suffix}"

    def with_overrides(self, override: TargetOverride) -> "TargetSpec":
        """Return a new TargetSpec with the override's set fields applied.

        ``env`` is merged key by key; every other field is replaced.
        """
        changes: Dict[str, object] = {}
        if override.triple is not None:
            changes["triple"] = override.triple
        if override.env is not None:
            merged = {**self.env, **override.env}
            changes["env_items"] = tuple(sorted(merged.items()))
        if override.rustflags is not None:
            changes["rustflags"] = tuple(override.rustflags)
        if override.test_runner is not None:
            changes["test_runner"] = override.test_runner or None
        if override.isolation_var is not None:
            changes["isolation_var"] = override.isolation_var
        if override.platform_suffix is not None:
            changes["platform_suffix"] = override.platform_suffix or None
        if override.dependencies is not None:
            changes["dependencies"] = tuple(override.dependencies)
        if override.run_tests is not None:
            changes["run_tests"] = override.run_tests
        return replace(self, **changes)


LIBOPUS = NativeDependencySpec(
    name="libopus",
    url_template=MSYS2_CLANG64_TEMPLATE,
    pinned_hash="0zp5vbb5pj1qhdrqlyhc9dzsaixnjls82zx3c6x174miqb4f4j5z",
    filename="opus-1.4-2-any.pkg.tar.zst",
)

DEFAULT_DEPENDENCIES: Dict[str, NativeDependencySpec] = {LIBOPUS.name: LIBOPUS}


def default_target_table(host_triple: str) -> Dict[str, TargetSpec]:
    """Build the static target table for a host.

    Args:
        host_triple: Triple of the machine running the build

    Returns:
        Mapping from target name to TargetSpec, in declaration order
    """
    return {
        "default": TargetSpec(
            name="default",
            triple=host_triple,
            host_triple=host_triple,
        ),
        "x86_64-unknown-linux-musl": TargetSpec(
            name="x86_64-unknown-linux-musl",
            triple="x86_64-unknown-linux-musl",
            host_triple=host_triple,
            rustflags=("-C", "target-feature=+crt-static"),
        ),
        "x86_64-pc-windows-gnu": TargetSpec(
            name="x86_64-pc-windows-gnu",
            triple="x86_64-pc-windows-gnu",
            host_triple=host_triple,
            test_runner="wine64",
            isolation_var="WINEPREFIX",
            platform_suffix="win64",
            dependencies=(LIBOPUS.name,),
        ),
    }
