"""Cache management for crosspack.

This module provides the on-disk layout shared by every target pipeline.
Fetched archives are content addressed by their pinned hash, staged
dependency artifacts are keyed by (dependency name, pinned hash), and
per-target build scratch space lives under the build root.

Cache Structure:
    .crosspack/
    ├── cache/
    │   ├── archives/
    │   │   └── {sha256}/              # Pinned hash (hex)
    │   │       └── {filename}         # Verified package archive
    │   └── staging/
    │       └── {name}-{sha256[:16]}/  # Extracted and filtered dependency
    │           ├── manifest.json      # Written last; marks completion
    │           └── root/              # Installed files
    ├── build/
    │   └── {target}/                  # cargo target dir per target
    └── crosspack.log
"""

import hashlib
import os
import shutil
from pathlib import Path
from typing import Optional


class Cache:
    """Manages the crosspack cache directory structure.

    The cache can be located in the project directory (.crosspack/) or in a
    global location specified by the CROSSPACK_CACHE_DIR environment variable.
    """

    ENV_VAR = "CROSSPACK_CACHE_DIR"

    def __init__(self, project_dir: Optional[Path] = None):
        """Initialize cache manager.

        Args:
            project_dir: Project directory. If None, uses current directory.
        """
        if project_dir is None:
            project_dir = Path.cwd()

        self.project_dir = Path(project_dir).resolve()
        self.state_root = self.project_dir / ".crosspack"

        cache_env = os.environ.get(self.ENV_VAR)
        if cache_env:
            self.cache_root = Path(cache_env).resolve()
        else:
            self.cache_root = self.state_root / "cache"

        self.build_root = self.state_root / "build"

    @staticmethod
    def short_key(value: str) -> str:
        """First 16 characters of the SHA-256 of a string."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]

    @property
    def archives_dir(self) -> Path:
        """Directory for verified package archives."""
        return self.cache_root / "archives"

    @property
    def staging_dir(self) -> Path:
        """Directory for extracted dependency artifacts."""
        return self.cache_root / "staging"

    @property
    def log_file(self) -> Path:
        return self.state_root / "crosspack.log"

    def get_archive_path(self, sha256: str, filename: str) -> Path:
        """Get the content-addressed location of an archive.

        Args:
            sha256: Normalized (hex) pinned hash
            filename: Archive filename, kept for format detection and humans

        Returns:
            Path the verified archive is stored at
        """
        return self.archives_dir / sha256 / filename

    def get_staging_path(self, name: str, sha256: str, variant: str = "") -> Path:
        """Get the directory of a staged dependency artifact.

        Args:
            name: Dependency name (e.g. 'libopus')
            sha256: Normalized (hex) pinned hash of its archive
            variant: Short key of the filter rules the artifact was built with

        Returns:
            Path to the artifact directory
        """
        dirname = f"{name}-{sha256[:16]}"
        if variant:
            dirname += f"-{variant}"
        return self.staging_dir / dirname

    def get_build_dir(self, target_name: str) -> Path:
        """Get the cargo target directory for a target pipeline.

        Args:
            target_name: Target name (e.g. 'x86_64-pc-windows-gnu')
        """
        return self.build_root / target_name

    def ensure_directories(self) -> None:
        """Create all cache directories if they don't exist."""
        for directory in [self.archives_dir, self.staging_dir, self.build_root]:
            directory.mkdir(parents=True, exist_ok=True)

    def clean_build(self, target_name: str) -> None:
        """Remove all build artifacts for a target.

        Args:
            target_name: Target name
        """
        build_dir = self.get_build_dir(target_name)
        if build_dir.exists():
            shutil.rmtree(build_dir)
