"""Artifact Packer.

This module wraps an assembled bundle into a zip archive with a single
top-level directory.

Design:
    - Entries are written in sorted order with a fixed timestamp
    - Permission bits are normalized (0755 for executables, 0644 otherwise)
    - The archive is written to a temporary file and moved into place
"""

import logging
import os
import stat
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from ..errors import PipelineError
from .bundle_assembler import Bundle

FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
FILE_MODE = 0o644
EXEC_MODE = 0o755


class PackagingIO(PipelineError):
    """Raised when the archive cannot be written."""

    pass


@dataclass(frozen=True)
class PackageArchive:
    """A packed distributable.

    Attributes:
        path: Location of the zip file
        root_name: Name of the single top-level directory
        files: Archive member names below root_name, sorted
    """

    path: Path
    root_name: str
    files: Tuple[str, ...]


class ArtifactPacker:
    """Creates <root_name>.zip archives from bundles."""

    def __init__(self, output_dir: Path, show_progress: bool = True):
        """Initialize artifact packer.

        Args:
            output_dir: Directory receiving the archives
            show_progress: Whether to show archive size information
        """
        self.output_dir = Path(output_dir)
        self.show_progress = show_progress

    def pack(self, bundle: Bundle, root_name: str) -> PackageArchive:
        """Pack a bundle as ``<output_dir>/<root_name>.zip``.

        Args:
            bundle: Assembled bundle
            root_name: Top-level directory inside the archive

        Returns:
            PackageArchive describing the written file

        Raises:
            PackagingIO: On filesystem or compression errors
        """
        archive_path = self.output_dir / f"{root_name}.zip"
        tmp_name = None
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{root_name}-", suffix=".zip", dir=self.output_dir)
            os.close(fd)

            with zipfile.ZipFile(tmp_name, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                dir_info = zipfile.ZipInfo(f"{root_name}/", date_time=FIXED_DATE_TIME)
                dir_info.external_attr = (stat.S_IFDIR | EXEC_MODE) << 16
                zf.writestr(dir_info, b"")

                for rel in sorted(bundle.files):
                    source = bundle.root / rel
                    info = zipfile.ZipInfo(f"{root_name}/{rel}", date_time=FIXED_DATE_TIME)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.external_attr = (stat.S_IFREG | self._mode_for(source)) << 16
                    zf.writestr(info, source.read_bytes())

            os.replace(tmp_name, archive_path)
            tmp_name = None
            size = archive_path.stat().st_size
        except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise PackagingIO(f"Failed to write {archive_path.name}: {e}", stage="pack", cause=e) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        if self.show_progress:
            print(f"✓ Created {archive_path.name}: {size:,} bytes ({size / 1024 / 1024:.2f} MB)")
        logging.info(f"Packed {len(bundle.files)} files into {archive_path}")

        return PackageArchive(path=archive_path, root_name=root_name, files=tuple(sorted(bundle.files)))

    @staticmethod
    def _mode_for(path: Path) -> int:
        """0755 if anyone may execute the file, 0644 otherwise."""
        if path.stat().st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
            return EXEC_MODE
        if path.suffix.lower() in (".exe", ".dll"):
            return EXEC_MODE
        return FILE_MODE
