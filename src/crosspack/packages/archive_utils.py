"""Archive extraction and dependency staging.

This module turns a verified package archive into a reusable staging
artifact in three named stages:

1. unpack: extract into a scratch directory, skipping package-manager
   metadata entries (.PKGINFO, .INSTALL, .MTREE, .BUILDINFO)
2. filter: delete static archives that are not needed at runtime
   (``*.a`` except import libraries ``*.dll.a`` and ``*main.a``)
3. install: copy the surviving tree into the artifact root and record
   the manifest

Supported formats: .tar.zst (MSYS2 packages), .tar.gz, .tar.bz2, .tar.xz,
plain .tar and .zip. The format is detected from the file's magic bytes.
"""

import fnmatch
import json
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Tuple

import zstandard

from ..command_runner import forward_keyboard_interrupt
from ..config.targets import (
    DEFAULT_DISCARD_PATTERNS,
    DEFAULT_KEEP_PATTERNS,
    DEFAULT_METADATA_ENTRIES,
    NativeDependencySpec,
)
from ..errors import PipelineError
from .cache import Cache
from .downloader import RawArchive
from .single_flight import SingleFlight

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
ZIP_MAGIC = b"PK\x03\x04"
MANIFEST_NAME = "manifest.json"


class ExtractionError(PipelineError):
    """Raised when an archive is malformed or cannot be unpacked."""

    pass


@dataclass(frozen=True)
class FilterRules:
    """What to drop while staging a package.

    Attributes:
        metadata_entries: Top-level archive entries skipped during unpack
        discard_patterns: File name patterns deleted in the filter pass
        keep_patterns: Exemptions from discard_patterns
        predicate: Optional replacement decision; called with the relative
            path of every file, returns True to discard it. Staged artifacts
            on disk record it by module and qualified name, so use a named
            function rather than a lambda
    """

    metadata_entries: Tuple[str, ...] = DEFAULT_METADATA_ENTRIES
    discard_patterns: Tuple[str, ...] = DEFAULT_DISCARD_PATTERNS
    keep_patterns: Tuple[str, ...] = DEFAULT_KEEP_PATTERNS
    predicate: Optional[Callable[[PurePosixPath], bool]] = None

    @classmethod
    def from_dependency(cls, spec: NativeDependencySpec) -> "FilterRules":
        return cls(
            metadata_entries=spec.metadata_entries,
            discard_patterns=spec.discard_patterns,
            keep_patterns=spec.keep_patterns,
        )

    def is_metadata(self, member_name: str) -> bool:
        """True for package-manager metadata entries at the archive root."""
        name = member_name
        while name.startswith("./"):
            name = name[2:]
        parts = PurePosixPath(name).parts
        return len(parts) == 1 and parts[0] in self.metadata_entries

    def should_discard(self, rel_path: PurePosixPath) -> bool:
        """Decide whether a staged file is removed by the filter pass."""
        if self.predicate is not None:
            return self.predicate(rel_path)
        name = rel_path.name
        if not any(fnmatch.fnmatchcase(name, pattern) for pattern in self.discard_patterns):
            return False
        return not any(fnmatch.fnmatchcase(name, pattern) for pattern in self.keep_patterns)

    def _predicate_name(self) -> Optional[str]:
        if self.predicate is None:
            return None
        module = getattr(self.predicate, "__module__", None) or ""
        qualname = getattr(self.predicate, "__qualname__", None) or type(self.predicate).__qualname__
        return f"{module}.{qualname}" if module else qualname

    def cache_key(self) -> Tuple:
        """In-process identity of the rules (distinguishes predicate objects)."""
        fingerprint = json.dumps(self.fingerprint(), sort_keys=True)
        return (fingerprint, id(self.predicate) if self.predicate is not None else None)

    def fingerprint(self) -> dict:
        """JSON-serializable identity of the rules, stored in the manifest."""
        return {
            "metadata_entries": list(self.metadata_entries),
            "discard_patterns": list(self.discard_patterns),
            "keep_patterns": list(self.keep_patterns),
            "predicate": self._predicate_name(),
        }


@dataclass(frozen=True)
class StagingArtifact:
    """An extracted and filtered dependency, immutable once built."""

    name: str
    sha256: str
    root_path: Path
    manifest: Tuple[str, ...]

    def files_under(self, subdir: str, pattern: str = "*") -> List[str]:
        """Manifest entries directly inside ``subdir`` whose name matches pattern."""
        prefix = PurePosixPath(subdir) if subdir else PurePosixPath()
        matches = []
        for rel in self.manifest:
            rel_path = PurePosixPath(rel)
            if rel_path.parent == prefix and fnmatch.fnmatchcase(rel_path.name, pattern):
                matches.append(rel)
        return matches


def detect_archive_format(path: Path) -> str:
    """Detect an archive format from its magic bytes.

    Returns:
        'zstd', 'zip' or 'tar' (tar covers plain, gzip, bzip2 and xz)

    Raises:
        ExtractionError: If the file is not a recognizable archive
    """
    try:
        with open(path, "rb") as f:
            head = f.read(8)
    except OSError as e:
        raise ExtractionError(f"Cannot read archive {path}: {e}", cause=e) from e

    if head.startswith(ZSTD_MAGIC):
        return "zstd"
    if head.startswith(ZIP_MAGIC):
        return "zip"
    if tarfile.is_tarfile(path):
        return "tar"
    raise ExtractionError(f"Unsupported or malformed archive: {path.name}")


class PackageTransformer:
    """Builds StagingArtifacts from RawArchives.

    Artifacts are cached under the staging directory keyed by
    (dependency name, pinned hash, filter rules), so staging one archive
    with two rule sets yields two independent artifacts.
    """

    _flights: SingleFlight[StagingArtifact] = SingleFlight("staging")

    def __init__(self, cache: Cache, show_progress: bool = True):
        self.cache = cache
        self.show_progress = show_progress

    def transform(self, archive: RawArchive, rules: Optional[FilterRules] = None) -> StagingArtifact:
        """Unpack, filter and install an archive into a staging artifact.

        Args:
            archive: Verified archive from NativeDependencyFetcher
            rules: Filter rules (default: MSYS2 static-archive policy)

        Returns:
            The staged artifact

        Raises:
            ExtractionError: If the archive is malformed or staging fails
        """
        rules = rules or FilterRules()
        key = (str(self.cache.staging_dir), archive.name, archive.sha256, rules.cache_key())
        return self._flights.do(key, lambda: self._transform(archive, rules))

    def _transform(self, archive: RawArchive, rules: FilterRules) -> StagingArtifact:
        variant = Cache.short_key(json.dumps(rules.fingerprint(), sort_keys=True))[:8]
        artifact_dir = self.cache.get_staging_path(archive.name, archive.sha256, variant)

        cached = self._load_cached(artifact_dir, archive, rules)
        if cached is not None:
            logging.info(f"Using staged {archive.name} at {artifact_dir}")
            return cached

        if self.show_progress:
            print(f"Staging {archive.name} from {archive.path.name}...")

        artifact_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            with tempfile.TemporaryDirectory(
                prefix=f".{archive.name}-", dir=artifact_dir.parent
            ) as scratch:
                scratch_path = Path(scratch)
                upstream = scratch_path / "upstream"
                built = scratch_path / "artifact"

                self._unpack(archive.path, upstream, rules)
                removed = self._filter(upstream, rules)
                manifest = self._install(upstream, built / "root")

                payload = {
                    "name": archive.name,
                    "sha256": archive.sha256,
                    "rules": rules.fingerprint(),
                    "files": list(manifest),
                }
                (built / MANIFEST_NAME).write_text(
                    json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
                )

                if artifact_dir.exists():
                    shutil.rmtree(artifact_dir)
                os.replace(built, artifact_dir)
        except ExtractionError:
            raise
        except OSError as e:
            raise ExtractionError(f"Failed to stage {archive.name}: {e}", cause=e) from e

        logging.info(
            f"Staged {archive.name}: {len(manifest)} files kept, {removed} static archives removed"
        )
        return StagingArtifact(
            name=archive.name,
            sha256=archive.sha256,
            root_path=artifact_dir / "root",
            manifest=manifest,
        )

    def _load_cached(
        self, artifact_dir: Path, archive: RawArchive, rules: FilterRules
    ) -> Optional[StagingArtifact]:
        manifest_path = artifact_dir / MANIFEST_NAME
        if not manifest_path.exists():
            return None
        try:
            payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logging.warning(f"Ignoring unreadable staging manifest {manifest_path}: {e}")
            return None
        if payload.get("sha256") != archive.sha256 or payload.get("rules") != rules.fingerprint():
            return None
        return StagingArtifact(
            name=archive.name,
            sha256=archive.sha256,
            root_path=artifact_dir / "root",
            manifest=tuple(payload.get("files", [])),
        )

    def _unpack(self, archive_path: Path, dest_dir: Path, rules: FilterRules) -> None:
        """Extract an archive, skipping metadata entries.

        Raises:
            ExtractionError: If extraction fails
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        archive_format = detect_archive_format(archive_path)

        try:
            if archive_format == "zstd":
                with open(archive_path, "rb") as raw:
                    reader = zstandard.ZstdDecompressor().stream_reader(raw)
                    with tarfile.open(fileobj=reader, mode="r|") as tar:
                        self._extract_tar_members(tar, dest_dir, rules)
            elif archive_format == "zip":
                self._extract_zip(archive_path, dest_dir, rules)
            else:
                with tarfile.open(archive_path, "r:*") as tar:
                    self._extract_tar_members(tar, dest_dir, rules)
        except KeyboardInterrupt as ke:
            forward_keyboard_interrupt(ke)
        except (tarfile.TarError, zstandard.ZstdError, zipfile.BadZipFile, EOFError, OSError) as e:
            raise ExtractionError(f"Failed to extract {archive_path.name}: {e}", cause=e) from e

    def _extract_tar_members(self, tar: tarfile.TarFile, dest_dir: Path, rules: FilterRules) -> None:
        # Streaming mode: members must be extracted in archive order.
        for member in tar:
            if rules.is_metadata(member.name):
                continue
            tar.extract(member, dest_dir, filter="data")

    def _extract_zip(self, archive_path: Path, dest_dir: Path, rules: FilterRules) -> None:
        resolved_dest = dest_dir.resolve()
        with zipfile.ZipFile(archive_path, "r") as zf:
            for info in zf.infolist():
                if rules.is_metadata(info.filename):
                    continue
                target = (dest_dir / info.filename).resolve()
                if resolved_dest not in target.parents and target != resolved_dest:
                    raise ExtractionError(
                        f"Refusing to extract {info.filename!r} outside of the staging directory"
                    )
                zf.extract(info, dest_dir)

    def _filter(self, root: Path, rules: FilterRules) -> int:
        """Delete every file the rules discard; returns the number removed."""
        removed = 0
        for path in sorted(p for p in root.rglob("*") if p.is_file() or p.is_symlink()):
            rel = PurePosixPath(path.relative_to(root).as_posix())
            if rules.should_discard(rel):
                path.unlink()
                removed += 1
                logging.debug(f"Discarded {rel}")
        return removed

    def _install(self, source: Path, root: Path) -> Tuple[str, ...]:
        """Copy the filtered tree into the artifact root and list its files."""
        shutil.copytree(source, root, symlinks=True)
        return tuple(
            sorted(
                p.relative_to(root).as_posix()
                for p in root.rglob("*")
                if p.is_file() or p.is_symlink()
            )
        )

    @classmethod
    def reset(cls) -> None:
        cls._flights.clear()
