"""Bundle Assembler.

This module lays out the distributable file set of one target: the
compiled binary and its companion files, plus the runtime files selected
from each staged native dependency.

Design:
    - Compiled outputs are placed first, dependencies overlaid in order
    - Two sources may claim the same relative path only with identical bytes
    - A dependency contributing no runtime files is a no-op
"""

import filecmp
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Sequence, Tuple

from ..config.targets import RuntimeSelection
from ..errors import PipelineError
from ..packages.archive_utils import StagingArtifact
from .orchestrator import CompiledOutput


class PathCollision(PipelineError):
    """Raised when two sources claim one bundle path with different content."""

    def __init__(self, message: str, rel_path: str = "", sources: Tuple[str, ...] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.rel_path = rel_path
        self.sources = sources


@dataclass(frozen=True)
class Bundle:
    """Assembled file set of one target under a single root directory.

    Attributes:
        name: Target name the bundle belongs to
        root: Directory holding the bundle files
        files: Sorted relative POSIX paths of every bundle file
    """

    name: str
    root: Path
    files: Tuple[str, ...]


# A staged dependency paired with the part of it that ships at runtime.
DependencyContribution = Tuple[StagingArtifact, RuntimeSelection]


class BundleAssembler:
    """Assembles CompiledOutputs and staged dependencies into a Bundle."""

    def __init__(self, bin_dir: str = "bin", show_progress: bool = True):
        """Initialize bundle assembler.

        Args:
            bin_dir: Bundle subdirectory receiving the binary and companions
            show_progress: Whether to print assembly progress
        """
        self.bin_dir = bin_dir
        self.show_progress = show_progress

    def assemble(
        self,
        output: CompiledOutput,
        deps: Sequence[DependencyContribution],
        bundle_root: Path,
        name: str = "",
    ) -> Bundle:
        """Copy the compiled output and dependency runtime files into bundle_root.

        Args:
            output: Result of the build step
            deps: Staged dependencies and their runtime selections, in overlay order
            bundle_root: Empty (or missing) directory to assemble into
            name: Target name recorded on the bundle

        Returns:
            Bundle describing the assembled tree

        Raises:
            PathCollision: If two sources disagree about one relative path
            PipelineError: If a source file cannot be copied
        """
        try:
            bundle_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PipelineError(f"Cannot create bundle directory {bundle_root}: {e}", stage="assemble", cause=e) from e
        claimed: Dict[str, str] = {}

        for source in (output.binary_path, *output.aux_files):
            rel = self._join(self.bin_dir, source.name)
            self._place(source, rel, bundle_root, claimed, origin=f"build:{output.triple}")

        for artifact, runtime in deps:
            selected = artifact.files_under(runtime.source_dir, runtime.pattern)
            if not selected:
                logging.info(
                    f"{artifact.name} has no runtime files under {runtime.source_dir or '.'}"
                    f" matching {runtime.pattern}"
                )
                continue
            for rel_source in selected:
                source = artifact.root_path / rel_source
                rel = self._join(runtime.dest_dir, PurePosixPath(rel_source).name)
                self._place(source, rel, bundle_root, claimed, origin=f"dependency:{artifact.name}")

        files = tuple(sorted(claimed))
        if self.show_progress:
            print(f"Assembled bundle with {len(files)} files in {bundle_root}")
        return Bundle(name=name or output.triple, root=bundle_root, files=files)

    @staticmethod
    def _join(directory: str, filename: str) -> str:
        if not directory or directory == ".":
            return filename
        return (PurePosixPath(directory) / filename).as_posix()

    def _place(
        self,
        source: Path,
        rel: str,
        bundle_root: Path,
        claimed: Dict[str, str],
        origin: str,
    ) -> None:
        dest = bundle_root / rel
        if rel in claimed:
            try:
                identical = filecmp.cmp(source, dest, shallow=False)
            except OSError as e:
                raise PipelineError(f"Failed to compare {source} with {dest}: {e}", stage="assemble", cause=e) from e
            if identical:
                logging.debug(f"{rel}: identical copy from {origin} ignored")
                return
            raise PathCollision(
                f"{rel} is provided by both {claimed[rel]} and {origin} with different content",
                rel_path=rel,
                sources=(claimed[rel], origin),
                stage="assemble",
            )

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise PipelineError(f"Failed to copy {source} into bundle: {e}", stage="assemble", cause=e) from e
        claimed[rel] = origin

