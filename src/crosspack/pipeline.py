"""
Target pipelines.

One TargetPipeline turns a TargetSpec into a distributable:

    toolchain -> compile            (branch 1)
    fetch -> transform, per dep     (branch 2)
    assemble -> pack                (after both branches joined)

The two branches run concurrently. Every PipelineError leaving a stage is
wrapped in a StageError naming the target and the stage, so a report can
be read without looking at intermediate state. Any other exception is recorded
as a failure of stage "internal" rather than escaping the target.

PipelineRunner runs several targets side by side. Targets share nothing
but the dependency cache and the toolchain cache, and a failing target
never aborts its siblings.
"""

import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .build.artifact_packer import ArtifactPacker, PackageArchive, PackagingIO
from .build.bundle_assembler import BundleAssembler, DependencyContribution
from .build.orchestrator import BuildOrchestrator, CompiledOutput, TestFailure, TestStatus
from .command_runner import CommandRunner
from .config.ini_parser import CrosspackConfig, ProjectSettings
from .config.targets import NativeDependencySpec, TargetConfigError, TargetSpec
from .errors import PipelineError, StageError
from .packages.archive_utils import FilterRules, PackageTransformer, StagingArtifact
from .packages.cache import Cache
from .packages.downloader import NativeDependencyFetcher, PackageDownloader
from .packages.platform_utils import PlatformDetector
from .packages.toolchain import ToolchainProvider

T = TypeVar("T")


@dataclass(frozen=True)
class TargetReport:
    """Outcome of one target pipeline.

    Attributes:
        name: Target name
        triple: Target triple
        output: Build result, if compilation succeeded
        bundle_dir: Materialized bundle directory (targets without archive)
        archive: Packed archive (targets with a platform suffix)
        error: The error that stopped the pipeline, if any
    """

    name: str
    triple: str
    output: Optional[CompiledOutput] = None
    bundle_dir: Optional[Path] = None
    archive: Optional[PackageArchive] = None
    error: Optional[StageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def test_failure(self) -> Optional[TestFailure]:
        return self.output.test_failure if self.output is not None else None


def run_stage(target: str, stage: str, fn: Callable[..., T], *args, **kwargs) -> T:
    """Call one stage function, attaching target and stage to its errors."""
    try:
        return fn(*args, **kwargs)
    except StageError:
        raise
    except PipelineError as e:
        raise StageError(target, stage, e) from e


class TargetPipeline:
    """Runs the stages of a single target.

    Example:
        pipeline = TargetPipeline(project, cache, dependencies)
        report = pipeline.run(targets["x86_64-pc-windows-gnu"], run_tests=True)
        print(report.archive.path)
    """

    def __init__(
        self,
        project: ProjectSettings,
        cache: Cache,
        dependencies: Dict[str, NativeDependencySpec],
        toolchains: Optional[ToolchainProvider] = None,
        fetcher: Optional[NativeDependencyFetcher] = None,
        transformer: Optional[PackageTransformer] = None,
        orchestrator: Optional[BuildOrchestrator] = None,
        verbose: bool = False,
        show_progress: bool = True,
    ):
        self.project = project
        self.cache = cache
        self.dependencies = dependencies
        self.verbose = verbose
        self.show_progress = show_progress

        runner = CommandRunner(verbose=verbose)
        self.toolchains = toolchains or ToolchainProvider(runner=CommandRunner(), show_progress=show_progress)
        self.fetcher = fetcher or NativeDependencyFetcher(
            cache, PackageDownloader(show_progress=show_progress)
        )
        self.transformer = transformer or PackageTransformer(cache, show_progress=show_progress)
        self.orchestrator = orchestrator or BuildOrchestrator(project, cache, runner=runner, verbose=verbose)
        self.assembler = BundleAssembler(bin_dir=project.bin_dir, show_progress=verbose)
        self.packer = ArtifactPacker(project.dist_dir, show_progress=show_progress)

    def dependency_specs(self, spec: TargetSpec) -> List[NativeDependencySpec]:
        """Look up the native dependencies a target names.

        Raises:
            StageError: If a name is missing from the dependency manifest
        """
        specs = []
        for dep_name in spec.dependencies:
            dep = self.dependencies.get(dep_name)
            if dep is None:
                raise StageError(
                    spec.name,
                    "configure",
                    PipelineError(f"Unknown dependency '{dep_name}'", target=spec.name),
                )
            specs.append(dep)
        return specs

    def compile_branch(self, spec: TargetSpec, run_tests: bool) -> CompiledOutput:
        toolchain = run_stage(spec.name, "toolchain", self.toolchains.resolve, spec)
        return run_stage(spec.name, "compile", self.orchestrator.build, spec, toolchain, run_tests)

    def stage_dependency(self, spec: TargetSpec, dep: NativeDependencySpec) -> StagingArtifact:
        """Fetch and transform one dependency of a target."""
        archive = run_stage(spec.name, "fetch", self.fetcher.fetch, dep)
        return run_stage(
            spec.name, "transform", self.transformer.transform, archive, FilterRules.from_dependency(dep)
        )

    def dependency_branch(
        self, spec: TargetSpec, deps: Sequence[NativeDependencySpec]
    ) -> List[DependencyContribution]:
        return [(self.stage_dependency(spec, dep), dep.runtime) for dep in deps]

    def run(self, spec: TargetSpec, run_tests: bool = False, gate_on_tests: bool = False) -> TargetReport:
        """Build, assemble and package one target.

        Args:
            spec: Target to run
            run_tests: Run the test suite after compiling
            gate_on_tests: Treat a TestFailure as fatal for the target

        Returns:
            TargetReport (errors are recorded, not raised)
        """
        output: Optional[CompiledOutput] = None
        try:
            deps = self.dependency_specs(spec)
            if self.show_progress:
                print(f"[{spec.name}] Building {self.project.binary} for {spec.triple}")

            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"crosspack-{spec.name}") as executor:
                compile_future = executor.submit(self.compile_branch, spec, run_tests)
                deps_future = executor.submit(self.dependency_branch, spec, deps)
            output = compile_future.result()
            contributions = deps_future.result()

            if output.test_status is TestStatus.FAILED:
                if gate_on_tests:
                    raise StageError(spec.name, "test", output.test_failure)
                print(f"[{spec.name}] WARNING: tests failed, packaging anyway")

            bundle_dir, archive = self._package(spec, output, contributions)
        except StageError as e:
            logging.error(str(e))
            return TargetReport(name=spec.name, triple=spec.triple, output=output, error=e)
        except Exception as e:
            # Anything outside the error taxonomy still only fails this target
            logging.exception(f"[{spec.name}] unexpected error")
            error = StageError(spec.name, "internal", PipelineError(f"{type(e).__name__}: {e}", cause=e))
            return TargetReport(name=spec.name, triple=spec.triple, output=output, error=error)

        return TargetReport(
            name=spec.name,
            triple=spec.triple,
            output=output,
            bundle_dir=bundle_dir,
            archive=archive,
        )

    def root_name(self, spec: TargetSpec) -> str:
        """Top-level directory name of the target's distributable."""
        suffix = spec.platform_suffix or spec.name
        return f"{self.project.binary}-{suffix}"

    def _package(
        self,
        spec: TargetSpec,
        output: CompiledOutput,
        contributions: Sequence[DependencyContribution],
    ) -> Tuple[Optional[Path], Optional[PackageArchive]]:
        root_name = self.root_name(spec)
        scratch_dir = run_stage(spec.name, "assemble", self._scratch_dir, spec)

        with scratch_dir as scratch:
            bundle = run_stage(
                spec.name,
                "assemble",
                self.assembler.assemble,
                output,
                contributions,
                Path(scratch) / root_name,
                name=spec.name,
            )
            if spec.platform_suffix:
                archive = run_stage(spec.name, "pack", self.packer.pack, bundle, root_name)
                if self.show_progress:
                    print(f"[{spec.name}] Packaged {archive.path}")
                return None, archive

            bundle_dir = run_stage(spec.name, "pack", self._materialize, bundle.root, root_name)
            if self.show_progress:
                print(f"[{spec.name}] Output in {bundle_dir}")
            return bundle_dir, None

    def _scratch_dir(self, spec: TargetSpec) -> tempfile.TemporaryDirectory:
        scratch_parent = self.cache.state_root / "tmp"
        try:
            scratch_parent.mkdir(parents=True, exist_ok=True)
            return tempfile.TemporaryDirectory(prefix=f"{spec.name}-", dir=scratch_parent)
        except OSError as e:
            raise PipelineError(f"Cannot create scratch directory under {scratch_parent}: {e}", cause=e) from e

    def _materialize(self, bundle_root: Path, root_name: str) -> Path:
        """Copy a bundle to <dist>/<root_name>/, replacing an older copy."""
        dest = self.project.dist_dir / root_name
        staging = self.project.dist_dir / f".{root_name}.tmp"
        try:
            self.project.dist_dir.mkdir(parents=True, exist_ok=True)
            if staging.exists():
                shutil.rmtree(staging)
            shutil.copytree(bundle_root, staging)
            if dest.exists():
                shutil.rmtree(dest)
            os.replace(staging, dest)
        except OSError as e:
            raise PackagingIO(f"Failed to write {dest}: {e}", stage="pack", cause=e) from e
        return dest


class PipelineRunner:
    """Selects targets from the configuration and runs them concurrently.

    Example:
        runner = PipelineRunner.from_project(Path("."), verbose=True)
        for report in runner.run(["default", "x86_64-pc-windows-gnu"], run_tests=True):
            print(report.name, "ok" if report.ok else report.error)
    """

    def __init__(
        self,
        project: ProjectSettings,
        targets: Dict[str, TargetSpec],
        dependencies: Dict[str, NativeDependencySpec],
        cache: Optional[Cache] = None,
        verbose: bool = False,
        show_progress: bool = True,
        pipeline_factory: Optional[Callable[[], TargetPipeline]] = None,
    ):
        self.project = project
        self.targets = targets
        self.dependencies = dependencies
        self.cache = cache or Cache(project.project_dir)
        self.verbose = verbose
        self.show_progress = show_progress
        self.pipeline_factory = pipeline_factory or self._default_pipeline

    @classmethod
    def from_project(
        cls,
        project_dir: Path,
        ini_path: Optional[Path] = None,
        verbose: bool = False,
        show_progress: bool = True,
    ) -> "PipelineRunner":
        """Build a runner from a project directory and its crosspack.ini."""
        config = CrosspackConfig.load(project_dir, ini_path)
        host_triple = PlatformDetector.detect_host_triple()
        return cls(
            project=config.get_project(),
            targets=config.get_targets(host_triple),
            dependencies=config.get_dependencies(),
            verbose=verbose,
            show_progress=show_progress,
        )

    def _default_pipeline(self) -> TargetPipeline:
        return TargetPipeline(
            self.project,
            self.cache,
            self.dependencies,
            verbose=self.verbose,
            show_progress=self.show_progress,
        )

    def select(self, names: Sequence[str]) -> List[TargetSpec]:
        """Resolve target names, defaulting to the 'default' target.

        Raises:
            TargetConfigError: If a name is not in the target table
        """
        if not names:
            names = ["default"]
        selected = []
        for name in names:
            if name not in self.targets:
                available = ", ".join(self.targets)
                raise TargetConfigError(f"Unknown target '{name}'. Available targets: {available}")
            if self.targets[name] not in selected:
                selected.append(self.targets[name])
        return selected

    def run(
        self,
        names: Sequence[str],
        run_tests: Optional[bool] = None,
        gate_on_tests: bool = False,
        jobs: Optional[int] = None,
    ) -> List[TargetReport]:
        """Run the selected targets.

        Args:
            names: Target names (empty selects 'default')
            run_tests: Run tests; None uses each target's configured default
            gate_on_tests: Fail a target whose tests fail
            jobs: Maximum number of concurrent target pipelines (default: all)

        Returns:
            One TargetReport per selected target, in selection order
        """
        specs = self.select(names)
        self.cache.ensure_directories()
        pipeline = self.pipeline_factory()

        reports: Dict[str, TargetReport] = {}
        max_workers = max(1, min(jobs or len(specs), len(specs)))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="crosspack-target") as executor:
            futures = {
                executor.submit(
                    pipeline.run,
                    spec,
                    spec.run_tests if run_tests is None else run_tests,
                    gate_on_tests,
                ): spec
                for spec in specs
            }
            for future in as_completed(futures):
                spec = futures[future]
                report = future.result()
                reports[spec.name] = report
                logging.info(f"[{spec.name}] finished: {'ok' if report.ok else report.error.kind}")

        return [reports[spec.name] for spec in specs]

    def fetch(self, dep_name: str) -> StagingArtifact:
        """Fetch and stage a single dependency into the cache.

        Raises:
            TargetConfigError: If the dependency is unknown
            PipelineError: If fetching or staging fails
        """
        dep = self.dependencies.get(dep_name)
        if dep is None:
            available = ", ".join(self.dependencies) or "(none)"
            raise TargetConfigError(f"Unknown dependency '{dep_name}'. Available: {available}")
        self.cache.ensure_directories()
        pipeline = self.pipeline_factory()
        archive = pipeline.fetcher.fetch(dep)
        return pipeline.transformer.transform(archive, FilterRules.from_dependency(dep))
