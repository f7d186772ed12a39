"""
Build orchestration for one target.

This module drives cargo for a TargetSpec:

1. Compose the child environment (toolchain pins, target overrides,
   per-target rustflags, cross target selection)
2. Compile the release binary
3. Locate the binary and its companion files
4. Optionally run the test suite, routing cross-compiled test binaries
   through the emulation shim

Test failures do not raise: they are recorded on the CompiledOutput so
that packaging can still proceed. The pipeline decides whether tests gate
the target.
"""

import logging
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..command_runner import CommandResult, CommandRunner, CommandTimeout, child_environment
from ..config.ini_parser import ProjectSettings
from ..config.targets import TargetSpec
from ..errors import PipelineError
from ..packages.cache import Cache
from ..packages.platform_utils import PlatformDetector
from ..packages.toolchain import Toolchain
from ..shim import write_runner_script


class CompileError(PipelineError):
    """Raised when cargo fails to produce the binary."""

    pass


class TestFailure(PipelineError):
    """Test suite exited non-zero. Reported, not fatal to the build step."""

    __test__ = False  # not a pytest test class

    def __init__(self, message: str, returncode: int, output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.output = output


class TestStatus(Enum):
    """What happened to the test step of a build."""

    __test__ = False

    NOT_REQUESTED = "not_requested"
    SKIPPED = "skipped"
    PASSED = "passed"
    FAILED = "failed"


@dataclass(frozen=True)
class CompiledOutput:
    """Result of a successful compilation."""

    triple: str
    binary_path: Path
    aux_files: Tuple[Path, ...] = ()
    test_status: TestStatus = TestStatus.NOT_REQUESTED
    test_failure: Optional[TestFailure] = field(default=None, compare=False)
    build_time: float = 0.0


class BuildOrchestrator:
    """
    Compiles the project for a target with cargo.

    Example usage:
        orchestrator = BuildOrchestrator(project, cache, verbose=True)
        output = orchestrator.build(target, toolchain, run_tests=True)
        print(f"Binary: {output.binary_path}")
        if output.test_status is TestStatus.FAILED:
            print(output.test_failure)
    """

    def __init__(
        self,
        project: ProjectSettings,
        cache: Cache,
        runner: Optional[CommandRunner] = None,
        verbose: bool = False,
        timeout: Optional[float] = None,
    ):
        """
        Initialize build orchestrator.

        Args:
            project: Project settings (binary name, source dir, companions)
            cache: Cache providing the per-target cargo target directory
            runner: Command runner (default: one streaming output when verbose)
            verbose: Enable verbose output
            timeout: Timeout in seconds for each cargo invocation
        """
        self.project = project
        self.cache = cache
        self.verbose = verbose
        self.timeout = timeout
        self.runner = runner or CommandRunner(verbose=verbose)

    def target_dir(self, spec: TargetSpec) -> Path:
        return self.cache.get_build_dir(spec.name)

    def output_dir(self, spec: TargetSpec) -> Path:
        """Directory cargo writes release artifacts to for this target."""
        if spec.is_cross_compile:
            return self.target_dir(spec) / spec.triple / "release"
        return self.target_dir(spec) / "release"

    def compose_env(self, spec: TargetSpec, toolchain: Toolchain) -> Dict[str, str]:
        """
        Environment overrides for cargo (without the inherited environment).

        Precedence (later wins): toolchain pins, generated variables,
        explicit target env overrides.
        """
        env: Dict[str, str] = dict(toolchain.env())
        if spec.is_cross_compile:
            env["CARGO_BUILD_TARGET"] = spec.triple
        if spec.rustflags:
            env[spec.cargo_target_var("RUSTFLAGS")] = " ".join(spec.rustflags)
        env.update(spec.env)
        return env

    def cargo_args(self, spec: TargetSpec, toolchain: Toolchain, command: str) -> List[str]:
        args = [
            str(toolchain.cargo),
            command,
            "--release",
            "--manifest-path",
            str(self.project.manifest_path),
            "--target-dir",
            str(self.target_dir(spec)),
        ]
        if (self.project.source_dir / "Cargo.lock").exists():
            args.append("--locked")
        if self.project.cargo_package:
            args.extend(["--package", self.project.cargo_package])
        if command == "build":
            args.extend(["--bin", self.project.binary])
        return args

    def build(self, spec: TargetSpec, toolchain: Toolchain, run_tests: bool = False) -> CompiledOutput:
        """
        Compile the binary for a target, optionally running its tests.

        Args:
            spec: Target to build
            toolchain: Toolchain resolved for spec.triple
            run_tests: Run the test suite after building

        Returns:
            CompiledOutput with binary path, companions and test status

        Raises:
            CompileError: If cargo fails or the binary is missing afterwards
        """
        start_time = time.time()
        env_overrides = self.compose_env(spec, toolchain)
        env = child_environment(env_overrides)

        if self.verbose:
            print(f"[{spec.name}] Compiling {self.project.binary} for {spec.triple}...")
            for key in sorted(env_overrides):
                print(f"      {key}={env_overrides[key]}")

        result = self._run_cargo(spec, self.cargo_args(spec, toolchain, "build"), env)
        if not result.ok:
            raise CompileError(
                f"cargo build failed for {spec.triple} (exit {result.returncode})\n{result.tail()}",
                target=spec.name,
                stage="compile",
            )

        binary_path, aux_files = self._collect_outputs(spec)

        test_status = TestStatus.NOT_REQUESTED
        test_failure: Optional[TestFailure] = None
        if run_tests:
            test_status, test_failure = self._run_tests(spec, toolchain, env)

        build_time = time.time() - start_time
        logging.info(f"[{spec.name}] built {binary_path.name} in {build_time:.2f}s (tests: {test_status.value})")

        return CompiledOutput(
            triple=spec.triple,
            binary_path=binary_path,
            aux_files=aux_files,
            test_status=test_status,
            test_failure=test_failure,
            build_time=build_time,
        )

    def _run_cargo(self, spec: TargetSpec, args: List[str], env: Dict[str, str]) -> CommandResult:
        try:
            return self.runner.run(args, cwd=self.project.source_dir, env=env, timeout=self.timeout)
        except FileNotFoundError as e:
            raise CompileError(f"cargo not found: {args[0]}", target=spec.name, stage="compile", cause=e) from e
        except CommandTimeout as e:
            raise CompileError(str(e), target=spec.name, stage="compile", cause=e) from e

    def _collect_outputs(self, spec: TargetSpec) -> Tuple[Path, Tuple[Path, ...]]:
        output_dir = self.output_dir(spec)
        binary_name = self.project.binary + PlatformDetector.executable_suffix(spec.triple)
        binary_path = output_dir / binary_name
        if not binary_path.is_file():
            raise CompileError(
                f"cargo reported success but {binary_path} does not exist",
                target=spec.name,
                stage="compile",
            )

        aux: List[Path] = []
        for pattern in self.project.companions:
            for path in sorted(output_dir.glob(pattern)):
                if path.is_file() and path != binary_path and path not in aux:
                    aux.append(path)
        return binary_path, tuple(aux)

    def _run_tests(
        self, spec: TargetSpec, toolchain: Toolchain, env: Dict[str, str]
    ) -> Tuple[TestStatus, Optional[TestFailure]]:
        runner_var = spec.cargo_target_var("RUNNER")
        args = self.cargo_args(spec, toolchain, "test")

        if not spec.is_cross_compile or runner_var in spec.env:
            return self._execute_tests(spec, args, env)

        if not spec.test_runner:
            print(f"[{spec.name}] No test runner configured for {spec.triple}, skipping tests")
            logging.warning(f"[{spec.name}] skipping tests: cross target without test runner")
            return TestStatus.SKIPPED, None

        with tempfile.TemporaryDirectory(prefix=f"crosspack-runner-{spec.name}-") as scratch:
            script = write_runner_script(
                Path(scratch) / "emulation-shim",
                emulator=spec.test_runner,
                isolation_var=spec.isolation_var,
            )
            test_env = dict(env)
            test_env[runner_var] = str(script)
            return self._execute_tests(spec, args, test_env)

    def _execute_tests(
        self, spec: TargetSpec, args: List[str], env: Dict[str, str]
    ) -> Tuple[TestStatus, Optional[TestFailure]]:
        if self.verbose:
            print(f"[{spec.name}] Running tests...")
        try:
            result = self.runner.run(args, cwd=self.project.source_dir, env=env, timeout=self.timeout)
        except (FileNotFoundError, CommandTimeout) as e:
            failure = TestFailure(
                f"Test run could not complete for {spec.triple}: {e}",
                returncode=-1,
                target=spec.name,
                stage="test",
                cause=e,
            )
            logging.error(str(failure))
            return TestStatus.FAILED, failure

        if result.ok:
            return TestStatus.PASSED, None

        failure = TestFailure(
            f"Tests failed for {spec.triple} (exit {result.returncode})",
            returncode=result.returncode,
            output=result.tail(),
            target=spec.name,
            stage="test",
        )
        logging.error(str(failure))
        return TestStatus.FAILED, failure
