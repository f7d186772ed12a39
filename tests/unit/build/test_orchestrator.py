"""
Unit tests for BuildOrchestrator.

Tests the cargo build orchestration including:
- Command line and environment composition
- Cross target selection and per-target rustflags
- Locating the binary and companion files
- Test execution, emulation shim wiring and skip rules
"""

import os
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from crosspack.build.orchestrator import (
    BuildOrchestrator,
    CompiledOutput,
    CompileError,
    TestFailure,
    TestStatus,
)
from crosspack.command_runner import CommandResult, CommandTimeout
from crosspack.config.ini_parser import ProjectSettings
from crosspack.config.targets import TargetSpec, default_target_table
from crosspack.packages.cache import Cache
from crosspack.packages.toolchain import Toolchain

HOST = "x86_64-unknown-linux-gnu"


class FakeCargo:
    """Records cargo invocations and produces the files cargo would."""

    def __init__(self, build_rc: int = 0, test_rc: int = 0, produce_binary: bool = True, extra_outputs=()):
        self.build_rc = build_rc
        self.test_rc = test_rc
        self.produce_binary = produce_binary
        self.extra_outputs = extra_outputs
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.runner_scripts: List[Optional[str]] = []

    def run(self, args, cwd=None, env=None, timeout=None):
        args = [str(a) for a in args]
        env = dict(env or {})
        self.calls.append(args)
        self.envs.append(env)
        command = args[1]
        if command == "build":
            if self.build_rc == 0 and self.produce_binary:
                self._produce(args, env)
            return CommandResult(args, self.build_rc, "", "error[E0425]: cannot find value" if self.build_rc else "")
        if command == "test":
            script = next((v for k, v in env.items() if k.endswith("_RUNNER")), None)
            script_text = Path(script).read_text() if script and os.path.exists(script) else None
            self.runner_scripts.append(script_text)
            return CommandResult(args, self.test_rc, "test result: FAILED" if self.test_rc else "ok", "")
        raise AssertionError(f"unexpected command {args}")

    def _produce(self, args, env):
        target_dir = Path(args[args.index("--target-dir") + 1])
        binary = args[args.index("--bin") + 1]
        triple = env.get("CARGO_BUILD_TARGET")
        out = target_dir / triple / "release" if triple else target_dir / "release"
        out.mkdir(parents=True, exist_ok=True)
        suffix = ".exe" if triple and "-windows-" in triple else ""
        (out / f"{binary}{suffix}").write_bytes(b"\x7fELF binary")
        for name in self.extra_outputs:
            (out / name).write_bytes(name.encode())


@pytest.fixture
def project(tmp_path):
    source = tmp_path / "app"
    source.mkdir()
    (source / "Cargo.toml").write_text('[package]\nname = "curses"\n')
    return ProjectSettings(project_dir=tmp_path, binary="curses", source_dir=source, dist_dir=tmp_path / "dist")


@pytest.fixture
def cache(tmp_path):
    return Cache(tmp_path)


@pytest.fixture
def targets():
    return default_target_table(HOST)


def toolchain_for(triple: str) -> Toolchain:
    return Toolchain(
        triple=triple,
        cargo=Path("/opt/rust/bin/cargo"),
        rustc=Path("/opt/rust/bin/rustc"),
        sysroot=Path("/opt/rust"),
        host_triple=HOST,
    )


def make_orchestrator(project, cache, fake):
    return BuildOrchestrator(project, cache, runner=fake)


class TestBuildCommand:
    """Tests for cargo command line and environment composition."""

    def test_host_build(self, project, cache, targets):
        """Test a native build of the default target."""
        fake = FakeCargo()
        output = make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST))

        args = fake.calls[0]
        assert args[:3] == [str(Path("/opt/rust/bin/cargo")), "build", "--release"]
        assert args[args.index("--manifest-path") + 1] == str(project.manifest_path)
        assert args[args.index("--target-dir") + 1] == str(cache.get_build_dir("default"))
        assert args[-2:] == ["--bin", "curses"]
        assert "--locked" not in args
        assert "CARGO_BUILD_TARGET" not in fake.envs[0]
        assert fake.envs[0]["RUSTC"] == str(Path("/opt/rust/bin/rustc"))

        assert isinstance(output, CompiledOutput)
        assert output.triple == HOST
        assert output.binary_path == cache.get_build_dir("default") / "release" / "curses"
        assert output.test_status is TestStatus.NOT_REQUESTED

    def test_cross_build_selects_target(self, project, cache, targets):
        """Test that a cross target sets CARGO_BUILD_TARGET and finds the .exe."""
        fake = FakeCargo()
        spec = targets["x86_64-pc-windows-gnu"]
        output = make_orchestrator(project, cache, fake).build(spec, toolchain_for(spec.triple))

        assert fake.envs[0]["CARGO_BUILD_TARGET"] == "x86_64-pc-windows-gnu"
        assert output.binary_path == (
            cache.get_build_dir(spec.name) / "x86_64-pc-windows-gnu" / "release" / "curses.exe"
        )

    def test_static_rustflags(self, project, cache, targets):
        """Test that the musl target gets static-linking rustflags."""
        fake = FakeCargo()
        spec = targets["x86_64-unknown-linux-musl"]
        make_orchestrator(project, cache, fake).build(spec, toolchain_for(spec.triple))
        assert fake.envs[0]["CARGO_TARGET_X86_64_UNKNOWN_LINUX_MUSL_RUSTFLAGS"] == "-C target-feature=+crt-static"

    def test_explicit_env_wins(self, project, cache, targets):
        """Test that configured env overrides take precedence."""
        spec = targets["x86_64-unknown-linux-musl"]
        spec = TargetSpec(
            name=spec.name,
            triple=spec.triple,
            host_triple=HOST,
            rustflags=spec.rustflags,
            env_items=(
                ("CARGO_TARGET_X86_64_UNKNOWN_LINUX_MUSL_RUSTFLAGS", "-C target-feature=-crt-static"),
                ("OPUS_LIB_DIR", "/opt/opus/lib"),
            ),
        )
        orchestrator = make_orchestrator(project, cache, FakeCargo())
        env = orchestrator.compose_env(spec, toolchain_for(spec.triple))
        assert env["CARGO_TARGET_X86_64_UNKNOWN_LINUX_MUSL_RUSTFLAGS"] == "-C target-feature=-crt-static"
        assert env["OPUS_LIB_DIR"] == "/opt/opus/lib"

    def test_locked_with_lockfile(self, project, cache, targets):
        """Test that --locked is passed when Cargo.lock exists."""
        (project.source_dir / "Cargo.lock").write_text("version = 3\n")
        fake = FakeCargo()
        make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST))
        assert "--locked" in fake.calls[0]

    def test_package_selection(self, project, cache, targets):
        """Test building one package of a workspace."""
        from dataclasses import replace

        fake = FakeCargo()
        make_orchestrator(replace(project, cargo_package="curses-app"), cache, fake).build(
            targets["default"], toolchain_for(HOST)
        )
        args = fake.calls[0]
        assert args[args.index("--package") + 1] == "curses-app"

    def test_companion_files(self, project, cache, targets):
        """Test that companion globs are collected from the output dir."""
        from dataclasses import replace

        fake = FakeCargo(extra_outputs=("curses.pdb", "notes.txt"))
        output = make_orchestrator(replace(project, companions=("*.pdb",)), cache, fake).build(
            targets["default"], toolchain_for(HOST)
        )
        assert [p.name for p in output.aux_files] == ["curses.pdb"]


class TestBuildFailures:
    """Tests for CompileError reporting."""

    def test_cargo_failure(self, project, cache, targets):
        """Test that a failing cargo build raises CompileError with output."""
        fake = FakeCargo(build_rc=101)
        with pytest.raises(CompileError) as exc_info:
            make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST))
        assert "E0425" in exc_info.value.message
        assert exc_info.value.stage == "compile"
        assert exc_info.value.target == "default"

    def test_missing_binary(self, project, cache, targets):
        """Test that a successful cargo run without the binary is an error."""
        fake = FakeCargo(produce_binary=False)
        with pytest.raises(CompileError, match="does not exist"):
            make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST))

    def test_cargo_not_installed(self, project, cache, targets):
        """Test translation of a missing cargo executable."""
        runner = Mock()
        runner.run.side_effect = FileNotFoundError("cargo")
        with pytest.raises(CompileError, match="cargo not found"):
            BuildOrchestrator(project, cache, runner=runner).build(targets["default"], toolchain_for(HOST))

    def test_timeout(self, project, cache, targets):
        """Test translation of a cargo timeout."""
        runner = Mock()
        runner.run.side_effect = CommandTimeout("Command timed out after 5s")
        with pytest.raises(CompileError, match="timed out"):
            BuildOrchestrator(project, cache, runner=runner).build(targets["default"], toolchain_for(HOST))


class TestRunTests:
    """Tests for the test step."""

    def test_host_tests_pass(self, project, cache, targets):
        """Test a passing native test run."""
        fake = FakeCargo()
        output = make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST), run_tests=True)

        assert fake.calls[1][1] == "test"
        assert "--bin" not in fake.calls[1]
        assert output.test_status is TestStatus.PASSED
        assert output.test_failure is None

    def test_failing_tests_are_reported_not_raised(self, project, cache, targets):
        """Test that a non-zero test exit becomes a TestFailure on the output."""
        fake = FakeCargo(test_rc=101)
        output = make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST), run_tests=True)

        assert output.test_status is TestStatus.FAILED
        assert isinstance(output.test_failure, TestFailure)
        assert output.test_failure.returncode == 101
        assert "FAILED" in output.test_failure.output
        assert output.binary_path.exists()

    def test_cross_without_runner_is_skipped(self, project, cache, targets):
        """Test that a cross target without runner skips tests."""
        fake = FakeCargo()
        spec = targets["x86_64-unknown-linux-musl"]
        output = make_orchestrator(project, cache, fake).build(spec, toolchain_for(spec.triple), run_tests=True)

        assert output.test_status is TestStatus.SKIPPED
        assert [c[1] for c in fake.calls] == ["build"]

    def test_cross_with_runner_uses_shim(self, project, cache, targets):
        """Test that cross tests run through a generated emulation shim."""
        fake = FakeCargo()
        spec = targets["x86_64-pc-windows-gnu"]
        output = make_orchestrator(project, cache, fake).build(spec, toolchain_for(spec.triple), run_tests=True)

        assert output.test_status is TestStatus.PASSED
        runner_path = fake.envs[1]["CARGO_TARGET_X86_64_PC_WINDOWS_GNU_RUNNER"]
        script = fake.runner_scripts[0]
        assert script is not None
        assert "run_emulated(['wine64']" in script
        assert "'WINEPREFIX'" in script
        # The shim lives in a scoped scratch directory
        assert not os.path.exists(runner_path)

    def test_configured_runner_variable_is_respected(self, project, cache, targets):
        """Test that an explicit CARGO_TARGET_<T>_RUNNER is used as-is."""
        fake = FakeCargo()
        spec = targets["x86_64-unknown-linux-musl"]
        spec = TargetSpec(
            name=spec.name,
            triple=spec.triple,
            host_triple=HOST,
            env_items=(("CARGO_TARGET_X86_64_UNKNOWN_LINUX_MUSL_RUNNER", "qemu-x86_64"),),
        )
        output = make_orchestrator(project, cache, fake).build(spec, toolchain_for(spec.triple), run_tests=True)

        assert output.test_status is TestStatus.PASSED
        assert fake.envs[1]["CARGO_TARGET_X86_64_UNKNOWN_LINUX_MUSL_RUNNER"] == "qemu-x86_64"

    def test_test_timeout_is_failure(self, project, cache, targets):
        """Test that a hanging test run is reported as TestFailure."""
        fake = FakeCargo()
        original = fake.run

        def run(args, **kwargs):
            if str(args[1]) == "test":
                raise CommandTimeout("Command timed out after 600s")
            return original(args, **kwargs)

        fake.run = run
        output = make_orchestrator(project, cache, fake).build(targets["default"], toolchain_for(HOST), run_tests=True)
        assert output.test_status is TestStatus.FAILED
        assert output.test_failure.returncode == -1
