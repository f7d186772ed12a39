"""
Command-line interface for crosspack.

This module provides the `crosspack` CLI tool for building and packaging a
Rust application for several targets.
"""

import argparse
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from crosspack import __version__
from crosspack.cli_utils import ErrorFormatter, PathValidator, print_summary, setup_logging
from crosspack.config import CrosspackConfigError, TargetConfigError
from crosspack.errors import PipelineError
from crosspack.packages.cache import Cache
from crosspack.pipeline import PipelineRunner


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    project_dir: Path
    targets: List[str] = field(default_factory=list)
    tests: Optional[bool] = None
    gate_on_tests: bool = False
    jobs: Optional[int] = None
    config: Optional[Path] = None
    verbose: bool = False


@dataclass
class TargetsArgs:
    """Arguments for the targets command."""

    project_dir: Path
    config: Optional[Path] = None


@dataclass
class FetchArgs:
    """Arguments for the fetch command."""

    project_dir: Path
    dependency: str
    config: Optional[Path] = None
    verbose: bool = False


def build_command(args: BuildArgs) -> None:
    """Build and package the selected targets.

    Examples:
        crosspack build                                # Build the default target
        crosspack build x86_64-pc-windows-gnu          # Build and zip the Windows target
        crosspack build default x86_64-unknown-linux-musl --tests
        crosspack build --tests --gate-on-tests        # Fail targets whose tests fail
        crosspack build -C ../app -j 2 -v
    """
    print(f"crosspack v{__version__}")
    print()

    try:
        cache = Cache(args.project_dir)
        setup_logging(args.verbose, cache.log_file)
        runner = PipelineRunner.from_project(args.project_dir, args.config, verbose=args.verbose)

        start_time = time.time()
        reports = runner.run(
            args.targets,
            run_tests=args.tests,
            gate_on_tests=args.gate_on_tests,
            jobs=args.jobs,
        )
        build_time = time.time() - start_time

        for report in reports:
            if not report.ok:
                ErrorFormatter.print_error(
                    f"{report.name} failed", ErrorFormatter.format_pipeline_error(report.error)
                )
            elif report.test_failure is not None:
                ErrorFormatter.print_warning(f"{report.name}: {report.test_failure.message}")
                if args.verbose and report.test_failure.output:
                    print(report.test_failure.output)

        failures = print_summary(reports)
        print()
        print(f"Build time: {build_time:.2f}s")

        if failures:
            sys.exit(1)
        ErrorFormatter.print_success("All targets built successfully!")
        sys.exit(0)

    except (CrosspackConfigError, TargetConfigError) as e:
        ErrorFormatter.print_error("Configuration error", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def targets_command(args: TargetsArgs) -> None:
    """List the target table.

    Examples:
        crosspack targets
        crosspack targets -C ../app
    """
    try:
        runner = PipelineRunner.from_project(args.project_dir, args.config, show_progress=False)
    except (CrosspackConfigError, TargetConfigError) as e:
        ErrorFormatter.print_error("Configuration error", str(e))
        sys.exit(1)

    for spec in runner.targets.values():
        kind = "cross" if spec.is_cross_compile else "host"
        print(f"{spec.name}")
        print(f"  triple:       {spec.triple} ({kind})")
        if spec.platform_suffix:
            print(f"  archive:      {runner.project.binary}-{spec.platform_suffix}.zip")
        if spec.dependencies:
            print(f"  dependencies: {', '.join(spec.dependencies)}")
        if spec.test_runner:
            print(f"  test runner:  {spec.test_runner} ({spec.isolation_var})")
        if spec.rustflags:
            print(f"  rustflags:    {' '.join(spec.rustflags)}")
    sys.exit(0)


def fetch_command(args: FetchArgs) -> None:
    """Fetch, verify and stage one native dependency.

    Examples:
        crosspack fetch libopus
    """
    try:
        cache = Cache(args.project_dir)
        setup_logging(args.verbose, cache.log_file)
        runner = PipelineRunner.from_project(args.project_dir, args.config, verbose=args.verbose)
        artifact = runner.fetch(args.dependency)

        ErrorFormatter.print_success(f"Staged {artifact.name}")
        print(f"Root:  {artifact.root_path}")
        print(f"Files: {len(artifact.manifest)}")
        if args.verbose:
            for rel in artifact.manifest:
                print(f"  {rel}")
        sys.exit(0)

    except (CrosspackConfigError, TargetConfigError) as e:
        ErrorFormatter.print_error("Configuration error", str(e))
        sys.exit(1)
    except PipelineError as e:
        ErrorFormatter.print_error(f"Fetching {args.dependency} failed", ErrorFormatter.format_pipeline_error(e))
        sys.exit(1)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: <project-dir>/crosspack.ini)",
    )


def main(argv: Optional[List[str]] = None) -> None:
    """crosspack - build and package a Rust application for several targets."""
    if argv is None:
        argv = sys.argv[1:]

    # The shim passes everything after its own options through untouched.
    if argv and argv[0] == "shim":
        from crosspack.shim import main as shim_main

        sys.exit(shim_main(argv[1:]))

    parser = argparse.ArgumentParser(
        prog="crosspack",
        description="crosspack - multi-target build and packaging for Rust applications",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"crosspack {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Build command
    build_parser = subparsers.add_parser(
        "build",
        help="Build and package targets",
    )
    build_parser.add_argument(
        "targets",
        nargs="*",
        help="Targets to build (default: 'default')",
    )
    _add_common_arguments(build_parser)
    tests_group = build_parser.add_mutually_exclusive_group()
    tests_group.add_argument(
        "--tests",
        dest="tests",
        action="store_true",
        default=None,
        help="Run the test suite of each target",
    )
    tests_group.add_argument(
        "--no-tests",
        dest="tests",
        action="store_false",
        help="Never run tests, even for targets configured with run_tests",
    )
    build_parser.add_argument(
        "--gate-on-tests",
        action="store_true",
        help="Fail a target (no package) when its tests fail",
    )
    build_parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Maximum number of targets built at once (default: all)",
    )
    build_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose build output",
    )

    # Targets command
    targets_parser = subparsers.add_parser(
        "targets",
        help="List available targets",
    )
    _add_common_arguments(targets_parser)

    # Fetch command
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Fetch and stage a native dependency into the cache",
    )
    fetch_parser.add_argument("dependency", help="Dependency name (e.g. libopus)")
    _add_common_arguments(fetch_parser)
    fetch_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )

    # Shim command (dispatched before parsing; registered for --help)
    subparsers.add_parser(
        "shim",
        help="Run a cross-compiled binary under an emulator (see 'crosspack shim --help')",
        add_help=False,
    )

    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    PathValidator.validate_project_dir(parsed_args.project_dir)

    if parsed_args.command == "build":
        if parsed_args.jobs is not None and parsed_args.jobs < 1:
            parser.error("--jobs must be at least 1")
        build_command(
            BuildArgs(
                project_dir=parsed_args.project_dir,
                targets=list(parsed_args.targets),
                tests=parsed_args.tests,
                gate_on_tests=parsed_args.gate_on_tests,
                jobs=parsed_args.jobs,
                config=parsed_args.config,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "targets":
        targets_command(TargetsArgs(project_dir=parsed_args.project_dir, config=parsed_args.config))
    elif parsed_args.command == "fetch":
        fetch_command(
            FetchArgs(
                project_dir=parsed_args.project_dir,
                dependency=parsed_args.dependency,
                config=parsed_args.config,
                verbose=parsed_args.verbose,
            )
        )


if __name__ == "__main__":
    main()
