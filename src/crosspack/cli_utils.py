"""CLI utility functions for crosspack.

This module provides common utilities used across CLI commands including:
- Logging setup (console + rotating log file)
- Error handling and formatting
- Project path validation
- Report rendering
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Sequence

from crosspack.errors import PipelineError, StageError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Setup logging for a CLI run.

    Args:
        verbose: Also log to the console
        log_file: Rotating log file (skipped when None)
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Console handler (verbose mode)
    if verbose:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    # Rotating file handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
        )
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "Configuration error", "Build failed")
            message: Error message details
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}! {message}{ErrorFormatter.RESET}")

    @staticmethod
    def format_pipeline_error(error: PipelineError) -> str:
        """Render a pipeline error with its kind, stage and cause."""
        if isinstance(error, StageError):
            kind = error.kind
            inner = error.error
        else:
            kind = type(error).__name__
            inner = error
        lines = [f"{kind}: {inner.message}"]
        if error.stage:
            lines.append(f"  stage: {error.stage}")
        if inner.cause is not None:
            lines.append(f"  cause: {type(inner.cause).__name__}: {inner.cause}")
        return "\n".join(lines)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Build interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Args:
            project_dir: Path to validate

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)
        if not project_dir.is_dir():
            print(f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)


def print_summary(reports: Sequence) -> int:
    """Print one line per target report and return the number of failures."""
    failures = 0
    print()
    print("Summary:")
    for report in reports:
        if report.ok:
            location = report.archive.path if report.archive is not None else report.bundle_dir
            status = f"{ErrorFormatter.GREEN}ok{ErrorFormatter.RESET}"
            if report.test_failure is not None:
                status += f" {ErrorFormatter.YELLOW}(tests failed){ErrorFormatter.RESET}"
            print(f"  {report.name:<28} {status}  {location}")
        else:
            failures += 1
            print(
                f"  {report.name:<28} {ErrorFormatter.RED}failed{ErrorFormatter.RESET}"
                f"  {report.error.stage}: {report.error.kind}"
            )
    return failures
