"""Emulation shim for running cross-compiled test binaries.

cargo runs every test binary of a cross target through the command in
``CARGO_TARGET_<TRIPLE>_RUNNER``, appending the binary path and the test
harness arguments. The shim:

1. creates a fresh scratch directory and exports it through the isolation
   variable (``WINEPREFIX`` for wine), so the emulator never touches a
   shared or read-only profile
2. runs ``<emulator> <binary> <args...>`` with the arguments unmodified
3. removes the scratch directory and exits with the binary's exit code

It is invoked either as ``crosspack shim`` or through a generated wrapper
script (see write_runner_script).
"""

import argparse
import logging
import os
import shlex
import shutil
import stat
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence


class ShimError(Exception):
    """Raised when the emulator cannot be started."""

    pass


def run_emulated(
    emulator: Sequence[str],
    argv: Sequence[str],
    isolation_var: Optional[str] = "WINEPREFIX",
) -> int:
    """Run a binary under an emulator with an isolated scratch profile.

    Args:
        emulator: Emulator command (e.g. ['wine64'])
        argv: Binary path followed by its arguments, passed through as-is
        isolation_var: Environment variable pointed at the scratch directory;
            None or '' disables isolation

    Returns:
        The emulated binary's exit code

    Raises:
        ShimError: If no binary was given or the emulator is not found
    """
    if not argv:
        raise ShimError("No binary given to the emulation shim")
    if not emulator:
        raise ShimError("No emulator command configured")

    scratch = tempfile.mkdtemp(prefix="crosspack-shim-")
    try:
        env = dict(os.environ)
        if isolation_var:
            env[isolation_var] = scratch
        command = [*emulator, *argv]
        logging.debug(f"Emulating: {' '.join(command)} ({isolation_var}={scratch})")
        try:
            completed = subprocess.run(command, env=env)
        except FileNotFoundError as e:
            raise ShimError(f"Emulator not found: {emulator[0]}") from e
        return completed.returncode
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def write_runner_script(
    path: Path,
    emulator: str,
    isolation_var: Optional[str] = "WINEPREFIX",
    python: Optional[str] = None,
) -> Path:
    """Write an executable wrapper usable as a cargo runner.

    cargo splits runner strings on whitespace, so the wrapper hides the
    interpreter path and options behind a single executable path.

    Args:
        path: Where to write the script
        emulator: Emulator command line (shell-quoted words allowed)
        isolation_var: Variable the shim isolates
        python: Interpreter running the shim (default: current interpreter)

    Returns:
        Path to the executable script
    """
    python = python or sys.executable
    isolation = repr(isolation_var or "")
    script = (
        f"#!{python}\n"
        "import sys\n"
        "from crosspack.shim import run_emulated\n"
        f"sys.exit(run_emulated({shlex.split(emulator)!r}, sys.argv[1:], {isolation}))\n"
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(script, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def main(args: Optional[List[str]] = None) -> int:
    """Entry point for ``crosspack shim``.

    Example:
        crosspack shim --emulator wine64 -- target/debug/deps/app-1234.exe --nocapture
    """
    parser = argparse.ArgumentParser(
        prog="crosspack shim",
        description="Run a cross-compiled binary under an emulator with a fresh profile",
    )
    parser.add_argument("--emulator", required=True, help="Emulator command (e.g. wine64)")
    parser.add_argument(
        "--isolation-var",
        default="WINEPREFIX",
        help="Variable pointed at the scratch directory (default: WINEPREFIX, '' to disable)",
    )
    parser.add_argument("argv", nargs=argparse.REMAINDER, help="Binary and its arguments")
    parsed = parser.parse_args(args)

    argv = list(parsed.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]

    try:
        return run_emulated(shlex.split(parsed.emulator), argv, parsed.isolation_var)
    except ShimError as e:
        print(f"crosspack shim: {e}", file=sys.stderr)
        return 127


if __name__ == "__main__":
    sys.exit(main())
