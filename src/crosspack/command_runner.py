"""Command execution helpers.

This module runs the external tools of a pipeline (cargo, rustc, rustup,
emulators) as subprocesses.

Design:
    - Wraps subprocess.Popen with an optional timeout
    - Captures output, or streams it to the console in verbose mode
    - On timeout or interrupt, terminates the whole process tree (psutil),
      since cargo spawns rustc, linkers and test binaries as children
    - Leaves interpretation of the exit code to the caller
"""

import _thread
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

import psutil


class CommandTimeout(Exception):
    """Raised when a command exceeds its timeout."""

    pass


def forward_keyboard_interrupt(ke: KeyboardInterrupt) -> None:
    """Interrupt the main thread, then re-raise.

    Pipelines run in worker threads; without this the executor in the main
    thread keeps waiting on the remaining targets after Ctrl-C.

    Raises:
        KeyboardInterrupt: Always
    """
    _thread.interrupt_main()
    raise ke


@dataclass
class CommandResult:
    """Outcome of one command execution."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 40) -> str:
        """Last lines of combined output, for error messages."""
        combined = (self.stdout or "").splitlines() + (self.stderr or "").splitlines()
        return "\n".join(combined[-lines:])


class CommandRunner:
    """Executes commands and cleans up their process trees.

    Example:
        runner = CommandRunner(verbose=True)
        result = runner.run(["cargo", "build"], cwd=source_dir, env=env)
        if not result.ok:
            print(result.tail())
    """

    def __init__(self, verbose: bool = False, timeout: Optional[float] = None):
        """Initialize command runner.

        Args:
            verbose: Stream output to the console instead of capturing it
            timeout: Default timeout in seconds (None waits forever)
        """
        self.verbose = verbose
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            args: Program and arguments
            cwd: Working directory
            env: Complete environment for the child (default: inherit)
            timeout: Override of the default timeout

        Returns:
            CommandResult with exit code and captured output

        Raises:
            FileNotFoundError: If the program does not exist
            CommandTimeout: If the command runs longer than the timeout
        """
        argv = [str(a) for a in args]
        effective_timeout = timeout if timeout is not None else self.timeout
        logging.debug(f"Running: {' '.join(argv)} (cwd={cwd})")

        capture = None if self.verbose else subprocess.PIPE
        process = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdout=capture,
            stderr=capture,
            text=True,
        )

        try:
            stdout, stderr = process.communicate(timeout=effective_timeout)
        except subprocess.TimeoutExpired as e:
            killed = self.kill_process_tree(process.pid)
            process.communicate()
            logging.warning(f"Timed out after {effective_timeout}s, killed {killed} processes: {argv[0]}")
            raise CommandTimeout(f"Command timed out after {effective_timeout}s: {' '.join(argv)}") from e
        except KeyboardInterrupt as ke:
            self.kill_process_tree(process.pid)
            forward_keyboard_interrupt(ke)
            raise  # Never reached, but satisfies type checker

        return CommandResult(
            args=argv,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )

    @staticmethod
    def kill_process_tree(root_pid: int) -> int:
        """Terminate a process and all of its descendants.

        Children are terminated before the parent; anything still alive
        after a short grace period is killed.

        Args:
            root_pid: PID of the tree root

        Returns:
            Number of processes signalled
        """
        try:
            root = psutil.Process(root_pid)
            processes = root.children(recursive=True) + [root]
        except psutil.NoSuchProcess:
            return 0

        signalled: List[psutil.Process] = []
        for proc in processes:
            try:
                proc.terminate()
                signalled.append(proc)
            except psutil.NoSuchProcess:
                pass  # Already dead
            except psutil.AccessDenied as e:
                logging.warning(f"Failed to terminate process {proc.pid}: {e}")

        _gone, alive = psutil.wait_procs(signalled, timeout=3)
        for proc in alive:
            try:
                proc.kill()
                logging.warning(f"Force killed stubborn process {proc.pid}")
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logging.warning(f"Failed to force kill process {proc.pid}: {e}")

        return len(signalled)


def child_environment(overrides: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> dict:
    """Environment for a child process: base (default os.environ) plus overrides."""
    env = dict(os.environ if base is None else base)
    env.update(overrides)
    return env
