"""Base exception types for crosspack.

Every failure raised by a pipeline stage derives from PipelineError. The
concrete exception classes live next to the code that raises them
(downloader, archive_utils, toolchain, ...); this module only holds the
shared base and the wrapper used when an error leaves a target pipeline.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline failures.

    Carries optional context so the caller can diagnose a failure without
    inspecting intermediate state.
    """

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.target = target
        self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.target:
            parts.append(f"  target: {self.target}")
        if self.stage:
            parts.append(f"  stage: {self.stage}")
        if self.cause is not None:
            parts.append(f"  cause: {type(self.cause).__name__}: {self.cause}")
        return "\n".join(parts)


class StageError(PipelineError):
    """A PipelineError annotated with the target and stage it escaped from."""

    def __init__(self, target: str, stage: str, error: PipelineError):
        super().__init__(
            f"[{target}] {stage} failed: {error.message}",
            target=target,
            stage=stage,
            cause=error.cause or error,
        )
        self.error = error

    @property
    def kind(self) -> str:
        """Class name of the wrapped error (e.g. 'ChecksumMismatch')."""
        return type(self.error).__name__
