"""Exception hierarchy for the memoscribe pipeline.

Failures derive from PipelineFailure. Cancellation is a separate terminal
outcome and deliberately does not.
"""

from typing import Optional


class MemoscribeError(Exception):
    """Base exception for all memoscribe errors."""


class ConfigError(MemoscribeError):
    """Configuration loading or validation error."""


class PipelineFailure(MemoscribeError):
    """A pipeline stage failed."""


class DependencyMissing(PipelineFailure):
    """A required external binary is absent."""

    def __init__(
        self, dependency: str, message: str, install_hint: Optional[str] = None
    ):
        self.dependency = dependency
        self.message = message
        self.install_hint = install_hint
        super().__init__(f"{dependency}: {message}")


class InputMissing(PipelineFailure):
    """The audio file to process does not exist."""


class TranscodeError(PipelineFailure):
    """ffmpeg exited non-zero or did not produce its output file."""


class ArchiveWriteError(PipelineFailure):
    """The archive directory could not be created or populated."""


class ResultArtifactMissing(PipelineFailure):
    """The recognizer exited cleanly but wrote no transcript file."""


class RecognitionFailed(PipelineFailure):
    """The recognizer exited with a non-zero status."""


class Cancelled(MemoscribeError):
    """The operation was cancelled by the user."""
