"""Data structures passed through the processing pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_LANGUAGE = "ja"
DEFAULT_ARCHIVE_DIR = Path("04_assets/audio")


class ModelSize(str, Enum):
    """Whisper model sizes understood by the recognizer."""

    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


def recording_name(captured_at: datetime) -> str:
    """Build the base name shared by every file derived from a recording.

    The capture time is rendered as a compact ISO timestamp, e.g.
    ``Recording 20261018T093015``.
    """
    return f"Recording {captured_at.strftime('%Y%m%dT%H%M%S')}"


@dataclass
class RecordingSession:
    """Raw audio captured by a recorder, as handed over once recording stops."""

    audio: bytes
    captured_at: datetime = field(default_factory=datetime.now)

    @property
    def recording_name(self) -> str:
        return recording_name(self.captured_at)


class ProcessingRequest(BaseModel):
    """An immutable request to archive and/or transcribe one recording."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    source_path: Optional[Path] = Field(
        default=None, description="Audio file on disk to process."
    )
    source_bytes: Optional[bytes] = Field(
        default=None, description="Raw recording bytes to process."
    )
    language: str = Field(
        default=DEFAULT_LANGUAGE, description="Language code passed to the recognizer."
    )
    model_size: ModelSize = Field(
        default=ModelSize.BASE, description="Whisper model size."
    )
    archive_dir: Path = Field(
        default=DEFAULT_ARCHIVE_DIR,
        description="Archive directory, absolute or relative to the base directory.",
    )
    captured_at: Optional[datetime] = Field(
        default=None, description="Capture time of the recording, if known."
    )

    @model_validator(mode="after")
    def check_single_source(self) -> "ProcessingRequest":
        if (self.source_path is None) == (self.source_bytes is None):
            raise ValueError("Exactly one of source_path or source_bytes is required")
        return self

    @classmethod
    def from_session(cls, session: RecordingSession, **settings) -> "ProcessingRequest":
        """Build a request from a finished recording session."""
        return cls(
            source_bytes=session.audio, captured_at=session.captured_at, **settings
        )

    @property
    def recording_name(self) -> str:
        return recording_name(self.captured_at or datetime.now())


@dataclass
class ProcessingResult:
    """Outcome of a successful pipeline run."""

    transcript_text: str
    # Absent when an existing file was transcribed
    archive_audio_bytes: Optional[bytes] = None
    archive_path: Optional[Path] = None


@dataclass(frozen=True)
class ProgressEvent:
    """Human-readable progress notice for observers."""

    label: str

    def __str__(self) -> str:
        return self.label
