"""Configuration handling for memoscribe."""

import os
import tempfile
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigError
from .models import DEFAULT_ARCHIVE_DIR, DEFAULT_LANGUAGE, ModelSize


def get_default_config_path() -> Path:
    """Get the default config file path under the XDG base directories."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "memoscribe" / "config.toml"


def get_default_log_path() -> Path:
    """Get the default log file path under the XDG base directories."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "memoscribe"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "memoscribe.log"


def get_default_scratch_dir() -> Path:
    """Get the process-wide scratch directory for intermediate files."""
    return Path(tempfile.gettempdir()) / "memoscribe"


class TranscriptionConfig(BaseModel):
    """Per-request defaults for transcription."""

    model_config = ConfigDict(protected_namespaces=())

    language: str = Field(
        default=DEFAULT_LANGUAGE, description="Language code for recognition."
    )
    model_size: ModelSize = Field(
        default=ModelSize.BASE, description="Whisper model size."
    )
    archive_dir: Path = Field(
        default=DEFAULT_ARCHIVE_DIR,
        description="Where archived recordings go (relative to the base directory).",
    )

    @field_validator("language")
    @classmethod
    def check_language_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Language code cannot be empty")
        return v.strip()


class RecognizerConfig(BaseModel):
    """External Whisper recognizer configuration."""

    model_config = ConfigDict(protected_namespaces=())

    venv_path: Path = Field(
        default=Path.home() / "Documents" / "obsidian" / "whisper-env",
        description="Virtualenv holding the recognizer and its interpreter.",
    )
    executable: str = Field(
        default="mlx_whisper", description="Recognizer script inside <venv>/bin."
    )
    interpreter: str = Field(
        default="python3", description="Interpreter inside <venv>/bin."
    )
    model_template: str = Field(
        default="mlx-community/whisper-{size}-mlx",
        description="Model id template; {size} is replaced by the model size.",
    )
    extra_args: List[str] = Field(
        default_factory=lambda: ["--condition-on-previous-text", "False"],
        description="Additional recognizer flags appended to every invocation.",
    )
    extra_path: List[str] = Field(
        default_factory=lambda: ["/opt/homebrew/bin"],
        description="Directories prepended to PATH for the recognizer.",
    )

    @field_validator("model_template")
    @classmethod
    def check_template(cls, v: str) -> str:
        if "{size}" not in v:
            raise ValueError("model_template must contain a {size} placeholder")
        return v

    @property
    def executable_path(self) -> Path:
        return self.venv_path.expanduser() / "bin" / self.executable

    @property
    def interpreter_path(self) -> Path:
        return self.venv_path.expanduser() / "bin" / self.interpreter

    def model_id(self, size: ModelSize) -> str:
        return self.model_template.format(size=ModelSize(size).value)


class TranscoderConfig(BaseModel):
    """ffmpeg configuration."""

    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable.")
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe executable.")
    input_options: List[str] = Field(
        default_factory=lambda: [
            "-f", "webm",
            "-c:a", "opus",
            "-analyzeduration", "0",
            "-probesize", "32768",
        ],
        description="Input container/codec hints for captured recordings.",
    )
    archive_bitrate_k: int = Field(
        default=192, gt=0, description="MP3 bitrate for archived audio (kbit/s)."
    )
    normalized_sample_rate: int = Field(
        default=16000, gt=0, description="Sample rate of the recognizer input."
    )
    normalized_channels: int = Field(
        default=1, ge=1, description="Channel count of the recognizer input."
    )


class RuntimeConfig(BaseModel):
    """Process-wide runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    scratch_dir: Optional[Path] = Field(
        default=None, description="Optional custom scratch directory."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_scratch_dir(self) -> Path:
        return self.scratch_dir or get_default_scratch_dir()


class AppConfig(BaseModel):
    """Root configuration."""

    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    recognizer: RecognizerConfig = Field(default_factory=RecognizerConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in the standard location.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ConfigError: If the config file exists but cannot be read, decoded or
            validated.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise ConfigError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e
