"""Speech-to-text with the external Whisper recognizer."""

import asyncio
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import RecognizerConfig
from .exceptions import (
    Cancelled,
    DependencyMissing,
    RecognitionFailed,
    ResultArtifactMissing,
)
from .models import ModelSize
from .progress import ProgressTracker, format_time, parse_timestamp_range
from .supervisor import ProcessRole, ProcessSupervisor, consume_lines
from .transcoder import probe_duration

logger = logging.getLogger(__name__)

ERROR_MARKER_RE = re.compile(r"Error: (.*?)$", re.MULTILINE)

TRANSCRIBING_LABEL = "Transcribing..."
COMPLETE_LABEL = "Transcription complete"


class RunState(str, Enum):
    """Lifecycle of a single recognizer run."""

    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


def extract_failure_message(output: str) -> str:
    """Pick the most useful failure message out of recognizer output.

    The text after the first ``Error:`` marker wins; without a marker the raw
    output is the message.
    """
    if "Error:" in output:
        match = ERROR_MARKER_RE.search(output)
        return match.group(1).strip() if match and match.group(1).strip() else "Unknown error"
    return output.strip()


def has_error_marker(line: str) -> bool:
    return "Error" in line or "error" in line


class TranscriptionRunner:
    """Runs the recognizer on one audio file and collects the transcript."""

    def __init__(
        self,
        config: RecognizerConfig,
        supervisor: ProcessSupervisor,
        scratch_dir: Path,
        ffprobe_path: str = "ffprobe",
        on_progress: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        """Initialize the runner.

        Args:
            config: Recognizer configuration.
            supervisor: Supervisor that owns the spawned processes.
            scratch_dir: Directory the recognizer writes its result file into.
            ffprobe_path: ffprobe executable used for the duration probe.
            on_progress: Callback receiving progress labels.
            on_error: Callback receiving error lines as they occur.
        """
        self.config = config
        self.supervisor = supervisor
        self.scratch_dir = scratch_dir
        self.ffprobe_path = ffprobe_path
        self.on_progress = on_progress or (lambda label: None)
        self.on_error = on_error or (lambda message: None)

        self._state = RunState.NOT_STARTED
        self._stdout_lines: List[str] = []

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def accumulated_output(self) -> str:
        """Transcript text reconstructed from standard output so far."""
        return "".join(f"{line}\n" for line in self._stdout_lines)

    def result_path(self, audio_path: Path) -> Path:
        """Where the recognizer writes the transcript for an input file."""
        return self.scratch_dir / f"{audio_path.stem}.txt"

    def build_command(
        self, audio_path: Path, language: str, model_size: ModelSize
    ) -> List[str]:
        """Recognizer arguments, starting with the recognizer script itself."""
        return [
            str(self.config.executable_path),
            str(audio_path),
            "--model", self.config.model_id(model_size),
            "--language", language,
            "--output-format", "txt",
            "--output-dir", str(self.scratch_dir),
            *self.config.extra_args,
        ]

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        path_parts = [*self.config.extra_path]
        if env.get("PATH"):
            path_parts.append(env["PATH"])
        env["PATH"] = os.pathsep.join(path_parts)
        # Line-by-line output from the recognizer's Python
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def check_dependencies(self) -> None:
        """Fail fast if the recognizer or its interpreter is not installed.

        Raises:
            DependencyMissing: If either file is absent.
        """
        executable = self.config.executable_path
        if not executable.exists():
            raise DependencyMissing(
                "mlx_whisper",
                f"recognizer not found: {executable}",
                install_hint=f"{self.config.venv_path}/bin/pip install mlx-whisper",
            )

        interpreter = self.config.interpreter_path
        if not interpreter.exists():
            raise DependencyMissing(
                "python",
                f"Python interpreter not found: {interpreter}",
                install_hint=f"python3 -m venv {self.config.venv_path}",
            )

    async def run(
        self,
        audio_path: Path,
        language: str,
        model_size: ModelSize = ModelSize.BASE,
    ) -> str:
        """Transcribe an audio file.

        Args:
            audio_path: Audio file to transcribe.
            language: Language code for the recognizer.
            model_size: Whisper model size.

        Returns:
            The trimmed transcript text.

        Raises:
            DependencyMissing: If the recognizer is not installed.
            ResultArtifactMissing: If the recognizer succeeded without a result file.
            RecognitionFailed: If the recognizer exited non-zero.
            Cancelled: If the run was cancelled through the supervisor.
        """
        self._state = RunState.NOT_STARTED
        try:
            transcript = await self._run(audio_path, language, model_size)
        except (Cancelled, asyncio.CancelledError):
            self._state = RunState.CANCELLED
            raise
        except Exception:
            self._state = RunState.FAILED
            raise

        self._state = RunState.SUCCEEDED
        return transcript

    async def _run(
        self, audio_path: Path, language: str, model_size: ModelSize
    ) -> str:
        self.check_dependencies()

        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.result_path(audio_path)
        command = self.build_command(audio_path, language, model_size)
        interpreter = str(self.config.interpreter_path)

        logger.info(f"Whisper command: {interpreter} {' '.join(command)}")
        handle = await self.supervisor.launch(
            ProcessRole.RECOGNIZER, interpreter, command, env=self.build_env()
        )
        self._state = RunState.RUNNING
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        tracker = ProgressTracker()
        stdout_lines = self._stdout_lines = []
        stderr_lines: List[str] = []

        def on_stdout_line(line: str) -> None:
            stdout_lines.append(line)
            logger.debug(f"Whisper stdout: {line}")

            span = parse_timestamp_range(line)
            if span is None:
                return

            snapshot = tracker.update(span[1])
            if tracker.total is None:
                self.on_progress(TRANSCRIBING_LABEL)
                return

            if snapshot is not None:
                self.on_progress(
                    f"{format_time(snapshot.elapsed)} / {format_time(snapshot.total)} "
                    f"({snapshot.percent}%)"
                )

        def on_stderr_line(line: str) -> None:
            stderr_lines.append(line)
            logger.debug(f"Whisper stderr: {line}")
            if has_error_marker(line):
                logger.error(f"Transcription error: {line}")
                self.on_error(f"Error during transcription: {line}")

        readers = asyncio.gather(
            consume_lines(handle.stdout, on_stdout_line),
            consume_lines(handle.stderr, on_stderr_line),
        )

        # Output is read while the probe runs; lines before it settles are indeterminate
        try:
            tracker.total = await probe_duration(
                self.supervisor, self.ffprobe_path, audio_path
            )
        except Cancelled:
            pass
        except BaseException:
            readers.cancel()
            raise

        await readers
        returncode = await self.supervisor.wait(handle)

        if self.supervisor.cancelled:
            raise Cancelled("Transcription cancelled")

        if returncode != 0:
            output = "\n".join(stdout_lines + stderr_lines)
            message = extract_failure_message(output) or f"exit code {returncode}"
            raise RecognitionFailed(f"Transcription failed: {message}")

        if not output_path.exists():
            raise ResultArtifactMissing(
                f"Transcription result file not found: {output_path}"
            )

        try:
            result = await asyncio.to_thread(output_path.read_text, encoding="utf-8")
        except OSError as e:
            raise RecognitionFailed(f"Failed to read transcription result: {e}") from e

        transcript = result.strip()
        logger.info(
            f"Transcription complete in {loop.time() - started_at:.1f}s "
            f"({len(transcript)} characters)"
        )
        self.on_progress(COMPLETE_LABEL)

        try:
            output_path.unlink()
        except OSError as e:
            logger.error(f"Failed to remove transcription result file: {e}")

        return transcript
