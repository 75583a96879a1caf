"""Audio conversion with ffmpeg.

A recording is converted twice, concurrently: to MP3 for the archive and to
16kHz mono PCM WAV for the recognizer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import TranscoderConfig
from .exceptions import Cancelled, DependencyMissing, TranscodeError
from .progress import ProgressTracker, parse_ffmpeg_progress
from .supervisor import ProcessRole, ProcessSupervisor, consume_lines

logger = logging.getLogger(__name__)

# Input hints only apply to recordings captured in this container
HINTED_SUFFIX = ".webm"

# Lines of ffmpeg stderr kept for error messages
STDERR_TAIL_LINES = 20


async def probe_duration(
    supervisor: ProcessSupervisor, ffprobe_path: str, path: Path
) -> Optional[float]:
    """Ask ffprobe for the duration of a media file.

    A failed probe is not an error: progress simply stays indeterminate.

    Returns:
        Duration in seconds, or None if it could not be determined.

    Raises:
        Cancelled: If the run was cancelled before the probe started.
    """
    args = [
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    try:
        handle = await supervisor.launch(ProcessRole.DURATION_PROBE, ffprobe_path, args)
    except DependencyMissing as e:
        logger.error(f"Cannot probe duration: {e}")
        return None

    try:
        stdout, stderr = await handle.process.communicate()
    finally:
        supervisor.release(handle)

    if handle.process.returncode != 0:
        logger.error(
            f"ffprobe failed for {path}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )
        return None

    text = stdout.decode("utf-8", errors="replace").strip()
    try:
        duration = float(text)
    except ValueError:
        logger.warning(f"No usable duration for {path} (ffprobe said {text!r})")
        return None

    logger.info(f"Audio duration of {path.name}: {duration:.3f} seconds")
    return duration if duration > 0 else None


class Transcoder:
    """Runs the archive and normalization conversions."""

    def __init__(
        self,
        config: TranscoderConfig,
        supervisor: ProcessSupervisor,
        scratch_dir: Path,
        on_progress: Callable[[str], None],
    ):
        """Initialize the transcoder.

        Args:
            config: ffmpeg configuration.
            supervisor: Supervisor that owns the spawned processes.
            scratch_dir: Directory receiving the converted files.
            on_progress: Callback receiving progress labels.
        """
        self.config = config
        self.supervisor = supervisor
        self.scratch_dir = scratch_dir
        self.on_progress = on_progress

    def _input_args(self, input_path: Path) -> List[str]:
        args = []
        if input_path.suffix.lower() == HINTED_SUFFIX:
            args.extend(self.config.input_options)
        args.extend(["-i", str(input_path)])
        return args

    def _base_args(self) -> List[str]:
        return [
            "-y",
            "-hide_banner",
            "-nostats",
            "-loglevel", "error",
            "-progress", "pipe:1",
        ]

    def archive_args(self, input_path: Path, output_path: Path) -> List[str]:
        """ffmpeg arguments for the MP3 archive conversion."""
        return [
            *self._base_args(),
            *self._input_args(input_path),
            "-vn",
            "-codec:a", "libmp3lame",
            "-b:a", f"{self.config.archive_bitrate_k}k",
            "-f", "mp3",
            str(output_path),
        ]

    def normalize_args(self, input_path: Path, output_path: Path) -> List[str]:
        """ffmpeg arguments for the recognizer-ready WAV conversion."""
        return [
            *self._base_args(),
            *self._input_args(input_path),
            "-vn",
            "-codec:a", "pcm_s16le",
            "-ar", str(self.config.normalized_sample_rate),
            "-ac", str(self.config.normalized_channels),
            "-f", "wav",
            str(output_path),
        ]

    async def probe_duration(self, path: Path) -> Optional[float]:
        return await probe_duration(self.supervisor, self.config.ffprobe_path, path)

    async def convert_to_archive(
        self, input_path: Path, name: str, total: Optional[float] = None
    ) -> Path:
        """Convert to MP3 at ``<scratch>/<name>.mp3``."""
        output_path = self.scratch_dir / f"{name}.mp3"
        await self._run_ffmpeg(
            ProcessRole.ARCHIVE_TRANSCODE,
            "mp3",
            self.archive_args(input_path, output_path),
            output_path,
            total,
        )
        return output_path

    async def convert_to_normalized(
        self, input_path: Path, total: Optional[float] = None
    ) -> Path:
        """Convert to mono PCM WAV next to the input, as ``<stem>_converted.wav``."""
        output_path = input_path.with_name(f"{input_path.stem}_converted.wav")
        await self._run_ffmpeg(
            ProcessRole.NORMALIZE_TRANSCODE,
            "wav",
            self.normalize_args(input_path, output_path),
            output_path,
            total,
        )
        return output_path

    async def convert_both(self, input_path: Path, name: str) -> Tuple[Path, Path]:
        """Run both conversions concurrently and wait for both.

        If one conversion fails the other is terminated and the first failure
        is raised.

        Returns:
            Tuple of (archive MP3 path, normalized WAV path).
        """
        total = await self.probe_duration(input_path)

        archive_task = asyncio.create_task(
            self.convert_to_archive(input_path, name, total)
        )
        normalize_task = asyncio.create_task(
            self.convert_to_normalized(input_path, total)
        )
        tasks = {archive_task, normalize_task}

        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        failed = [task for task in done if task.exception() is not None]
        if failed:
            if pending:
                logger.info("Stopping the remaining conversion after a failure")
                self.supervisor.terminate(ProcessRole.ARCHIVE_TRANSCODE)
                self.supervisor.terminate(ProcessRole.NORMALIZE_TRANSCODE)
                await asyncio.wait(pending)
                for task in pending:
                    # Mark sibling exceptions as retrieved
                    task.exception()
            # Cancellation wins over the failures it causes
            for task in failed:
                if isinstance(task.exception(), Cancelled):
                    raise task.exception()
            raise failed[0].exception()

        return archive_task.result(), normalize_task.result()

    async def _run_ffmpeg(
        self,
        role: ProcessRole,
        label: str,
        args: List[str],
        output_path: Path,
        total: Optional[float],
    ) -> None:
        """Run one ffmpeg conversion, reporting percent-complete."""
        tracker = ProgressTracker(total)
        last_percent: Optional[int] = None
        stderr_lines: List[str] = []

        def report(percent: int) -> None:
            nonlocal last_percent
            if percent != last_percent:
                last_percent = percent
                self.on_progress(f"Converting to {label}: {percent}% done")

        def on_stdout_line(line: str) -> None:
            if line.strip() == "progress=end":
                report(100)
                return
            elapsed = parse_ffmpeg_progress(line)
            if elapsed is None:
                return
            snapshot = tracker.update(elapsed)
            if snapshot is not None:
                report(snapshot.percent or 0)

        handle = await self.supervisor.launch(role, self.config.ffmpeg_path, args)

        await asyncio.gather(
            consume_lines(handle.stdout, on_stdout_line),
            consume_lines(handle.stderr, stderr_lines.append),
        )
        returncode = await self.supervisor.wait(handle)

        if self.supervisor.cancelled:
            raise Cancelled(f"{label} conversion cancelled")

        if returncode != 0:
            tail = "\n".join(stderr_lines[-STDERR_TAIL_LINES:]).strip()
            logger.error(f"FFmpeg {label} error (exit code {returncode}): {tail}")
            raise TranscodeError(
                f"FFmpeg {label} conversion failed (exit code {returncode}): {tail}"
            )

        if not output_path.exists():
            raise TranscodeError(f"FFmpeg {label} conversion produced no file: {output_path}")

        logger.info(f"Converted to {label}: {output_path}")
