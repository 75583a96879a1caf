"""End-to-end orchestration of the archive and transcription pipeline."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from .config import AppConfig
from .exceptions import (
    ArchiveWriteError,
    Cancelled,
    InputMissing,
    PipelineFailure,
)
from .models import ProcessingRequest, ProcessingResult, ProgressEvent
from .recognizer import TranscriptionRunner
from .state import PipelineStateEnum, PipelineStateManager, PipelineStatus
from .supervisor import ProcessSupervisor
from .transcoder import Transcoder

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Suffix of raw recordings written from captured bytes
CAPTURE_SUFFIX = ".webm"


def resolve_archive_dir(archive_dir: Path, base_dir: Path) -> Path:
    """Resolve the archive directory against the caller's base directory."""
    archive_dir = Path(archive_dir).expanduser()
    if archive_dir.is_absolute():
        return archive_dir
    return Path(base_dir) / archive_dir


class PipelineCoordinator:
    """Runs the pipeline; the only entry point for callers.

    One operation may be in flight at a time.
    """

    def __init__(
        self,
        config: AppConfig,
        base_dir: Path,
        state_manager: Optional[PipelineStateManager] = None,
    ):
        """Initialize the coordinator.

        Args:
            config: Application configuration.
            base_dir: Directory relative archive paths are resolved against.
            state_manager: Optional shared state manager.
        """
        self.config = config
        self.base_dir = Path(base_dir)
        self.scratch_dir = config.runtime.computed_scratch_dir
        self.state_manager = state_manager or PipelineStateManager()

        self.supervisor = ProcessSupervisor()
        self.transcoder = Transcoder(
            config.transcoder,
            self.supervisor,
            self.scratch_dir,
            self.state_manager.report_progress,
        )
        self.runner = TranscriptionRunner(
            config.recognizer,
            self.supervisor,
            self.scratch_dir,
            ffprobe_path=config.transcoder.ffprobe_path,
            on_progress=self.state_manager.report_progress,
            on_error=self.state_manager.report_error,
        )

        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def status(self) -> PipelineStatus:
        return self.state_manager.get_status()

    def add_progress_observer(self, observer: Callable[[ProgressEvent], Any]) -> None:
        self.state_manager.add_progress_observer(observer)

    def add_error_observer(self, observer: Callable[[str], Any]) -> None:
        self.state_manager.add_error_observer(observer)

    def request_settings(self, **overrides) -> dict:
        """Request settings from the configuration, with overrides applied."""
        settings = {
            "language": self.config.transcription.language,
            "model_size": self.config.transcription.model_size,
            "archive_dir": self.config.transcription.archive_dir,
        }
        settings.update({k: v for k, v in overrides.items() if v is not None})
        return settings

    def cancel(self) -> None:
        """Terminate whatever external process is running.

        Scratch files already on disk are left in place.
        """
        logger.info("Cancelling pipeline run")
        self.supervisor.cancel_all()

    async def process_captured_audio(
        self,
        request: ProcessingRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ProcessingResult:
        """Archive a recording as MP3 and transcribe it.

        Args:
            request: Recording bytes or path plus transcription settings.
            cancel_event: Optional shared trigger; setting it cancels the run.

        Returns:
            Transcript plus the archived MP3 bytes and location.

        Raises:
            PipelineFailure: If any stage fails.
            Cancelled: If the run was cancelled.
        """
        return await self._guarded(
            lambda: self._process_captured_audio(request), cancel_event
        )

    async def transcribe_existing_file(
        self,
        path: Path,
        request: Optional[ProcessingRequest] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Transcribe an audio file as-is, without converting or archiving it.

        Args:
            path: Audio file, absolute or relative to the base directory.
            request: Optional request carrying language and model size.
            cancel_event: Optional shared trigger; setting it cancels the run.

        Returns:
            The transcript text.
        """
        return await self._guarded(
            lambda: self._transcribe_existing_file(Path(path), request), cancel_event
        )

    async def _guarded(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel_event: Optional[asyncio.Event],
    ) -> T:
        """Run one operation with cancellation wiring and boundary error handling."""
        if self._busy:
            raise RuntimeError("A pipeline run is already in progress")

        self._busy = True
        self.supervisor.reset()
        watcher: Optional[asyncio.Task] = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._watch_cancel(cancel_event))

        try:
            result = await operation()
            self.state_manager.set_state(PipelineStateEnum.IDLE)
            return result

        except Cancelled:
            logger.info("Pipeline run cancelled")
            self.state_manager.set_cancelled()
            raise

        except asyncio.CancelledError:
            logger.info("Pipeline task cancelled, terminating external processes")
            self.supervisor.cancel_all()
            self.state_manager.set_cancelled()
            raise

        except PipelineFailure as e:
            logger.error(f"Audio processing failed: {e}")
            self.state_manager.set_error(str(e))
            raise

        except Exception as e:
            logger.exception("Unexpected error in pipeline")
            self.state_manager.set_error(f"Audio processing failed: {e}")
            raise

        finally:
            if watcher:
                watcher.cancel()
                try:
                    await watcher
                except asyncio.CancelledError:
                    pass
            self._busy = False

    async def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        self.cancel()

    async def _process_captured_audio(self, request: ProcessingRequest) -> ProcessingResult:
        name = request.recording_name
        await asyncio.to_thread(self.scratch_dir.mkdir, parents=True, exist_ok=True)
        input_path = await self._materialize_input(request, name)

        self.state_manager.set_state(PipelineStateEnum.TRANSCODING)
        archive_tmp, normalized_path = await self.transcoder.convert_both(
            input_path, name
        )

        self.state_manager.set_state(PipelineStateEnum.ARCHIVING)
        archive_path = await self._archive(archive_tmp, request.archive_dir)

        self.state_manager.set_state(PipelineStateEnum.TRANSCRIBING)
        transcript = await self.runner.run(
            normalized_path, request.language, request.model_size
        )

        try:
            audio_bytes = await asyncio.to_thread(archive_tmp.read_bytes)
        except OSError as e:
            raise PipelineFailure(f"Failed to read archived audio: {e}") from e
        finally:
            self._cleanup([input_path, normalized_path, archive_tmp])

        return ProcessingResult(
            transcript_text=transcript,
            archive_audio_bytes=audio_bytes,
            archive_path=archive_path,
        )

    async def _transcribe_existing_file(
        self, path: Path, request: Optional[ProcessingRequest]
    ) -> str:
        audio_path = path.expanduser()
        if not audio_path.is_absolute():
            audio_path = self.base_dir / audio_path
        if not audio_path.exists():
            raise InputMissing(f"Audio file not found: {audio_path}")

        if request is None:
            request = ProcessingRequest(source_path=audio_path, **self.request_settings())

        self.state_manager.set_state(PipelineStateEnum.TRANSCRIBING)
        return await self.runner.run(audio_path, request.language, request.model_size)

    async def _materialize_input(self, request: ProcessingRequest, name: str) -> Path:
        """Put the recording into the scratch directory."""
        if request.source_bytes is not None:
            input_path = self.scratch_dir / f"{name}{CAPTURE_SUFFIX}"
            await asyncio.to_thread(input_path.write_bytes, request.source_bytes)
        else:
            source = Path(request.source_path).expanduser()
            if not source.exists():
                raise InputMissing(f"Audio file not found: {source}")
            # Distinct stem so an .mp3 source never collides with the archive output
            input_path = self.scratch_dir / f"{name}_input{source.suffix.lower()}"
            await asyncio.to_thread(shutil.copyfile, source, input_path)

        logger.info(f"Wrote recording to {input_path}")
        return input_path

    async def _archive(self, archive_tmp: Path, archive_dir: Path) -> Path:
        """Copy the converted MP3 into the archive directory.

        Raises:
            ArchiveWriteError: If the directory or the copy cannot be created.
        """
        target_dir = resolve_archive_dir(archive_dir, self.base_dir)
        final_path = target_dir / archive_tmp.name

        if not archive_tmp.exists():
            raise ArchiveWriteError(f"Source file not found: {archive_tmp}")

        try:
            await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, archive_tmp, final_path)
        except OSError as e:
            raise ArchiveWriteError(f"Failed to save audio file: {e}") from e

        if not final_path.exists():
            raise ArchiveWriteError(f"Failed to save audio file: {final_path}")

        logger.info(f"Archived audio to {final_path}")
        self.state_manager.report_progress(f"Saved archive audio: {final_path}")
        return final_path

    def _cleanup(self, paths: Iterable[Path]) -> None:
        """Delete scratch files, logging rather than raising on failure."""
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Error deleting temporary file {path}: {e}")
