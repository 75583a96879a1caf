"""Command-line entry point for memoscribe."""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, NoReturn, Optional, TypeVar

import typer
from rich.console import Console

from . import __version__
from .config import AppConfig, load_config
from .coordinator import PipelineCoordinator
from .exceptions import Cancelled, ConfigError, DependencyMissing, PipelineFailure
from .logging_setup import setup_logging
from .models import ModelSize, ProcessingRequest, ProgressEvent
from .state import PipelineStateEnum

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUPPORTED_SUFFIXES = {".mp3", ".wav", ".m4a", ".webm"}

EXIT_FAILURE = 1
EXIT_CANCELLED = 130

app = typer.Typer(
    name="memoscribe",
    help="Archive voice recordings as MP3 and transcribe them with Whisper.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

__all__ = ["app", "run"]


def format_note_insert(transcript: str, archive_name: Optional[str] = None) -> str:
    """Render a transcript the way it is inserted into a note.

    Archived recordings get an embed link to the audio above the transcript.
    """
    if archive_name:
        return f"\n![[{archive_name}]]\n{transcript}"
    return transcript.strip()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"memoscribe {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """memoscribe - voice recordings to archived audio and transcripts."""
    pass


def _prepare(config_path: Optional[Path], verbose: bool) -> AppConfig:
    """Load configuration and set up logging, exiting on bad configuration."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        err_console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    level = "DEBUG" if verbose else config.runtime.log_level
    setup_logging(level, config.runtime.computed_log_file, stream=verbose)
    return config


def _build_coordinator(config: AppConfig, base_dir: Path) -> PipelineCoordinator:
    coordinator = PipelineCoordinator(config, base_dir)
    state_manager = coordinator.state_manager

    # Terminal outcomes are printed once, by _execute
    def on_progress(event: ProgressEvent) -> None:
        if state_manager.current_state is PipelineStateEnum.CANCELLED:
            return
        err_console.print(f"[dim]{event.label}[/dim]")

    def on_error(message: str) -> None:
        if state_manager.current_state is PipelineStateEnum.ERROR:
            return
        err_console.print(f"[red]{message}[/red]")

    coordinator.add_progress_observer(on_progress)
    coordinator.add_error_observer(on_error)
    return coordinator


async def _run_cancellable(
    coordinator: PipelineCoordinator, operation: Callable[[], Awaitable[T]]
) -> T:
    """Run an operation, turning SIGINT/SIGTERM into pipeline cancellation."""
    loop = asyncio.get_running_loop()

    def handle_signal(sig: int) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, cancelling...")
        coordinator.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        return await operation()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def _execute(coordinator: PipelineCoordinator, operation: Callable[[], Awaitable[T]]) -> T:
    """Run a pipeline operation to completion, mapping outcomes to exit codes."""
    try:
        return asyncio.run(_run_cancellable(coordinator, operation))
    except Cancelled:
        err_console.print("[yellow]Transcription cancelled[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)
    except DependencyMissing as e:
        err_console.print(f"[red]Missing dependency: {e}[/red]")
        if e.install_hint:
            err_console.print(f"[dim]Try: {e.install_hint}[/dim]")
        raise typer.Exit(EXIT_FAILURE)
    except PipelineFailure as e:
        err_console.print(f"[red]Audio processing failed: {e}[/red]")
        raise typer.Exit(EXIT_FAILURE)


def _emit(text: str, output: Optional[Path]) -> None:
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
        err_console.print(f"[green]✓[/green] Wrote transcript to {output}")
    else:
        console.print(text, markup=False, highlight=False, soft_wrap=True)


def find_audio_files(base_dir: Path) -> List[Path]:
    """Supported audio files below a directory, sorted by relative path.

    Hidden directories such as a vault's settings folder are skipped.
    """
    found = []
    for path in base_dir.rglob("*"):
        relative = path.relative_to(base_dir)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file() and path.suffix.lower() in SUPPORTED_SUFFIXES:
            found.append(path)
    return sorted(found, key=lambda p: p.relative_to(base_dir).as_posix())


def _choose_audio_file(base_dir: Path) -> Path:
    """List the audio files under base_dir and ask which one to transcribe."""
    candidates = find_audio_files(base_dir)
    if not candidates:
        err_console.print(f"[yellow]No supported audio files found in {base_dir}[/yellow]")
        raise typer.Exit(EXIT_FAILURE)

    for index, path in enumerate(candidates, start=1):
        err_console.print(
            f"{index:3d}. {path.relative_to(base_dir)}", markup=False, highlight=False
        )

    choice = typer.prompt("Select a file", type=int)
    if not 1 <= choice <= len(candidates):
        err_console.print(f"[red]Error: choose a number from 1 to {len(candidates)}[/red]")
        raise typer.Exit(EXIT_FAILURE)
    return candidates[choice - 1]


@app.command("archive")
def archive_recording(
    recording: Path = typer.Argument(..., help="Recorded audio file to archive"),
    language: Optional[str] = typer.Option(
        None, "--language", "-l", help="Language code (default from config)"
    ),
    model: Optional[ModelSize] = typer.Option(
        None, "--model", "-m", help="Whisper model size (default from config)"
    ),
    archive_dir: Optional[Path] = typer.Option(
        None, "--archive-dir", help="Archive directory (default from config)"
    ),
    base_dir: Path = typer.Option(
        Path("."), "--base-dir", "-d", help="Base for relative archive directories"
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the note text here instead of stdout"
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
) -> None:
    """Convert a recording to MP3 in the archive directory and transcribe it."""
    config = _prepare(config_path, verbose)

    if not recording.exists():
        err_console.print(f"[red]Error: File not found: {recording}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    coordinator = _build_coordinator(config, base_dir.resolve())
    captured_at = datetime.fromtimestamp(recording.stat().st_mtime)
    request = ProcessingRequest(
        source_path=recording.resolve(),
        captured_at=captured_at,
        **coordinator.request_settings(
            language=language, model_size=model, archive_dir=archive_dir
        ),
    )

    result = _execute(coordinator, lambda: coordinator.process_captured_audio(request))

    archive_name = result.archive_path.name if result.archive_path else None
    _emit(format_note_insert(result.transcript_text, archive_name), output)


@app.command("transcribe")
def transcribe_file(
    audio: Optional[Path] = typer.Argument(
        None, help="Audio file to transcribe (pick from --base-dir if omitted)"
    ),
    language: Optional[str] = typer.Option(
        None, "--language", "-l", help="Language code (default from config)"
    ),
    model: Optional[ModelSize] = typer.Option(
        None, "--model", "-m", help="Whisper model size (default from config)"
    ),
    base_dir: Path = typer.Option(
        Path("."), "--base-dir", "-d", help="Base for relative audio paths"
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the transcript here instead of stdout"
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
) -> None:
    """Transcribe an existing audio file without archiving it."""
    config = _prepare(config_path, verbose)
    base_dir = base_dir.resolve()

    if audio is None:
        audio = _choose_audio_file(base_dir)

    if audio.suffix.lower() not in SUPPORTED_SUFFIXES:
        err_console.print(
            f"[yellow]Warning: {audio.suffix or 'no suffix'} is not one of "
            f"{', '.join(sorted(SUPPORTED_SUFFIXES))}[/yellow]"
        )

    coordinator = _build_coordinator(config, base_dir)
    request = ProcessingRequest(
        source_path=audio,
        **coordinator.request_settings(language=language, model_size=model),
    )

    transcript = _execute(
        coordinator, lambda: coordinator.transcribe_existing_file(audio, request)
    )
    _emit(format_note_insert(transcript), output)


def run() -> NoReturn:
    """Entry point for the console script."""
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(EXIT_CANCELLED)
