"""Tests for the memoscribe CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from memoscribe.exceptions import Cancelled, DependencyMissing, InputMissing, RecognitionFailed
from memoscribe.config import AppConfig, RuntimeConfig
from memoscribe.main import _build_coordinator, app, find_audio_files, format_note_insert
from memoscribe.models import ModelSize, ProcessingResult

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(
        f'[runtime]\nlog_file = "{tmp_path / "memoscribe.log"}"\n'
        f'scratch_dir = "{tmp_path / "scratch"}"\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """A base directory holding audio files next to other content."""
    root = tmp_path / "vault"
    (root / "notes").mkdir(parents=True)
    (root / ".obsidian").mkdir()
    (root / "b.wav").write_bytes(b"RIFF")
    (root / "notes" / "a.m4a").write_bytes(b"m4a")
    (root / "notes" / "todo.md").write_text("- [ ] call back", encoding="utf-8")
    (root / ".obsidian" / "chime.mp3").write_bytes(b"mp3")
    return root.resolve()


@pytest.fixture
def recording(tmp_path: Path) -> Path:
    path = tmp_path / "capture.webm"
    path.write_bytes(b"\x1aE\xdf\xa3webm")
    return path


def _settings(**overrides):
    settings = {
        "language": "ja",
        "model_size": ModelSize.BASE,
        "archive_dir": Path("04_assets/audio"),
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return settings


@pytest.fixture
def coordinator():
    with patch("memoscribe.main.PipelineCoordinator") as mock_cls:
        instance = mock_cls.return_value
        instance.request_settings.side_effect = _settings
        instance.process_captured_audio = AsyncMock(
            return_value=ProcessingResult(
                transcript_text="こんにちは",
                archive_audio_bytes=b"mp3",
                archive_path=Path("/vault/04_assets/audio/Recording 20261018T093015.mp3"),
            )
        )
        instance.transcribe_existing_file = AsyncMock(return_value="hello world")
        yield instance


class TestFormatNoteInsert:
    def test_with_archive(self) -> None:
        text = format_note_insert("こんにちは", "Recording 20261018T093015.mp3")
        assert text == "\n![[Recording 20261018T093015.mp3]]\nこんにちは"

    def test_without_archive(self) -> None:
        assert format_note_insert("  hello world\n") == "hello world"


class TestArchiveCommand:
    def test_archive_prints_note(self, coordinator, recording: Path, config_file: Path) -> None:
        result = runner.invoke(app, ["archive", str(recording), "--config", str(config_file)])

        assert result.exit_code == 0
        assert "![[Recording 20261018T093015.mp3]]" in result.output
        assert "こんにちは" in result.output

        request = coordinator.process_captured_audio.call_args.args[0]
        assert request.source_path == recording.resolve()
        assert request.language == "ja"
        assert request.captured_at is not None

    def test_archive_options(self, coordinator, recording: Path, config_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            app,
            [
                "archive", str(recording),
                "-l", "en",
                "-m", "small",
                "--archive-dir", str(tmp_path / "audio"),
                "--config", str(config_file),
            ],
        )

        assert result.exit_code == 0
        request = coordinator.process_captured_audio.call_args.args[0]
        assert request.language == "en"
        assert request.model_size == ModelSize.SMALL
        assert request.archive_dir == tmp_path / "audio"

    def test_archive_writes_output_file(self, coordinator, recording: Path, config_file: Path, tmp_path: Path) -> None:
        note = tmp_path / "notes" / "memo.md"
        result = runner.invoke(
            app, ["archive", str(recording), "-o", str(note), "--config", str(config_file)]
        )

        assert result.exit_code == 0
        assert note.read_text(encoding="utf-8") == (
            "\n![[Recording 20261018T093015.mp3]]\nこんにちは"
        )

    def test_archive_missing_file(self, coordinator, tmp_path: Path, config_file: Path) -> None:
        result = runner.invoke(
            app, ["archive", str(tmp_path / "nope.webm"), "--config", str(config_file)]
        )

        assert result.exit_code == 1
        assert "File not found" in result.output
        coordinator.process_captured_audio.assert_not_called()

    def test_archive_cancelled(self, coordinator, recording: Path, config_file: Path) -> None:
        coordinator.process_captured_audio.side_effect = Cancelled("cancelled")

        result = runner.invoke(app, ["archive", str(recording), "--config", str(config_file)])

        assert result.exit_code == 130
        assert "Transcription cancelled" in result.output

    def test_archive_failure(self, coordinator, recording: Path, config_file: Path) -> None:
        coordinator.process_captured_audio.side_effect = RecognitionFailed(
            "Transcription failed: model not found"
        )

        result = runner.invoke(app, ["archive", str(recording), "--config", str(config_file)])

        assert result.exit_code == 1
        assert "model not found" in result.output

    def test_archive_missing_dependency(self, coordinator, recording: Path, config_file: Path) -> None:
        coordinator.process_captured_audio.side_effect = DependencyMissing(
            "ffmpeg", "executable not found", install_hint="brew install ffmpeg"
        )

        result = runner.invoke(app, ["archive", str(recording), "--config", str(config_file)])

        assert result.exit_code == 1
        assert "ffmpeg: executable not found" in result.output
        assert "brew install ffmpeg" in result.output


class TestTranscribeCommand:
    def test_transcribe_prints_transcript(self, coordinator, tmp_path: Path, config_file: Path) -> None:
        audio = tmp_path / "memo.mp3"
        audio.write_bytes(b"mp3")

        result = runner.invoke(
            app, ["transcribe", str(audio), "-d", str(tmp_path), "--config", str(config_file)]
        )

        assert result.exit_code == 0
        assert "hello world" in result.output
        assert "![[" not in result.output
        path_arg, request = coordinator.transcribe_existing_file.call_args.args
        assert path_arg == audio
        assert request.model_size == ModelSize.BASE

    def test_transcribe_warns_on_unknown_suffix(self, coordinator, tmp_path: Path, config_file: Path) -> None:
        audio = tmp_path / "memo.flac"
        audio.write_bytes(b"flac")

        result = runner.invoke(app, ["transcribe", str(audio), "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Warning" in result.output

    def test_transcribe_missing_input(self, coordinator, tmp_path: Path, config_file: Path) -> None:
        coordinator.transcribe_existing_file.side_effect = InputMissing("Audio file not found: memo.wav")

        result = runner.invoke(app, ["transcribe", "memo.wav", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Audio file not found" in result.output

    def test_transcribe_picks_from_base_dir(self, coordinator, vault: Path, config_file: Path) -> None:
        result = runner.invoke(
            app, ["transcribe", "-d", str(vault), "--config", str(config_file)], input="2\n"
        )

        assert result.exit_code == 0
        assert "  1. b.wav" in result.output
        assert "chime.mp3" not in result.output
        path_arg, _ = coordinator.transcribe_existing_file.call_args.args
        assert path_arg == vault / "notes" / "a.m4a"

    def test_transcribe_pick_out_of_range(self, coordinator, vault: Path, config_file: Path) -> None:
        result = runner.invoke(
            app, ["transcribe", "-d", str(vault), "--config", str(config_file)], input="7\n"
        )

        assert result.exit_code == 1
        assert "choose a number from 1 to 2" in result.output
        coordinator.transcribe_existing_file.assert_not_called()

    def test_transcribe_nothing_to_pick(self, coordinator, tmp_path: Path, config_file: Path) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()

        result = runner.invoke(app, ["transcribe", "-d", str(empty), "--config", str(config_file)])

        assert result.exit_code == 1
        assert "No supported audio files" in result.output
        coordinator.transcribe_existing_file.assert_not_called()


class TestFindAudioFiles:
    def test_sorted_and_filtered(self, vault: Path) -> None:
        assert find_audio_files(vault) == [vault / "b.wav", vault / "notes" / "a.m4a"]

    def test_empty_directory(self, tmp_path: Path) -> None:
        assert find_audio_files(tmp_path) == []


class TestOutcomeReporting:
    def test_failure_printed_once(self, tmp_path: Path) -> None:
        """A failed run prints its message once, with the install hint."""
        config = tmp_path / "config.toml"
        config.write_text(
            f'[recognizer]\nvenv_path = "{tmp_path / "missing-env"}"\n\n'
            f'[runtime]\nlog_file = "{tmp_path / "memoscribe.log"}"\n'
            f'scratch_dir = "{tmp_path / "scratch"}"\n',
            encoding="utf-8",
        )
        audio = tmp_path / "memo.wav"
        audio.write_bytes(b"RIFF")

        result = runner.invoke(
            app, ["transcribe", str(audio), "-d", str(tmp_path), "--config", str(config)]
        )

        assert result.exit_code == 1
        assert result.output.count("recognizer not found") == 1
        assert "Try:" in result.output

    def test_observers_stay_quiet_on_terminal_states(self, tmp_path: Path, capsys) -> None:
        config = AppConfig(runtime=RuntimeConfig(scratch_dir=tmp_path, log_file=tmp_path / "test.log"))
        coordinator = _build_coordinator(config, tmp_path)
        state_manager = coordinator.state_manager

        state_manager.report_error("Error during transcription: Error: out of memory")
        state_manager.set_error("Transcription failed: out of memory")
        state_manager.set_cancelled()

        err = capsys.readouterr().err
        assert err.count("out of memory") == 1
        assert "Error during transcription" in err
        assert "Transcription cancelled" not in err



class TestConfigHandling:
    def test_invalid_config(self, coordinator, recording: Path, tmp_path: Path) -> None:
        bad = tmp_path / "bad.toml"
        bad.write_text('[transcription]\nmodel_size = "huge"\n', encoding="utf-8")

        result = runner.invoke(app, ["archive", str(recording), "--config", str(bad)])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "memoscribe" in result.output
