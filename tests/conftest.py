"""Shared fixtures: fake subprocesses and a test configuration."""

import asyncio
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoscribe.config import AppConfig, RecognizerConfig, RuntimeConfig


def _make_process(
    stdout: Iterable[bytes] = (),
    stderr: Iterable[bytes] = (),
    returncode: int = 0,
    pid: int = 1234,
    on_exit: Optional[Callable[[], None]] = None,
):
    """Create a mock asyncio.subprocess.Process that exits on its own."""
    stdout = list(stdout)
    stderr = list(stderr)

    process = AsyncMock()
    process.pid = pid
    process.returncode = None

    # terminate() and kill() are sync methods
    process.terminate = MagicMock()
    process.kill = MagicMock()

    process.stdout = AsyncMock(spec=asyncio.StreamReader)
    process.stdout.read.side_effect = [*stdout, b""]
    process.stderr = AsyncMock(spec=asyncio.StreamReader)
    process.stderr.read.side_effect = [*stderr, b""]

    def finish() -> int:
        if process.returncode is None:
            if on_exit:
                on_exit()
            process.returncode = returncode
        return process.returncode

    async def wait():
        return finish()

    async def communicate(input=None):
        finish()
        return b"".join(stdout), b"".join(stderr)

    process.wait = AsyncMock(side_effect=wait)
    process.communicate = AsyncMock(side_effect=communicate)
    return process


def _make_blocking_process(pid: int = 4321):
    """Create a mock process that runs until terminate() is called."""
    terminated = asyncio.Event()

    process = AsyncMock()
    process.pid = pid
    process.returncode = None

    def terminate():
        process.returncode = -15
        terminated.set()

    process.terminate = MagicMock(side_effect=terminate)
    process.kill = MagicMock(side_effect=terminate)

    async def read(n=-1):
        await terminated.wait()
        return b""

    process.stdout = AsyncMock(spec=asyncio.StreamReader)
    process.stdout.read.side_effect = read
    process.stderr = AsyncMock(spec=asyncio.StreamReader)
    process.stderr.read.side_effect = read

    async def wait():
        await terminated.wait()
        return process.returncode

    async def communicate(input=None):
        await terminated.wait()
        return b"", b""

    process.wait = AsyncMock(side_effect=wait)
    process.communicate = AsyncMock(side_effect=communicate)
    return process


class ProcessRouter:
    """Stand-in for asyncio.create_subprocess_exec.

    Each spawn is matched against registered routes by a predicate over the
    full argv; the first match builds the fake process.
    """

    def __init__(self):
        self.calls: List[Tuple[List[str], dict]] = []
        self.processes: List[object] = []
        self._routes: List[Tuple[Callable[[List[str]], bool], Callable]] = []

    def route(self, predicate: Callable[[List[str]], bool], factory: Callable) -> None:
        self._routes.append((predicate, factory))

    async def __call__(self, command, *args, **kwargs):
        argv = [command, *args]
        self.calls.append((argv, kwargs))
        for predicate, factory in self._routes:
            if predicate(argv):
                process = factory(argv)
                self.processes.append(process)
                return process
        raise FileNotFoundError(command)

    def argvs(self, predicate: Callable[[List[str]], bool]) -> List[List[str]]:
        return [argv for argv, _ in self.calls if predicate(argv)]


def is_ffprobe(argv: List[str]) -> bool:
    return Path(argv[0]).name == "ffprobe"


def is_ffmpeg(argv: List[str]) -> bool:
    return Path(argv[0]).name == "ffmpeg"


def is_recognizer(argv: List[str]) -> bool:
    return len(argv) > 1 and Path(argv[1]).name == "mlx_whisper"


@pytest.fixture
def make_process():
    return _make_process


@pytest.fixture
def make_blocking_process():
    return _make_blocking_process


@pytest.fixture
def router():
    return ProcessRouter()


@pytest.fixture
def argv_matchers():
    """Predicates for telling fake spawns apart."""
    return {"ffprobe": is_ffprobe, "ffmpeg": is_ffmpeg, "recognizer": is_recognizer}


@pytest.fixture
def venv(tmp_path):
    """A fake recognizer virtualenv with the recognizer and interpreter present."""
    venv_path = tmp_path / "whisper-env"
    bin_dir = venv_path / "bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "mlx_whisper").write_text("#!/usr/bin/env python3\n")
    (bin_dir / "python3").write_text("")
    return venv_path


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def app_config(tmp_path, venv, scratch_dir):
    """Configuration pointing at the fake venv and a temporary scratch dir."""
    return AppConfig(
        recognizer=RecognizerConfig(venv_path=venv, extra_path=["/opt/test/bin"]),
        runtime=RuntimeConfig(scratch_dir=scratch_dir, log_file=tmp_path / "test.log"),
    )
