"""Ownership of the external processes spawned by the pipeline."""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

from .exceptions import Cancelled, DependencyMissing
from .progress import split_lines

logger = logging.getLogger(__name__)

# Define a buffer size for reading from stdout/stderr
BUFFER_SIZE = 4096


class ProcessRole(str, Enum):
    """What an external process is doing for the pipeline."""

    ARCHIVE_TRANSCODE = "archive-transcode"
    NORMALIZE_TRANSCODE = "normalize-transcode"
    DURATION_PROBE = "duration-probe"
    RECOGNIZER = "recognizer"


@dataclass
class ProcessHandle:
    """A spawned process, identified by its role and PID."""

    role: ProcessRole
    pid: int
    process: asyncio.subprocess.Process

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr


class ProcessSupervisor:
    """Launches and terminates external processes, one live process per role.

    The supervisor is the only place processes are spawned or signalled, and
    ``cancel_all`` is the single cancellation switch for a pipeline run.
    """

    def __init__(self):
        self._handles: Dict[ProcessRole, ProcessHandle] = {}
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested since the last reset."""
        return self._cancelled

    def reset(self) -> None:
        """Clear the cancellation flag before a new run."""
        self._cancelled = False

    def is_live(self, role: ProcessRole) -> bool:
        handle = self._handles.get(role)
        return handle is not None and handle.running

    def live_roles(self) -> List[ProcessRole]:
        return [role for role in self._handles if self.is_live(role)]

    async def launch(
        self,
        role: ProcessRole,
        command: str,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessHandle:
        """Spawn a process for a role.

        Args:
            role: Role the process fills; must not already be live.
            command: Executable to run.
            args: Arguments passed to the executable.
            env: Optional full environment for the child.

        Returns:
            Handle of the running process.

        Raises:
            Cancelled: If cancellation was requested before the spawn.
            DependencyMissing: If the executable cannot be found or run.
            RuntimeError: If a process for this role is still live.
        """
        if self._cancelled:
            raise Cancelled(f"Not starting {role.value}: operation cancelled")

        if self.is_live(role):
            raise RuntimeError(f"A {role.value} process is already running")

        logger.debug(f"Launching {role.value}: {command} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
            )
        except FileNotFoundError as e:
            raise DependencyMissing(command, "executable not found") from e
        except PermissionError as e:
            raise DependencyMissing(command, "executable is not runnable") from e

        handle = ProcessHandle(role=role, pid=process.pid, process=process)
        self._handles[role] = handle
        logger.info(f"Started {role.value} process with PID: {process.pid}")

        # cancel_all() may have run while the spawn was in flight
        if self._cancelled:
            self.cancel_all()

        return handle

    async def wait(self, handle: ProcessHandle) -> int:
        """Wait for a process to exit and release its handle.

        Returns:
            The process exit code.
        """
        try:
            returncode = await handle.process.wait()
        finally:
            self.release(handle)
        logger.info(
            f"{handle.role.value} process {handle.pid} exited with code {returncode}"
        )
        return returncode

    def release(self, handle: ProcessHandle) -> None:
        """Forget a handle once its process is done."""
        if self._handles.get(handle.role) is handle:
            del self._handles[handle.role]

    def terminate(self, role: ProcessRole) -> bool:
        """Send SIGTERM to the process filling a role, if any.

        Returns:
            True if a signal was delivered.
        """
        handle = self._handles.pop(role, None)
        if handle is None:
            return False

        try:
            handle.process.terminate()
            logger.info(f"Sent SIGTERM to {role.value} process {handle.pid}")
            return True
        except ProcessLookupError:
            logger.debug(f"{role.value} process {handle.pid} already exited")
        except Exception as e:
            logger.error(f"Failed to terminate {role.value} process: {e}")
        return False

    def cancel_all(self) -> None:
        """Terminate every live process and mark the run as cancelled.

        Safe to call repeatedly and when nothing is running.
        """
        self._cancelled = True

        for role in list(self._handles):
            self.terminate(role)


async def consume_lines(
    stream: Optional[asyncio.StreamReader], on_line: Callable[[str], None]
) -> None:
    """Read a process stream to EOF, passing each complete line to a callback.

    Bytes are decoded incrementally so multi-byte characters split across reads
    survive. A final unterminated line is delivered at EOF.
    """
    if stream is None:
        return

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    while True:
        data = await stream.read(BUFFER_SIZE)
        if not data:
            break
        lines, buffer = split_lines(buffer, decoder.decode(data))
        for line in lines:
            on_line(line)

    lines, buffer = split_lines(buffer, decoder.decode(b"", final=True))
    for line in lines:
        on_line(line)
    if buffer:
        on_line(buffer.rstrip("\r"))
