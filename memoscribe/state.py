"""Pipeline status and observer fan-out."""

import logging
from enum import Enum
from typing import Any, Callable, List, NamedTuple, Optional

from .models import ProgressEvent
from .progress import parse_percent

logger = logging.getLogger(__name__)

CANCELLED_LABEL = "Transcription cancelled"


class PipelineStateEnum(str, Enum):
    """Possible states of the pipeline."""

    IDLE = "Idle"
    TRANSCODING = "Transcoding"
    ARCHIVING = "Archiving"
    TRANSCRIBING = "Transcribing"
    CANCELLED = "Cancelled"
    ERROR = "Error"


class PipelineStatus(NamedTuple):
    """Snapshot for callers that poll instead of observing."""

    state: str
    label: Optional[str]
    percent: Optional[int]
    last_error: Optional[str]


class PipelineStateManager:
    """Tracks pipeline state and forwards progress and errors to observers.

    Observers are called synchronously, in the order events are reported.
    """

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: PipelineStateEnum = PipelineStateEnum.IDLE
        self._last_label: Optional[str] = None
        self._last_percent: Optional[int] = None
        self._last_error: Optional[str] = None
        self._progress_observers: List[Callable[[ProgressEvent], Any]] = []
        self._error_observers: List[Callable[[str], Any]] = []
        self._state_observers: List[Callable[[PipelineStateEnum], Any]] = []

    @property
    def current_state(self) -> PipelineStateEnum:
        """Get the current state of the pipeline."""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message, if any."""
        return self._last_error

    def add_progress_observer(self, observer: Callable[[ProgressEvent], Any]) -> None:
        """Add a callback receiving every ProgressEvent."""
        self._progress_observers.append(observer)

    def add_error_observer(self, observer: Callable[[str], Any]) -> None:
        """Add a callback receiving user-facing error messages."""
        self._error_observers.append(observer)

    def add_state_observer(self, observer: Callable[[PipelineStateEnum], Any]) -> None:
        """Add a callback receiving state changes."""
        self._state_observers.append(observer)

    def _notify(self, observers: List[Callable[[Any], Any]], value: Any) -> None:
        for observer in observers:
            try:
                observer(value)
            except Exception:
                # Observer errors must not break the pipeline
                logger.exception("Error in pipeline observer")

    def set_state(self, new_state: PipelineStateEnum) -> None:
        """Set the pipeline state.

        Args:
            new_state: The new state to set.

        Raises:
            TypeError: If the provided state is not a valid PipelineStateEnum.
        """
        if not isinstance(new_state, PipelineStateEnum):
            raise TypeError(f"State must be a PipelineStateEnum, got {type(new_state)}")

        # Reset error when moving out of error state
        if new_state != PipelineStateEnum.ERROR:
            self._last_error = None

        if new_state in (PipelineStateEnum.TRANSCODING, PipelineStateEnum.IDLE):
            self._last_percent = None

        if self._state != new_state:
            logger.debug(f"Pipeline state: {self._state.value} -> {new_state.value}")
            self._state = new_state
            self._notify(self._state_observers, new_state)

    def report_progress(self, label: str) -> None:
        """Record a progress label and pass it to observers."""
        self._last_label = label
        percent = parse_percent(label)
        if percent is not None:
            self._last_percent = percent
        self._notify(self._progress_observers, ProgressEvent(label=label))

    def report_error(self, message: str) -> None:
        """Pass a non-fatal error message to observers without changing state."""
        self._notify(self._error_observers, message)

    def set_error(self, message: str) -> None:
        """Enter the error state and notify error observers.

        Args:
            message: The error message to store.
        """
        self._last_error = message
        self.set_state(PipelineStateEnum.ERROR)
        self._notify(self._error_observers, message)

    def set_cancelled(self) -> None:
        """Enter the cancelled state with a neutral notice."""
        self.set_state(PipelineStateEnum.CANCELLED)
        self.report_progress(CANCELLED_LABEL)

    def get_status(self) -> PipelineStatus:
        """Get a snapshot of the current status."""
        return PipelineStatus(
            state=self._state.value,
            label=self._last_label,
            percent=self._last_percent,
            last_error=self._last_error,
        )
