"""Progress extraction from transcoder and recognizer output.

Everything here is pure: the parsers look at one line at a time and never
raise on text they do not recognise, and ``split_lines`` carries the partial
line between reads explicitly instead of hiding it in reader state.
"""

import logging
import re
from typing import List, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

# [HH:]MM:SS.mmm
TIMESTAMP_RE = re.compile(r"^(?:(\d{2}):)?(\d{2}):(\d{2})\.(\d{3})$")

_STAMP = r"(?:\d{2}:)?\d{2}:\d{2}\.\d{3}"
TIMESTAMP_RANGE_RE = re.compile(
    rf"\[\s*(?P<start>{_STAMP})\s*-->\s*(?P<end>{_STAMP})\s*\]"
)

# "42% done", "(42%)", "42%"
PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")

# ffmpeg -progress key=value lines
FFMPEG_TIME_US_RE = re.compile(r"^out_time_(?:us|ms)=(\d+)$")
FFMPEG_TIME_RE = re.compile(r"^out_time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)$")


class ProgressSnapshot(NamedTuple):
    """Normalized (elapsed, total, percent) triple."""

    elapsed: float
    total: Optional[float]
    percent: Optional[int]


def parse_percent(line: str) -> Optional[int]:
    """Extract a percentage from a percent-style line.

    Returns:
        The percentage clamped to 0-100, or None when the line has none.
    """
    match = PERCENT_RE.search(line)
    if not match:
        return None
    return max(0, min(100, round(float(match.group(1)))))


def parse_timestamp(timestamp: str) -> float:
    """Convert a ``[HH:]MM:SS.mmm`` timestamp to seconds.

    Raises:
        ValueError: If the timestamp is malformed.
    """
    match = TIMESTAMP_RE.match(timestamp.strip())
    if not match:
        raise ValueError(f"Invalid timestamp format: {timestamp!r}")

    hours = int(match.group(1)) if match.group(1) else 0
    minutes = int(match.group(2))
    seconds = int(match.group(3))
    millis = int(match.group(4))
    return hours * 3600 + minutes * 60 + seconds + millis / 1000


def parse_timestamp_range(line: str) -> Optional[Tuple[float, float]]:
    """Find a ``[start --> end]`` range in a recognizer output line.

    Returns:
        (start, end) in seconds, or None if the line carries no range.
    """
    match = TIMESTAMP_RANGE_RE.search(line)
    if not match:
        return None
    return parse_timestamp(match.group("start")), parse_timestamp(match.group("end"))


def parse_ffmpeg_progress(line: str) -> Optional[float]:
    """Read the output position from an ffmpeg ``-progress`` line.

    ffmpeg reports ``out_time_ms`` in microseconds, same as ``out_time_us``.
    """
    line = line.strip()
    match = FFMPEG_TIME_US_RE.match(line)
    if match:
        return int(match.group(1)) / 1_000_000

    match = FFMPEG_TIME_RE.match(line)
    if match:
        hours, minutes, seconds = match.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    return None


def format_time(seconds: float) -> str:
    """Format seconds as H:MM:SS, or M:SS under an hour."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def split_lines(buffer: str, chunk: str) -> Tuple[List[str], str]:
    """Combine carried-over text with a new chunk and cut complete lines.

    Args:
        buffer: Partial line left over from the previous read.
        chunk: Newly read text.

    Returns:
        Tuple of (complete lines without terminators, new partial remainder).
    """
    parts = (buffer + chunk).split("\n")
    remainder = parts.pop()
    return [part.rstrip("\r") for part in parts], remainder


def compute_percent(elapsed: float, total: float) -> int:
    """Percent complete, clamped so overshooting the total reads as 100."""
    if total <= 0:
        return 0
    return round(min(max(elapsed, 0.0) / total, 1.0) * 100)


class ProgressTracker:
    """Applies elapsed positions monotonically against a total duration."""

    def __init__(self, total: Optional[float] = None):
        self.total = total
        self._last_elapsed: Optional[float] = None

    @property
    def last_elapsed(self) -> Optional[float]:
        return self._last_elapsed

    def update(self, elapsed: float) -> Optional[ProgressSnapshot]:
        """Apply a newly parsed position.

        Positions that do not move strictly forward are ignored so that
        retried or reordered log lines cannot drag progress backwards.

        Returns:
            A snapshot if the position was applied, otherwise None.
        """
        if self._last_elapsed is not None and elapsed <= self._last_elapsed:
            logger.debug(
                f"Ignoring non-advancing position {elapsed:.3f}s "
                f"(last {self._last_elapsed:.3f}s)"
            )
            return None

        self._last_elapsed = elapsed
        percent = compute_percent(elapsed, self.total) if self.total else None
        return ProgressSnapshot(elapsed=elapsed, total=self.total, percent=percent)
