"""Parser for ffmpeg's streaming text output.

Turns raw encoder lines into typed events:

- ``Duration: 00:01:02.50, start: ...`` → DurationDiscovered
- ``out_time_us=62500000`` (``-progress`` key/value block) → PositionAdvanced
- ``frame= ... time=00:00:05.00 ...`` (classic stats line) → PositionAdvanced

The parser does no I/O. Callers either feed complete lines or arbitrary text
chunks; partial lines are buffered until their terminator arrives.
"""

import math
import re
from typing import List, Optional
from miyoo.domain.events import DurationDiscovered, PositionAdvanced, ProcessExited, ParserEvent

_TIME_PATTERN = r"\d+(?::\d+){0,2}(?:\.\d+)?"
_DURATION_RE = re.compile(rf"Duration:\s*({_TIME_PATTERN})")
# ffmpeg reports out_time_ms in microseconds too, despite the name
_PROGRESS_US_RE = re.compile(r"^\s*out_time_(?:us|ms)\s*=\s*(-?\d+)\s*$")
# Bare time= field only; out_time= belongs to the key/value block above
_TIME_FIELD_RE = re.compile(rf"(?<!\w)time=\s*({_TIME_PATTERN})")
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


def parse_time_string(text: str) -> Optional[float]:
    """Parses HH:MM:SS.ss, MM:SS.ss or SS.ss into seconds.

    Returns None for malformed input and for values that are not strictly
    positive, so a literal 00:00:00 is dropped.
    """
    parts = text.strip().split(":")
    if not 1 <= len(parts) <= 3:
        return None
    try:
        values = [float(p) for p in parts]
    except ValueError:
        return None

    if len(values) == 3:
        hours, minutes, seconds = values
        total = hours * 3600 + minutes * 60 + seconds
    elif len(values) == 2:
        minutes, seconds = values
        total = minutes * 60 + seconds
    else:
        total = values[0]

    if not math.isfinite(total) or total <= 0:
        return None
    return total


class ProgressParser:
    """Line-oriented state machine over one encoder run."""

    def __init__(self):
        self._buffer = ""
        self.total_duration = 0.0
        self.last_position = 0.0

    def reset(self):
        self._buffer = ""
        self.total_duration = 0.0
        self.last_position = 0.0

    def feed(self, chunk: str) -> List[ParserEvent]:
        """Consumes a chunk of text, which may end mid-line."""
        self._buffer += chunk
        pieces = _LINE_BREAK_RE.split(self._buffer)
        self._buffer = pieces.pop()
        events: List[ParserEvent] = []
        for line in pieces:
            events.extend(self.feed_line(line))
        return events

    def flush(self) -> List[ParserEvent]:
        """Parses whatever is left in the buffer as a final line."""
        line, self._buffer = self._buffer, ""
        if not line:
            return []
        return self.feed_line(line)

    def finish(self, exit_code: int) -> List[ParserEvent]:
        events = self.flush()
        events.append(ProcessExited(exit_code=exit_code))
        return events

    def feed_line(self, line: str) -> List[ParserEvent]:
        if not line or not line.strip():
            return []

        match = _PROGRESS_US_RE.match(line)
        if match:
            micros = int(match.group(1))
            if micros < 0:
                return []
            return [self._position(micros / 1_000_000)]

        events: List[ParserEvent] = []

        match = _DURATION_RE.search(line)
        if match:
            seconds = parse_time_string(match.group(1))
            # First declaration is the input; later ones are ignored
            if seconds is not None and self.total_duration == 0:
                self.total_duration = seconds
                events.append(DurationDiscovered(seconds=seconds))

        match = _TIME_FIELD_RE.search(line)
        if match:
            seconds = parse_time_string(match.group(1))
            if seconds is not None:
                events.append(self._position(seconds))

        return events

    def _position(self, seconds: float) -> PositionAdvanced:
        if self.total_duration > 0 and seconds > self.total_duration:
            seconds = self.total_duration
        self.last_position = seconds
        return PositionAdvanced(seconds=seconds)
