"""Domain events for the conversion pipeline.

Parser events describe what the encoder reported; lifecycle events describe
what the orchestrator did with it. Both flow through the EventBus so the
diagnostics sink (and any other observer) can follow a job without touching
orchestrator state.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import List, Optional, Union
from pydantic import BaseModel
from .models import FailureKind


class Event(BaseModel):
    """Base class for all domain events."""

    pass


# ── Parser events ──────────────────────────────────────────────────────────────

class DurationDiscovered(Event):
    """Encoder printed the input's total duration."""

    seconds: float


class PositionAdvanced(Event):
    """Encoder reported how far into the input it has got."""

    seconds: float


class ProcessExited(Event):
    """Encoder process ended; emitted once the output stream is drained."""

    exit_code: int


ParserEvent = Union[DurationDiscovered, PositionAdvanced, ProcessExited]


# ── Lifecycle events ───────────────────────────────────────────────────────────

class JobStarted(Event):
    inputs: List[Path]
    destination: Optional[Path] = None


class EncoderLocated(Event):
    path: Path


class EncoderMissing(Event):
    """The encoder binary could not be found; the job ends without converting."""

    message: str


class FileStarted(Event):
    index: int
    input_path: Path
    output_path: Path


class EncoderLaunched(Event):
    index: int
    command: List[str]


class EncoderOutput(Event):
    """One raw line of combined encoder stdout/stderr."""

    index: int
    line: str


class FileParserEvent(Event):
    """A parser event, tagged with the file it belongs to."""

    index: int
    event: ParserEvent


class FileSucceeded(Event):
    index: int
    output_path: Path


class FileFailed(Event):
    index: int
    failure: FailureKind
    message: str
    exit_code: Optional[int] = None


class JobCompleted(Event):
    succeeded: int
    total: int


class JobCancelled(Event):
    pass
