"""Exceptions raised by the conversion core.

`NoInputFiles` and `AlreadyRunning` reach the caller of `Orchestrator.start`.
The adapter errors are absorbed by the orchestrator and turned into status
messages.
"""

from pathlib import Path
from typing import Optional, Sequence


class ConversionError(Exception):
    """Base class for conversion errors."""


class NoInputFiles(ConversionError):
    def __init__(self):
        super().__init__("No input files were given")


class AlreadyRunning(ConversionError):
    def __init__(self):
        super().__init__("A conversion job is already running")


class EncoderNotFound(ConversionError):
    def __init__(self, binary_name: str = "ffmpeg", searched: Sequence[str] = ()):
        self.binary_name = binary_name
        self.searched = list(searched)
        super().__init__(f"{binary_name} not found (searched: {', '.join(self.searched) or 'PATH'})")


class ProcessSpawnFailed(ConversionError):
    def __init__(self, executable: Path, cause: Optional[OSError] = None):
        self.executable = executable
        self.cause = cause
        detail = cause.strerror if cause is not None and cause.strerror else str(cause)
        super().__init__(f"Failed to start {executable}: {detail}")
