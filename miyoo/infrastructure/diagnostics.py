"""Append-only diagnostics for post-hoc debugging of a conversion run.

Every encoder output line, parsed event and lifecycle transition becomes a
`DiagnosticEntry`. Entries are mirrored to the `miyoo.diagnostics` logger
(and so to the rotating log file set up by `setup_logging`) and the most
recent ones are kept in memory for a log viewer.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional
from pydantic import BaseModel, Field
from miyoo.infrastructure.event_bus import EventBus
from miyoo.domain.events import (
    JobStarted, EncoderLocated, EncoderMissing, FileStarted, EncoderLaunched,
    EncoderOutput, FileParserEvent, FileSucceeded, FileFailed, JobCompleted,
    JobCancelled, DurationDiscovered, PositionAdvanced, ProcessExited,
)

KIND_OUTPUT = "output"
KIND_PARSED = "parsed"
KIND_LIFECYCLE = "lifecycle"
KIND_ERROR = "error"


class DiagnosticEntry(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    kind: str
    message: str
    file_index: Optional[int] = None

    def format(self) -> str:
        where = f"[{self.file_index + 1}] " if self.file_index is not None else ""
        return f"{self.timestamp.strftime('%H:%M:%S')} {self.kind.upper():<9} {where}{self.message}"


class DiagnosticsLog:
    """Thread-safe, bounded, append-only diagnostics sink."""

    def __init__(self, max_entries: int = 1000, logger: Optional[logging.Logger] = None):
        self._entries: Deque[DiagnosticEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._total = 0
        self.logger = logger or logging.getLogger("miyoo.diagnostics")

    def append(self, kind: str, message: str, file_index: Optional[int] = None) -> DiagnosticEntry:
        entry = DiagnosticEntry(kind=kind, message=message, file_index=file_index)
        with self._lock:
            self._entries.append(entry)
            self._total += 1

        # Raw encoder chatter is only interesting in debug logs
        if kind == KIND_OUTPUT or kind == KIND_PARSED:
            self.logger.debug(entry.format())
        elif kind == KIND_ERROR:
            self.logger.error(entry.format())
        else:
            self.logger.info(entry.format())
        return entry

    def entries(self) -> List[DiagnosticEntry]:
        with self._lock:
            return list(self._entries)

    def tail(self, count: int) -> List[DiagnosticEntry]:
        if count <= 0:
            return []
        with self._lock:
            return list(self._entries)[-count:]

    @property
    def total_appended(self) -> int:
        """Entries appended since creation, including ones dropped from memory."""
        with self._lock:
            return self._total

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def attach(self, bus: EventBus):
        """Record every pipeline event published on the bus."""
        bus.subscribe(JobStarted, self.on_job_started)
        bus.subscribe(EncoderLocated, self.on_encoder_located)
        bus.subscribe(EncoderMissing, self.on_encoder_missing)
        bus.subscribe(FileStarted, self.on_file_started)
        bus.subscribe(EncoderLaunched, self.on_encoder_launched)
        bus.subscribe(EncoderOutput, self.on_encoder_output)
        bus.subscribe(FileParserEvent, self.on_parser_event)
        bus.subscribe(FileSucceeded, self.on_file_succeeded)
        bus.subscribe(FileFailed, self.on_file_failed)
        bus.subscribe(JobCompleted, self.on_job_completed)
        bus.subscribe(JobCancelled, self.on_job_cancelled)

    def on_job_started(self, event: JobStarted):
        dest = event.destination if event.destination else "beside inputs"
        self.append(KIND_LIFECYCLE, f"Job started: {len(event.inputs)} file(s), destination={dest}")

    def on_encoder_located(self, event: EncoderLocated):
        self.append(KIND_LIFECYCLE, f"Encoder found at {event.path}")

    def on_encoder_missing(self, event: EncoderMissing):
        self.append(KIND_ERROR, event.message)

    def on_file_started(self, event: FileStarted):
        self.append(KIND_LIFECYCLE, f"Converting {event.input_path} -> {event.output_path}", event.index)

    def on_encoder_launched(self, event: EncoderLaunched):
        self.append(KIND_LIFECYCLE, f"Command: {' '.join(event.command)}", event.index)

    def on_encoder_output(self, event: EncoderOutput):
        self.append(KIND_OUTPUT, event.line, event.index)

    def on_parser_event(self, event: FileParserEvent):
        inner = event.event
        if isinstance(inner, DurationDiscovered):
            message = f"duration={inner.seconds:.2f}s"
        elif isinstance(inner, PositionAdvanced):
            message = f"position={inner.seconds:.2f}s"
        elif isinstance(inner, ProcessExited):
            message = f"exit_code={inner.exit_code}"
        else:
            message = repr(inner)
        self.append(KIND_PARSED, message, event.index)

    def on_file_succeeded(self, event: FileSucceeded):
        self.append(KIND_LIFECYCLE, f"Succeeded: {event.output_path}", event.index)

    def on_file_failed(self, event: FileFailed):
        code = f" (exit code {event.exit_code})" if event.exit_code is not None else ""
        self.append(KIND_ERROR, f"{event.failure.value}: {event.message}{code}", event.index)

    def on_job_completed(self, event: JobCompleted):
        self.append(KIND_LIFECYCLE, f"Job completed: {event.succeeded} of {event.total} succeeded")

    def on_job_cancelled(self, event: JobCancelled):
        self.append(KIND_LIFECYCLE, "Job cancelled")
