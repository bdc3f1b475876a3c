from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

class JobStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"  # Encoder missing, nothing was processed

class FilePhase(str, Enum):
    PREPARING = "PREPARING"
    ENCODING = "ENCODING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

class FailureKind(str, Enum):
    INPUT_UNREADABLE = "INPUT_UNREADABLE"
    OUTPUT_DIR_UNWRITABLE = "OUTPUT_DIR_UNWRITABLE"
    PROCESS_SPAWN_FAILED = "PROCESS_SPAWN_FAILED"
    NON_ZERO_EXIT = "NON_ZERO_EXIT"
    OUTPUT_MISSING_OR_EMPTY = "OUTPUT_MISSING_OR_EMPTY"
    TIMEOUT = "TIMEOUT"

class FileResult(BaseModel):
    index: int
    input_path: Path
    output_path: Optional[Path] = None
    phase: FilePhase
    failure: Optional[FailureKind] = None
    message: str = ""
    exit_code: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.phase == FilePhase.SUCCEEDED

class ConversionJob(BaseModel):
    inputs: List[Path]
    destination: Optional[Path] = None
    status: JobStatus = JobStatus.IDLE
    outputs: List[Path] = Field(default_factory=list)
    results: List[FileResult] = Field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.inputs)

class FileConversionState(BaseModel):
    """Tracking for the file currently being encoded."""
    index: int
    input_path: Path
    output_path: Path
    phase: FilePhase = FilePhase.PREPARING
    total_duration_seconds: float = 0.0
    elapsed_position_seconds: float = 0.0
    started_at: Optional[datetime] = None
    launched_monotonic: Optional[float] = None

class ProgressSnapshot(BaseModel):
    """Immutable view of job progress, replaced as a whole on every update."""
    model_config = ConfigDict(frozen=True)

    is_running: bool = False
    job_status: JobStatus = JobStatus.IDLE
    overall_progress: float = Field(default=0.0, ge=0.0, le=1.0)
    current_file_index: int = 0
    current_file_name: str = ""
    total_files: int = 0
    status_message: str = ""
    current_processing_time: str = ""
    total_video_duration: str = ""
    conversion_speed: str = ""
    converted_files: Tuple[Path, ...] = ()
