"""Conversion job orchestrator.

Runs a batch of input files through the encoder one at a time and publishes
progress as immutable snapshots.

Key responsibilities:
- Reject empty or overlapping jobs (NoInputFiles, AlreadyRunning)
- Locate the encoder once per job and report when it is missing
- Launch one encoder process per file, feed its output to the ProgressParser
  and turn parser events into overall progress, elapsed time and speed
- Enforce the per-file timeout and judge success (exit code 0 AND a non-empty
  output file)
- Cancel cooperatively: stop the worker, kill the running encoder, wait for
  it to die, then publish the cancelled state
- Emit lifecycle events on the EventBus for the diagnostics sink

The worker thread is the only writer of job state. The ProgressStore lock
also guards the current-process slot so cancel() and the worker never race
over which process to kill.
"""

import logging
import os
import queue
import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple, Union
from miyoo.config.models import AppConfig
from miyoo.domain.errors import AlreadyRunning, EncoderNotFound, NoInputFiles, ProcessSpawnFailed
from miyoo.domain.events import (
    DurationDiscovered, EncoderLaunched, EncoderLocated, EncoderMissing, EncoderOutput,
    FileFailed, FileParserEvent, FileStarted, FileSucceeded, JobCancelled, JobCompleted,
    JobStarted, ParserEvent, PositionAdvanced,
)
from miyoo.domain.models import (
    ConversionJob, FailureKind, FileConversionState, FilePhase, FileResult, JobStatus,
    ProgressSnapshot,
)
from miyoo.infrastructure.event_bus import EventBus
from miyoo.infrastructure.ffmpeg import EncoderProcess, FFmpegAdapter
from miyoo.pipeline.progress import ProgressParser
from miyoo.pipeline.state import ProgressStore, SnapshotCallback

ENCODER_MISSING_MESSAGE = (
    "ERROR: FFmpeg not found. Please install FFmpeg "
    "(e.g. 'brew install ffmpeg' or 'sudo apt install ffmpeg')"
)
CANCELLED_MESSAGE = "Conversion cancelled"
POLL_INTERVAL_S = 0.1

PathLike = Union[str, os.PathLike]


def format_clock(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


def format_speed(position: float, wall_elapsed: float) -> str:
    if wall_elapsed <= 0 or position <= 0:
        return ""
    return f"{position / wall_elapsed:.2f}x"


class _JobRun:
    """Worker bookkeeping for one start() call."""

    def __init__(self, job: ConversionJob):
        self.job = job
        self.stop_event = threading.Event()  # cancel, or superseded by a new job
        self.done = threading.Event()  # job reached a terminal status
        self.thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()


class Orchestrator:
    """Sequential conversion orchestrator.

    Args:
        config: AppConfig with encoder, profile, timing and general settings.
        ffmpeg_adapter: FFmpegAdapter (or a compatible fake) used to locate,
            build arguments for and run the encoder.
        event_bus: EventBus for lifecycle/diagnostic events.
        store: ProgressStore to publish snapshots into.
    """

    def __init__(
        self,
        config: AppConfig,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: Optional[EventBus] = None,
        store: Optional[ProgressStore] = None,
    ):
        self.config = config
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus or EventBus()
        self.store = store or ProgressStore()
        self.logger = logging.getLogger(__name__)

        # Same lock as the snapshot: the process slot and the published state
        # change together.
        self._lock = self.store.lock
        self._run: Optional[_JobRun] = None
        self._process: Optional[EncoderProcess] = None

    # --- Public surface ---

    def start(self, inputs: Iterable[PathLike], destination: Optional[PathLike] = None) -> None:
        """Starts converting `inputs` in order; returns immediately."""
        paths = [Path(p) for p in inputs]
        if not paths:
            raise NoInputFiles()

        with self._lock:
            previous = self._run
            if previous is not None and previous.job.status == JobStatus.RUNNING:
                raise AlreadyRunning()
            if previous is not None:
                # Ends the previous job's post-completion display window
                previous.stop_event.set()

            job = ConversionJob(
                inputs=paths,
                destination=Path(destination) if destination is not None else None,
                status=JobStatus.RUNNING,
            )
            run = _JobRun(job)
            self._run = run
            self.store.replace(ProgressSnapshot(
                is_running=True,
                job_status=JobStatus.RUNNING,
                total_files=len(paths),
                status_message="Checking FFmpeg installation...",
            ))

        self.logger.info(f"JOB_START: files={len(paths)} destination={job.destination}")
        self.event_bus.publish(JobStarted(inputs=paths, destination=job.destination))

        run.thread = threading.Thread(target=self._worker, args=(run,), name="miyoo-worker", daemon=True)
        run.thread.start()

    def cancel(self) -> None:
        """Cancels the running job and waits for its encoder to exit. No-op when idle."""
        with self._lock:
            run = self._run
            if run is None or run.job.status != JobStatus.RUNNING:
                return
            run.stop_event.set()
            run.job.status = JobStatus.CANCELLED
            process, self._process = self._process, None

        grace = self.config.encoder.terminate_grace_s
        if process is not None:
            self.logger.info(f"FFMPEG_INTERRUPTED: pid={process.pid} (cancel)")
            process.terminate(grace)
        if run.thread is not None and run.thread is not threading.current_thread():
            run.thread.join(timeout=grace + 5.0)

        with self._lock:
            if self._run is run:
                self.store.replace(ProgressSnapshot(
                    is_running=False,
                    job_status=JobStatus.CANCELLED,
                    total_files=run.job.file_count,
                    converted_files=tuple(run.job.outputs),
                    status_message=CANCELLED_MESSAGE,
                ))
        run.done.set()
        self.logger.info("JOB_CANCELLED")
        self.event_bus.publish(JobCancelled())
        self._schedule_cancel_message_clear(run)

    def snapshot(self) -> ProgressSnapshot:
        return self.store.snapshot()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        return self.store.subscribe(callback)

    @property
    def job(self) -> Optional[ConversionJob]:
        """Copy of the current (or last) job."""
        with self._lock:
            return self._run.job.model_copy(deep=True) if self._run else None

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._run is not None and self._run.job.status == JobStatus.RUNNING

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the current job reaches a terminal status."""
        with self._lock:
            run = self._run
        if run is None:
            return True
        return run.done.wait(timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the worker has fully exited, display holds included."""
        with self._lock:
            run = self._run
        if run is None or run.thread is None:
            return True
        run.thread.join(timeout)
        return not run.thread.is_alive()

    # --- Publishing helpers ---

    def _publish(self, run: _JobRun, **changes) -> bool:
        """Applies `changes` to the snapshot unless the run was stopped or replaced."""
        with self._lock:
            if run.stopped or self._run is not run:
                return False
            if "overall_progress" in changes:
                current = self.store.snapshot().overall_progress
                changes["overall_progress"] = min(1.0, max(current, changes["overall_progress"]))
            self.store.update(**changes)
            return True

    def _pause(self, run: _JobRun, seconds: float) -> bool:
        """Waits for a display pause; returns True if the run was stopped meanwhile."""
        if seconds > 0:
            run.stop_event.wait(seconds)
        return run.stopped

    def _schedule_cancel_message_clear(self, run: _JobRun):
        def clear():
            with self._lock:
                if self._run is run and self.store.snapshot().status_message == CANCELLED_MESSAGE:
                    self.store.update(status_message="")

        timer = threading.Timer(self.config.timing.cancel_message_hold_s, clear)
        timer.daemon = True
        timer.start()

    # --- Process slot ---

    def _take_process(self, process: EncoderProcess) -> bool:
        """Removes `process` from the slot; False if cancel() already took it."""
        with self._lock:
            if self._process is process:
                self._process = None
                return True
            return False

    # --- Worker ---

    def _worker(self, run: _JobRun):
        timing = self.config.timing
        try:
            try:
                encoder = self.ffmpeg_adapter.locate()
            except EncoderNotFound as e:
                self._finish_encoder_missing(run, e)
                return

            self.logger.info(f"ENCODER: {encoder}")
            self.event_bus.publish(EncoderLocated(path=encoder))
            self._publish(run, status_message=f"FFmpeg found at: {encoder}")
            if self._pause(run, timing.encoder_found_delay_s):
                return
            self._publish(run, status_message="Starting conversion...")
            if self._pause(run, timing.start_delay_s):
                return

            count = run.job.file_count
            for index, input_path in enumerate(run.job.inputs):
                if run.stopped:
                    return
                self._publish(
                    run,
                    current_file_index=index,
                    status_message=f"Converting file {index + 1} of {count}...",
                )
                result = self._convert_file(run, encoder, index, input_path)
                if result is None:
                    return  # cancelled mid-file

                with self._lock:
                    if run.stopped:
                        return
                    run.job.results.append(result)
                    if result.succeeded and result.output_path is not None:
                        run.job.outputs.append(result.output_path)
                    outputs = tuple(run.job.outputs)

                changes = dict(overall_progress=(index + 1) / count, converted_files=outputs)
                if index + 1 < count:
                    changes["status_message"] = f"Completed {index + 1} of {count} files. Moving to next..."
                self._publish(run, **changes)

            self._finish_completed(run)
        except Exception as e:
            self.logger.exception(f"Conversion worker failed: {e}")
            with self._lock:
                if self._run is run and not run.stopped:
                    run.job.status = JobStatus.FAILED
                    self.store.update(
                        is_running=False,
                        job_status=JobStatus.FAILED,
                        status_message=f"ERROR: {e}",
                    )
        finally:
            # cancel() signals completion itself once its snapshot is out
            if not run.stopped:
                run.done.set()

    def _finish_encoder_missing(self, run: _JobRun, error: EncoderNotFound):
        self.logger.error(f"ENCODER_MISSING: {error}")
        with self._lock:
            if run.stopped or self._run is not run:
                return
            run.job.status = JobStatus.FAILED
            self.store.update(job_status=JobStatus.FAILED, status_message=ENCODER_MISSING_MESSAGE)
        run.done.set()
        self.event_bus.publish(EncoderMissing(message=str(error)))

        if not self._pause(run, self.config.timing.not_found_hold_s):
            self._publish(run, is_running=False, status_message="")

    def _finish_completed(self, run: _JobRun):
        job = run.job
        total = job.file_count
        with self._lock:
            if run.stopped or self._run is not run:
                return
            succeeded = len(job.outputs)
            if succeeded == total:
                message = "All files converted successfully!"
            else:
                message = f"Conversion completed with {succeeded} of {total} files successful"
            job.status = JobStatus.COMPLETED
            self.store.update(
                job_status=JobStatus.COMPLETED,
                overall_progress=1.0,
                current_file_name="",
                status_message=message,
            )
        run.done.set()
        self.logger.info(f"JOB_END: {succeeded}/{total} succeeded")
        self.event_bus.publish(JobCompleted(succeeded=succeeded, total=total))

        # Keep the final state visible before dropping the running flag
        if not self._pause(run, self.config.timing.completion_hold_s):
            self._publish(run, is_running=False, status_message="")

    # --- Per-file processing ---

    def _output_path_for(self, job: ConversionJob, input_path: Path) -> Path:
        general = self.config.general
        ext = self.config.profile.extension
        folder = job.destination if job.destination is not None else input_path.parent
        candidate = folder / f"{general.output_prefix}{input_path.stem}.{ext}"
        if general.collision_policy == "suffix":
            n = 1
            while candidate.exists() or candidate in job.outputs:
                candidate = folder / f"{general.output_prefix}{input_path.stem}_{n}.{ext}"
                n += 1
        return candidate

    def _check_paths(self, input_path: Path, output_path: Path) -> Optional[Tuple[FailureKind, str]]:
        if not input_path.is_file() or not os.access(input_path, os.R_OK):
            return FailureKind.INPUT_UNREADABLE, f"Cannot read input file: {input_path}"
        out_dir = output_path.parent
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return FailureKind.OUTPUT_DIR_UNWRITABLE, f"Cannot create output folder {out_dir}: {e}"
        if not os.access(out_dir, os.W_OK):
            return FailureKind.OUTPUT_DIR_UNWRITABLE, f"Output folder is not writable: {out_dir}"
        return None

    def _discard_partial(self, output_path: Path, preexisting: bool):
        """Removes the truncated output an interrupted or failed encoder left behind."""
        if preexisting or not output_path.exists():
            return
        try:
            output_path.unlink()
        except OSError as e:
            self.logger.warning(f"PARTIAL_KEPT: could not remove {output_path}: {e}")
        else:
            self.logger.info(f"PARTIAL_REMOVED: {output_path}")

    def _fail(
        self,
        run: _JobRun,
        state: FileConversionState,
        failure: FailureKind,
        message: str,
        exit_code: Optional[int] = None,
    ) -> FileResult:
        state.phase = FilePhase.TIMED_OUT if failure == FailureKind.TIMEOUT else FilePhase.FAILED
        self.logger.error(f"FILE_FAILED: {state.input_path.name} {failure.value}: {message}")
        self.event_bus.publish(FileFailed(index=state.index, failure=failure, message=message, exit_code=exit_code))
        self._publish(run, status_message=message)
        self._pause(run, self.config.timing.error_display_s)
        return FileResult(
            index=state.index,
            input_path=state.input_path,
            output_path=state.output_path,
            phase=state.phase,
            failure=failure,
            message=message,
            exit_code=exit_code,
        )

    def _convert_file(self, run: _JobRun, encoder: Path, index: int, input_path: Path) -> Optional[FileResult]:
        """Converts one file. Returns None if the job was cancelled meanwhile."""
        output_path = self._output_path_for(run.job, input_path)
        state = FileConversionState(index=index, input_path=input_path, output_path=output_path)
        name = input_path.name

        self.logger.info(f"FILE_START: {input_path} -> {output_path}")
        self.event_bus.publish(FileStarted(index=index, input_path=input_path, output_path=output_path))
        self._publish(
            run,
            current_file_index=index,
            current_file_name=name,
            current_processing_time="",
            total_video_duration="",
            conversion_speed="",
            status_message=f"Starting conversion of {name}...",
        )

        problem = self._check_paths(input_path, output_path)
        if problem is not None:
            return self._fail(run, state, *problem)

        # A file that was already there is not ours to delete on failure
        preexisting = output_path.exists()
        arguments = self.ffmpeg_adapter.build_arguments(input_path, output_path)
        try:
            process = self.ffmpeg_adapter.run(encoder, arguments)
        except ProcessSpawnFailed as e:
            return self._fail(run, state, FailureKind.PROCESS_SPAWN_FAILED, f"ERROR: Failed to run FFmpeg - {e}")

        grace = self.config.encoder.terminate_grace_s
        with self._lock:
            launched = not run.stopped
            if launched:
                self._process = process
        if not launched:
            process.terminate(grace)
            process.close()
            self._discard_partial(output_path, preexisting)
            return None

        state.phase = FilePhase.ENCODING
        state.started_at = datetime.now()
        state.launched_monotonic = time.monotonic()
        self.event_bus.publish(EncoderLaunched(index=index, command=[str(encoder), *arguments]))
        self._publish(run, status_message="Running FFmpeg conversion...")

        parser = ProgressParser()
        try:
            timed_out = self._supervise(run, state, process, parser)
            if run.stopped:
                exit_code = None
            elif timed_out:
                exit_code = process.wait()
            else:
                remaining = max(grace, state.launched_monotonic + self.config.timing.file_timeout_s - time.monotonic())
                try:
                    exit_code = process.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    timed_out = True
                    if self._take_process(process):
                        process.terminate(grace)
                    exit_code = process.wait()
        finally:
            if self._take_process(process) and process.poll() is None:
                process.terminate(grace)
            process.close()

        if exit_code is None:
            # Cancelled while encoding
            self._discard_partial(output_path, preexisting)
            return None
        for event in parser.finish(exit_code):
            self._apply_parser_event(run, state, event)
        if run.stopped:
            return None

        if timed_out:
            self._discard_partial(output_path, preexisting)
            return self._fail(
                run, state, FailureKind.TIMEOUT,
                f"Timed out converting {name} after {self.config.timing.file_timeout_s:g}s", exit_code=exit_code,
            )
        if exit_code != 0:
            self._discard_partial(output_path, preexisting)
            return self._fail(
                run, state, FailureKind.NON_ZERO_EXIT,
                f"Failed to convert {name} (exit code: {exit_code})", exit_code=exit_code,
            )
        if not output_path.is_file() or output_path.stat().st_size == 0:
            return self._fail(
                run, state, FailureKind.OUTPUT_MISSING_OR_EMPTY,
                f"Conversion completed but output file is missing or empty: {output_path}", exit_code=exit_code,
            )

        state.phase = FilePhase.SUCCEEDED
        self.logger.info(f"FILE_END: {name} status=succeeded output={output_path}")
        self.event_bus.publish(FileSucceeded(index=index, output_path=output_path))
        self._publish(run, status_message=f"Successfully converted {name}")
        return FileResult(
            index=index,
            input_path=input_path,
            output_path=output_path,
            phase=FilePhase.SUCCEEDED,
            message=f"Successfully converted {name}",
            exit_code=exit_code,
        )

    def _supervise(self, run: _JobRun, state: FileConversionState, process: EncoderProcess, parser: ProgressParser) -> bool:
        """Pumps encoder output into the parser until EOF, cancel or timeout.

        Returns True when the file timeout fired.
        """
        grace = self.config.encoder.terminate_grace_s
        deadline = state.launched_monotonic + self.config.timing.file_timeout_s
        drain_deadline: Optional[float] = None

        while not run.stopped:
            now = time.monotonic()
            if drain_deadline is None and now >= deadline:
                self.logger.warning(f"FFMPEG_TIMEOUT: {state.input_path.name} after {self.config.timing.file_timeout_s}s")
                if self._take_process(process):
                    process.terminate(grace)
                drain_deadline = time.monotonic() + 1.0
            elif drain_deadline is not None and now >= drain_deadline:
                break

            try:
                line = process.read_line(timeout=POLL_INTERVAL_S)
            except queue.Empty:
                continue
            if line is None:
                break

            self.event_bus.publish(EncoderOutput(index=state.index, line=line))
            for event in parser.feed_line(line):
                self._apply_parser_event(run, state, event)

        return drain_deadline is not None

    def _apply_parser_event(self, run: _JobRun, state: FileConversionState, event: ParserEvent):
        self.event_bus.publish(FileParserEvent(index=state.index, event=event))

        if isinstance(event, DurationDiscovered):
            if state.total_duration_seconds == 0:
                state.total_duration_seconds = event.seconds
                self._publish(run, total_video_duration=format_clock(event.seconds))
        elif isinstance(event, PositionAdvanced):
            self._publish_position(run, state, event.seconds)

    def _publish_position(self, run: _JobRun, state: FileConversionState, position: float):
        total = state.total_duration_seconds
        if total > 0:
            position = min(position, total)
        state.elapsed_position_seconds = position

        wall_elapsed = time.monotonic() - (state.launched_monotonic or time.monotonic())
        changes = dict(
            current_processing_time=format_clock(position),
            conversion_speed=format_speed(position, wall_elapsed),
        )
        name = state.input_path.name
        if total > 0:
            fraction = min(position / total, 1.0)
            changes["overall_progress"] = (state.index + fraction) / run.job.file_count
            changes["status_message"] = f"Converting {name}: {fraction * 100:.0f}%"
        else:
            # Duration unknown: report elapsed time only
            changes["status_message"] = f"Converting {name}: {format_clock(position)} processed"
        self._publish(run, **changes)
