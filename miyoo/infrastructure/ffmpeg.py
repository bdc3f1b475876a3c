import os
import queue
import shutil
import signal
import subprocess
import threading
import logging
from pathlib import Path
from typing import Iterator, List, Optional
from miyoo.config.models import EncoderConfig, EncoderProfile
from miyoo.domain.errors import EncoderNotFound, ProcessSpawnFailed


class EncoderProcess:
    """A running encoder with its merged stdout/stderr exposed as lines.

    A daemon reader thread drains the pipe into a queue so the caller can poll
    for output with a timeout while it supervises the process.

    With `process_group` set the encoder leads its own process group (POSIX
    `start_new_session`), and terminate() signals the whole group so helper
    children cannot keep the pipe open after the encoder is gone.
    """

    def __init__(self, process: subprocess.Popen, command: List[str], process_group: bool = False):
        self._process = process
        self.command = command
        self.process_group = process_group
        self.logger = logging.getLogger(__name__)
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._eof = False
        self._reader = threading.Thread(target=self._read_output, daemon=True)
        self._reader.start()

    def _read_output(self):
        stream = self._process.stdout
        if stream is None:
            self._lines.put(None)
            return
        try:
            for line in stream:
                self._lines.put(line.rstrip("\r\n"))
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill
            pass
        finally:
            self._lines.put(None)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def output_finished(self) -> bool:
        return self._eof

    def read_line(self, timeout: Optional[float] = None) -> Optional[str]:
        """Returns the next output line, or None once the output is exhausted.

        Raises queue.Empty when no line arrives within `timeout`.
        """
        if self._eof:
            return None
        line = self._lines.get(timeout=timeout)
        if line is None:
            self._eof = True
        return line

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self.read_line()
            if line is None:
                return
            yield line

    def poll(self) -> Optional[int]:
        return self._process.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._process.wait(timeout=timeout)

    def _signal(self, kill: bool):
        if not self.process_group:
            if kill:
                self._process.kill()
            else:
                self._process.terminate()
            return
        try:
            os.killpg(self._process.pid, signal.SIGKILL if kill else signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            # Group already gone
            pass

    def terminate(self, grace: float = 3.0) -> bool:
        """Stops the process (and its group) and waits for it to die.

        Sends SIGTERM, escalates to SIGKILL after `grace` seconds. Returns
        False when the process had already exited.
        """
        if self._process.poll() is not None:
            return False
        self._signal(kill=False)
        try:
            self._process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self._signal(kill=True)
            self._process.wait()
        if self.process_group:
            # Leader is gone; take down children that ignored SIGTERM
            self._signal(kill=True)
        return True

    def close(self, timeout: float = 1.0):
        """Waits briefly for the reader to drain, then closes the pipe.

        While the reader is still blocked on the pipe it is left alone; the
        daemon thread ends on EOF.
        """
        self._reader.join(timeout=timeout)
        if self._reader.is_alive():
            self.logger.warning(f"FFMPEG_PIPE_OPEN: pid={self.pid} output still held after exit")
            return
        if self._process.stdout:
            try:
                self._process.stdout.close()
            except OSError:
                pass


class FFmpegAdapter:
    """Wrapper around ffmpeg for the fixed handheld profile."""

    def __init__(self, encoder_config: Optional[EncoderConfig] = None, profile: Optional[EncoderProfile] = None):
        self.encoder_config = encoder_config or EncoderConfig()
        self.profile = profile or EncoderProfile()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _is_executable(path: Path) -> bool:
        return path.is_file() and os.access(path, os.X_OK)

    def locate(self) -> Path:
        """Finds the encoder: configured locations first, then PATH."""
        for candidate in self.encoder_config.search_paths:
            path = Path(candidate).expanduser()
            if self._is_executable(path):
                self.logger.debug(f"ENCODER_FOUND: {path} (search path)")
                return path

        resolved = shutil.which(self.encoder_config.binary_name)
        if resolved:
            self.logger.debug(f"ENCODER_FOUND: {resolved} (PATH)")
            return Path(resolved)

        raise EncoderNotFound(self.encoder_config.binary_name, self.encoder_config.search_paths)

    def _video_filter(self) -> str:
        p = self.profile
        return (
            f"scale={p.width}:{p.height}:force_original_aspect_ratio=decrease,"
            f"pad={p.width}:{p.height}:(ow-iw)/2:(oh-ih)/2:{p.pad_color}"
        )

    def build_arguments(self, input_path: Path, output_path: Path) -> List[str]:
        """Constructs the ffmpeg arguments (without the executable)."""
        p = self.profile
        args = [
            "-nostdin",
            "-y",  # Overwrite output files
            "-progress", "pipe:1",  # key=value progress on stdout
            "-i", str(input_path),
            "-vf", self._video_filter(),
        ]

        # Video settings
        args.extend([
            "-c:v", p.video_codec,
            "-profile:v", p.video_profile,
            "-level", p.video_level,
            "-b:v", p.video_bitrate,
            "-maxrate", p.max_rate,
            "-bufsize", p.buffer_size,
        ])

        # Audio settings
        args.extend([
            "-c:a", p.audio_codec,
            "-b:a", p.audio_bitrate,
            "-ar", str(p.audio_sample_rate),
            "-ac", str(p.audio_channels),
        ])

        args.extend(["-f", p.container_format])
        if p.faststart:
            args.extend(["-movflags", "+faststart"])
        args.append(str(output_path))
        return args

    def run(self, executable: Path, arguments: List[str]) -> EncoderProcess:
        """Spawns the encoder with stderr merged into stdout.

        On POSIX the encoder starts in its own session so it can be stopped
        together with any children it forks.
        """
        cmd = [str(executable), *arguments]
        process_group = os.name == "posix"
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=process_group,
            )
        except OSError as e:
            raise ProcessSpawnFailed(Path(executable), e) from e
        return EncoderProcess(process, cmd, process_group=process_group)
