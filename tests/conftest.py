import queue
import subprocess
import threading
import time
from types import SimpleNamespace
import pytest
from pathlib import Path
from typing import Callable, List, Optional
from miyoo.config.models import AppConfig
from miyoo.domain.errors import EncoderNotFound, ProcessSpawnFailed
from miyoo.infrastructure.event_bus import EventBus

# ============================================================================
# Fake encoder
# ============================================================================

def ffmpeg_lines(duration: Optional[float] = 10.0, positions: Optional[List[float]] = None) -> List[str]:
    """Output resembling `ffmpeg -progress pipe:1` with stderr merged in."""
    lines = ["Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'input.mov':"]
    if duration is not None:
        hours, rest = divmod(duration, 3600)
        minutes, seconds = divmod(rest, 60)
        lines.append(f"  Duration: {int(hours):02d}:{int(minutes):02d}:{seconds:05.2f}, start: 0.000000, bitrate: 1200 kb/s")
    lines.append("Output #0, mp4, to 'output.mp4':")
    for position in positions if positions is not None else [0, 5, 10]:
        lines.append(f"out_time_us={int(position * 1_000_000)}")
        lines.append("progress=continue")
    lines.append("progress=end")
    return lines


class FakeEncoderProcess:
    """Stands in for EncoderProcess; writes its output file on a clean exit."""

    def __init__(
        self,
        lines: List[str],
        exit_code: int = 0,
        output_path: Optional[Path] = None,
        output_bytes: Optional[bytes] = b"converted video data",
        hang: bool = False,
    ):
        self._lines = list(lines)
        self._pos = 0
        self.exit_code = exit_code
        self.output_path = output_path
        self.output_bytes = output_bytes
        self.hang = hang
        self.returncode: Optional[int] = None
        self.pid = 4242
        self.terminate_calls = 0
        self.closed = False
        self._killed = threading.Event()
        self._lock = threading.Lock()

    def _exit(self, code: int):
        with self._lock:
            if self.returncode is not None:
                return
            self.returncode = code
            if code == 0 and self.output_path is not None and self.output_bytes is not None:
                self.output_path.write_bytes(self.output_bytes)

    def read_line(self, timeout: Optional[float] = None) -> Optional[str]:
        if not self._killed.is_set() and self._pos < len(self._lines):
            line = self._lines[self._pos]
            self._pos += 1
            return line
        if self._killed.is_set():
            return None
        if self.hang:
            if self._killed.wait(timeout):
                return None
            raise queue.Empty
        self._exit(self.exit_code)
        return None

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if self.returncode is None:
            if self.hang:
                if not self._killed.wait(timeout):
                    raise subprocess.TimeoutExpired("fake-ffmpeg", timeout)
            else:
                self._exit(self.exit_code)
        return self.returncode

    def terminate(self, grace: float = 3.0) -> bool:
        with self._lock:
            if self.returncode is not None:
                return False
            self.terminate_calls += 1
            self.returncode = -15
        self._killed.set()
        return True

    def close(self, timeout: float = 1.0):
        self.closed = True


class FakeAdapter:
    """FFmpegAdapter stand-in that hands out FakeEncoderProcess objects.

    `factory(input_path, output_path)` builds the process for each file; it
    may raise ProcessSpawnFailed to simulate a spawn error.
    """

    def __init__(
        self,
        factory: Optional[Callable[[Path, Path], FakeEncoderProcess]] = None,
        encoder_path: Path = Path("/usr/bin/ffmpeg"),
        missing: bool = False,
    ):
        self.factory = factory or (lambda inp, out: FakeEncoderProcess(ffmpeg_lines(), output_path=out))
        self.encoder_path = encoder_path
        self.missing = missing
        self.processes: List[FakeEncoderProcess] = []
        self.launched: List[Path] = []

    def locate(self) -> Path:
        if self.missing:
            raise EncoderNotFound("ffmpeg", ["/usr/bin/ffmpeg"])
        return self.encoder_path

    def build_arguments(self, input_path: Path, output_path: Path) -> List[str]:
        return ["-i", str(input_path), str(output_path)]

    def run(self, executable: Path, arguments: List[str]) -> FakeEncoderProcess:
        input_path, output_path = Path(arguments[1]), Path(arguments[-1])
        self.launched.append(input_path)
        process = self.factory(input_path, output_path)
        self.processes.append(process)
        return process


def spawn_failure(input_path: Path, output_path: Path):
    raise ProcessSpawnFailed(Path("/usr/bin/ffmpeg"), PermissionError(13, "Permission denied"))


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def fast_config():
    """AppConfig with every display pause removed."""
    return AppConfig(
        encoder={"terminate_grace_s": 0.5},
        timing={
            "file_timeout_s": 10.0,
            "completion_hold_s": 0,
            "not_found_hold_s": 0,
            "cancel_message_hold_s": 0,
            "encoder_found_delay_s": 0,
            "start_delay_s": 0,
            "error_display_s": 0,
        },
    )

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def input_videos(tmp_path):
    """Creates a.mov and b.mov in an input directory."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    files = []
    for name in ("a.mov", "b.mov"):
        f = input_dir / name
        f.write_bytes(b"dummy video content " * 100)
        files.append(f)
    return files

@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "out"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that spawn real processes"
    )

@pytest.fixture
def fake_encoder():
    """The fake encoder building blocks, for tests that script encoder runs."""
    return SimpleNamespace(
        Adapter=FakeAdapter,
        Process=FakeEncoderProcess,
        lines=ffmpeg_lines,
        spawn_failure=spawn_failure,
        wait_for=wait_for,
    )
