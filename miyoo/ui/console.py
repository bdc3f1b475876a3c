import threading
import time
from typing import Callable, Optional
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text
from miyoo.domain.models import JobStatus, ProgressSnapshot
from miyoo.infrastructure.diagnostics import DiagnosticsLog
from miyoo.pipeline.state import ProgressStore

STATUS_STYLES = {
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.CANCELLED: "yellow",
    JobStatus.FAILED: "red",
    JobStatus.IDLE: "white",
}


class ConsoleView:
    """Live terminal rendering of the published ProgressSnapshot."""

    def __init__(
        self,
        store: ProgressStore,
        console: Optional[Console] = None,
        diagnostics: Optional[DiagnosticsLog] = None,
        log_lines: int = 5,
        max_outputs: int = 8,
    ):
        self.store = store
        self.console = console or Console()
        self.diagnostics = diagnostics
        self.log_lines = log_lines
        self.max_outputs = max_outputs
        self._live: Optional[Live] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._dirty = threading.Event()

    def _on_snapshot(self, snapshot: ProgressSnapshot):
        # Called on the worker thread; rendering happens on the refresh thread
        self._dirty.set()

    def render(self, snapshot: ProgressSnapshot) -> RenderableType:
        pct = snapshot.overall_progress * 100
        style = STATUS_STYLES.get(snapshot.job_status, "white")

        header = Table.grid(expand=True)
        header.add_column()
        header.add_column(justify="right")
        header.add_row(Text("Conversion Progress", style="bold"), Text(f"{pct:.0f}%", style=f"bold {style}"))

        bar = ProgressBar(total=10000, completed=int(snapshot.overall_progress * 10000), width=None)

        details = Table.grid(padding=(0, 2))
        details.add_column(style="dim")
        details.add_column()
        if snapshot.total_files:
            position = min(snapshot.current_file_index + 1, snapshot.total_files)
            details.add_row("Files:", f"{position} of {snapshot.total_files}")
        details.add_row("Current file:", snapshot.current_file_name or "Preparing...")
        if snapshot.current_processing_time or snapshot.total_video_duration:
            timing = snapshot.current_processing_time or "--:--:--"
            if snapshot.total_video_duration:
                timing = f"{timing} / {snapshot.total_video_duration}"
            if snapshot.conversion_speed:
                timing = f"{timing} • {snapshot.conversion_speed}"
            details.add_row("Time:", timing)
        details.add_row("Status:", Text(snapshot.status_message, style=style))

        rows = [header, bar, details]

        if snapshot.converted_files:
            shown = snapshot.converted_files[-self.max_outputs:]
            converted = Text("Converted files:\n", style="bold")
            converted.append("\n".join(f"  ✓ {path.name}" for path in shown), style="green")
            hidden = len(snapshot.converted_files) - len(shown)
            if hidden > 0:
                converted.append(f"\n  ...+{hidden} more", style="dim")
            rows.append(converted)

        if self.diagnostics is not None and self.log_lines > 0:
            tail = self.diagnostics.tail(self.log_lines)
            if tail:
                rows.append(Text("\n".join(entry.format() for entry in tail), style="dim", overflow="ellipsis", no_wrap=True))

        return Panel(Group(*rows), title="Miyoo Video Converter", border_style=style)

    def _refresh_loop(self):
        while not self._stop_refresh.is_set():
            if self._dirty.wait(0.25):
                self._dirty.clear()
                if self._live:
                    self._live.update(self.render(self.store.snapshot()))
            time.sleep(0.05)

    def start(self):
        self._live = Live(self.render(self.store.snapshot()), console=self.console, refresh_per_second=4)
        self._live.start()
        self._unsubscribe = self.store.subscribe(self._on_snapshot)
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
        if self._live:
            # Final update so the terminal keeps the last state
            self._live.update(self.render(self.store.snapshot()))
            self._live.stop()
            self._live = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
