import typer
import yaml
from pathlib import Path
from typing import List, Optional, Tuple
from pydantic import ValidationError

from miyoo.config.loader import load_config
from miyoo.config.models import AppConfig
from miyoo.domain.errors import ConversionError, EncoderNotFound
from miyoo.domain.models import JobStatus
from miyoo.infrastructure.diagnostics import DiagnosticsLog
from miyoo.infrastructure.event_bus import EventBus
from miyoo.infrastructure.ffmpeg import FFmpegAdapter
from miyoo.infrastructure.logging import setup_logging
from miyoo.pipeline.orchestrator import Orchestrator, ENCODER_MISSING_MESSAGE
from miyoo.ui.console import ConsoleView

app = typer.Typer(help="Miyoo Video Converter - convert videos for playback on the Miyoo Mini Plus")


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is None:
        return AppConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def split_supported(files: List[Path], extensions: List[str]) -> Tuple[List[Path], List[Path]]:
    """Splits inputs into (video files we accept, everything else)."""
    accepted: List[Path] = []
    skipped: List[Path] = []
    for path in files:
        if path.is_dir() or path.suffix.lower() not in extensions:
            skipped.append(path)
        else:
            accepted.append(path)
    return accepted, skipped


@app.command()
def convert(
    files: List[Path] = typer.Argument(..., help="Video files to convert"),
    dest: Optional[Path] = typer.Option(None, "--dest", "-d", help="Output folder (default: next to each input)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-file timeout in seconds"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    pace: bool = typer.Option(False, "--pace/--no-pace", help="Keep the display pauses between steps"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Log every encoder output line"),
):
    """Convert video files to the Miyoo Mini Plus profile."""
    config = _load_app_config(config_path)
    if timeout is not None:
        if timeout <= 0:
            typer.secho("Error: --timeout must be positive.", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        config.timing.file_timeout_s = timeout
    if log_path is not None:
        config.general.log_path = str(log_path)
    if debug:
        config.general.debug = True
    if not pace:
        config.timing.encoder_found_delay_s = 0
        config.timing.start_delay_s = 0
        config.timing.error_display_s = 0
        config.timing.completion_hold_s = 0
        config.timing.not_found_hold_s = 0

    accepted, skipped = split_supported(files, config.general.extensions)
    for path in skipped:
        typer.secho(f"Skipping {path}: not a supported video file", fg=typer.colors.YELLOW, err=True)
    if not accepted:
        typer.secho("Error: No video files to convert.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    log_dir = dest if dest is not None else accepted[0].parent
    log_path_value = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(log_dir, debug=config.general.debug, log_path=log_path_value)
    logger.info(f"Miyoo converter started: files={len(accepted)}, destination={dest}")
    logger.info(
        f"Profile: {config.profile.width}x{config.profile.height} {config.profile.video_codec} "
        f"{config.profile.video_bitrate}, timeout={config.timing.file_timeout_s}s"
    )

    bus = EventBus()
    diagnostics = DiagnosticsLog(max_entries=config.general.diagnostics_max_entries)
    diagnostics.attach(bus)
    adapter = FFmpegAdapter(config.encoder, config.profile)
    orchestrator = Orchestrator(config=config, ffmpeg_adapter=adapter, event_bus=bus)
    view = ConsoleView(orchestrator.store, diagnostics=diagnostics)

    try:
        with view:
            orchestrator.start(accepted, dest)
            orchestrator.wait()
            orchestrator.join()
    except KeyboardInterrupt:
        orchestrator.cancel()
        typer.secho("\n✓ Conversion cancelled by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    except ConversionError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    job = orchestrator.job
    if job is None or job.status == JobStatus.FAILED:
        # Encoder-missing status is cleared after its hold; worker errors stay
        message = orchestrator.snapshot().status_message or ENCODER_MISSING_MESSAGE
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    for result in job.results:
        if not result.succeeded:
            typer.secho(f"✗ {result.input_path.name}: {result.message}", fg=typer.colors.RED, err=True)
    if len(job.outputs) < len(job.inputs):
        raise typer.Exit(code=1)


@app.command()
def locate(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Show which ffmpeg binary would be used."""
    config = _load_app_config(config_path)
    adapter = FFmpegAdapter(config.encoder, config.profile)
    try:
        path = adapter.locate()
    except EncoderNotFound:
        typer.secho(ENCODER_MISSING_MESSAGE, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(str(path))


if __name__ == "__main__":
    app()
