import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Top-level 'timeout' is shorthand for timing.file_timeout_s
    timeout = data.pop("timeout", None)
    if timeout is not None:
        data.setdefault("timing", {})["file_timeout_s"] = timeout

    return AppConfig(**data)
