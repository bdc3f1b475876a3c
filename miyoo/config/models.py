from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

COLLISION_POLICIES = ("overwrite", "suffix")

DEFAULT_SEARCH_PATHS = [
    "/usr/local/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/bin/ffmpeg",
]

class EncoderConfig(BaseModel):
    """Where to find the encoder and how to stop it."""
    binary_name: str = "ffmpeg"
    search_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_SEARCH_PATHS))
    terminate_grace_s: float = Field(default=3.0, ge=0.0)

class EncoderProfile(BaseModel):
    """Target encode for the Miyoo Mini Plus (480x320 H.264 baseline)."""
    width: int = Field(default=480, gt=0)
    height: int = Field(default=320, gt=0)
    pad_color: str = "black"
    video_codec: str = "libx264"
    video_profile: str = "baseline"
    video_level: str = "3.0"
    video_bitrate: str = "800k"
    max_rate: str = "1000k"
    buffer_size: str = "1000k"
    audio_codec: str = "aac"
    audio_bitrate: str = "64k"
    audio_sample_rate: int = Field(default=22050, gt=0)
    audio_channels: int = Field(default=2, ge=1, le=8)
    container_format: str = "mp4"
    extension: str = "mp4"
    faststart: bool = True

    @field_validator("extension")
    @classmethod
    def strip_leading_dot(cls, v: str) -> str:
        v = v.strip().lstrip(".")
        if not v:
            raise ValueError("extension must not be empty")
        return v

class TimingConfig(BaseModel):
    """Timeouts and display pauses, in seconds. Tests set these to zero."""
    file_timeout_s: float = Field(default=300.0, gt=0)
    completion_hold_s: float = Field(default=15.0, ge=0.0)
    not_found_hold_s: float = Field(default=10.0, ge=0.0)
    cancel_message_hold_s: float = Field(default=2.0, ge=0.0)
    encoder_found_delay_s: float = Field(default=2.0, ge=0.0)
    start_delay_s: float = Field(default=1.0, ge=0.0)
    error_display_s: float = Field(default=2.0, ge=0.0)

class GeneralConfig(BaseModel):
    output_prefix: str = "converted_"
    collision_policy: str = "overwrite"
    extensions: List[str] = Field(
        default_factory=lambda: [".mp4", ".mov", ".avi", ".mkv", ".m4v", ".wmv", ".flv", ".webm"]
    )
    debug: bool = False
    log_path: Optional[str] = None
    diagnostics_max_entries: int = Field(default=1000, ge=1)

    @field_validator("collision_policy")
    @classmethod
    def validate_collision_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in COLLISION_POLICIES:
            raise ValueError(f"Unsupported collision_policy: {v}. Use one of {list(COLLISION_POLICIES)}")
        return v

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    profile: EncoderProfile = Field(default_factory=EncoderProfile)
    timing: TimingConfig = Field(default_factory=TimingConfig)
