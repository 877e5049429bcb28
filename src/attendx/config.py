"""Environment-based configuration for AttendX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ATTENDX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ATTENDX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Feature extractor
    device: Literal["cpu", "cuda", "openvino"] = "cpu"
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    models_dir: str = "models"
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency and timeouts
    max_concurrent: int = Field(default=4, ge=1)
    operation_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)
    min_face_pixels: int = Field(default=32, ge=1)

    # Storage ("" = in-memory)
    database_url: str = ""

    # Matching
    match_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    match_aggregation: Literal["max", "mean", "centroid"] = "max"

    # Enrollment
    min_samples: int = Field(default=5, ge=1)
    min_intra_sample_similarity: float = Field(default=0.75, ge=0.0, le=1.0)

    # Attendance cooldown
    cooldown_mode: Literal["calendar_day", "rolling"] = "calendar_day"
    cooldown_seconds: int = Field(default=3600, ge=1)
    timezone: str = "UTC"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
