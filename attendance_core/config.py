from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATTENDANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Face Match Attendance Core"
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    log_to_file: bool = True
    log_json: bool = False

    database_url: str = "sqlite:///data/attendance.db"
    embedding_key: str = ""
    embedding_key_path: Path = Path("data/.embedding.key")

    # Matching
    match_threshold: float = 0.85
    optimized_timeout_seconds: float = Field(default=1.5, gt=0)
    optimized_failure_limit: int = Field(default=3, ge=0)
    cache_max_age_seconds: float = Field(default=0.0, ge=0)

    # Attendance
    attendance_timezone: str = ""
    attendance_retry_attempts: int = Field(default=3, ge=1)
    attendance_retry_delay_seconds: float = Field(default=0.25, ge=0)

    # Scanning loop
    scan_delay_after_match_seconds: float = Field(default=2.0, gt=0)
    scan_delay_after_no_match_seconds: float = Field(default=0.3, gt=0)
    scan_delay_after_error_seconds: float = Field(default=1.0, gt=0)

    # Webcam
    camera_index: int = 0
    frame_width: int = 1280
    frame_height: int = 720
    frame_fps: int = 30

    # Optimized engine
    insightface_model: str = "buffalo_l"
    insightface_det_size: int = 640
    prefer_gpu: bool = True

    @field_validator("match_threshold")
    @classmethod
    def _threshold_in_unit_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("match_threshold must be within [0, 1]")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
