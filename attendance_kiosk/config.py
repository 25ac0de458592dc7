from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
WEB_DIR = BASE_DIR / "web"

DEFAULT_LABELS = ("andij", "fahmi", "ziea", "amak", "ayas", "faiz", "duta")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KIOSK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    app_name: str = "Attendance Kiosk"
    api_prefix: str = "/api"
    log_level: str = "INFO"
    log_dir: Path = BASE_DIR / "logs"

    # Face models and reference images
    model_dir: Path = BASE_DIR / "models"
    reference_base: str = str(DATA_DIR)
    known_labels_raw: str = ",".join(DEFAULT_LABELS)
    match_threshold: float = Field(default=0.6, gt=0.0)
    blink_threshold: float = Field(default=0.28, gt=0.0)
    max_faces: int = Field(default=4, ge=1)
    min_detection_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    device: str = "auto"

    # Webcam
    camera_index: int = 0
    frame_width: int = 1280
    frame_height: int = 720
    frame_fps: int = 30
    camera_backend_order: str = ""
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    jpeg_quality: int = Field(default=78, ge=30, le=100)

    # Login
    error_banner_seconds: float = Field(default=2.0, ge=0.0)
    auth_url: str = ""
    request_timeout_seconds: float = 10.0
    roster_latency_seconds: float = 0.0

    cors_origins_raw: str = "http://localhost:3000,http://localhost:8000"

    @property
    def known_labels(self) -> Tuple[str, ...]:
        return tuple(label.strip() for label in self.known_labels_raw.split(",") if label.strip())

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
