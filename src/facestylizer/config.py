"""Environment-based configuration for FaceStylizer."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACESTYLIZER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACESTYLIZER_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Execution path for image operators and inference
    device: Literal["cpu", "gpu", "auto"] = "cpu"

    # Model selection (registry name or path to a local .task bundle)
    model_bundle: str = "face_stylizer_color_sketch"
    models_dir: str = "models"

    # Output: full frame (False) or model-native face crop (True)
    output_face_crop: bool = False

    # Face landmarker thresholds
    min_face_detection_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    min_face_presence_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Model management
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
