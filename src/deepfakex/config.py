"""Environment-based configuration for DeepfakeX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DEEPFAKEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEEPFAKEX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    detector_model: str = "yolov11n_face"
    classifier_model: str = "deepfake_binary_s128"
    models_dir: str = "models"
    # Hugging Face repo holding the model files (None = models_dir only)
    model_repo_id: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    face_workers: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)
    fetch_timeout: float = Field(default=10.0, gt=0)
    allow_private_urls: bool = False

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    eviction_interval: float = Field(default=60.0, gt=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Pipeline
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    extend_ratio: float = Field(default=0.5, ge=0.0)
    detector_input_size: int = Field(default=640, ge=1)
    classifier_input_size: int = Field(default=128, ge=1)
    nms_iou_threshold: float | None = Field(default=0.45, ge=0.0, le=1.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
