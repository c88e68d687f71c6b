"""Environment-based configuration for FaceMatch."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEMATCH_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEMATCH_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Face detector factory, as "package.module:attribute"
    detector: str | None = None

    # Embedding model: a registry name, or an explicit local .onnx path
    face_recognition_model: str = "auraface_v1"
    model_path: str | None = None
    models_dir: str = "./models"
    accept_insightface_license: bool = False

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=4, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Embedding store
    database_url: str = "sqlite+aiosqlite:///./data/facematch.db"

    # Preprocessing
    embedding_dim: int = Field(default=512, ge=1)
    input_size: int = Field(default=112, ge=1)
    crop_margin: float = Field(default=1.4, gt=0.0)
    pixel_mean: float = 127.5
    pixel_std: float = Field(default=128.0, gt=0.0)

    # Matching
    match_threshold: float = Field(default=0.70, ge=-1.0, le=1.0)

    # Concurrency
    max_concurrent_verifications: int = Field(default=3, ge=1)
    isolated_acquire_timeout: float | None = Field(default=None, gt=0.0)
    identify_batch_size: int = Field(default=3, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
