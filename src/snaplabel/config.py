"""Environment-based configuration for SnapLabel."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_STATE_DIR = Path(tempfile.gettempdir()) / "snaplabel"


class Settings(BaseSettings):
    """Application settings loaded from SNAPLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPLABEL_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Execution environment the front end runs in; drives the capability profile
    platform: Literal["android", "ios", "web"] = "web"

    # Model download. Required: a Hugging Face model repo holding
    # mobilenet_v2_0.35_96.onnx, mobilenet_v2_1.0_224.onnx and imagenet_labels.txt
    model_repo_id: str
    models_dir: str = str(_STATE_DIR / "models")

    # Cache-scoped copies of content-provider images, and the provider's own store
    cache_dir: str = str(_STATE_DIR / "cache")
    content_root: str = str(_STATE_DIR / "content")

    # Whether /classify may fetch http(s) references on behalf of the client
    allow_remote_urls: bool = False

    # Classification
    top_k: int = Field(default=3, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)
    remote_timeout: float = Field(default=10.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
