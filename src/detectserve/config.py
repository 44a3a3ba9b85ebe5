"""Environment-based configuration for DetectServe."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from DETECTSERVE_* environment variables.

    Built once at startup and frozen; every request reads the same instance.
    """

    model_config = SettingsConfigDict(
        env_prefix="DETECTSERVE_",
        case_sensitive=False,
        frozen=True,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Model source: a local graph file, or a Hugging Face repo to fetch it from
    model_path: str | None = None
    model_repo: str | None = None
    model_filename: str = "frozen_inference_graph.onnx"
    models_dir: str = "models"

    # Graph bindings
    input_name: str = "image_tensor:0"
    scores_output: str = "detection_scores:0"
    classes_output: str = "detection_classes:0"

    # ONNX Runtime
    device: Literal["cpu", "cuda", "openvino"] = "cpu"
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    serialize_inference: bool = False

    # Matching
    threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    flag_class: int = 6
    strict_rgb: bool = False

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings(**overrides: object) -> Settings:
    """Create settings from the environment, with explicit overrides on top."""
    return Settings(**overrides)  # type: ignore[arg-type]


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide log format."""
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)
