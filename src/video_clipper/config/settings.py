"""Basic settings and directory management."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from platformdirs import user_cache_dir, user_config_dir, user_data_dir
from pydantic import BaseModel, Field, model_validator

APP_NAME = "video-clipper"


def get_config_dir() -> Path:
    """Get the configuration directory."""
    return Path(os.environ.get("VIDEO_CLIPPER_CONFIG_DIR", user_config_dir(APP_NAME)))


def get_data_dir() -> Path:
    """Get the data directory for entity records, origin files and cached blobs."""
    return Path(os.environ.get("VIDEO_CLIPPER_DATA_DIR", user_data_dir(APP_NAME)))


def get_work_dir() -> Path:
    """Get the root directory for per-operation workspaces."""
    default = Path(user_cache_dir(APP_NAME)) / "work"
    return Path(os.environ.get("VIDEO_CLIPPER_WORK_DIR", str(default)))


def get_records_dir() -> Path:
    """Get the directory holding persisted entity records."""
    return get_data_dir() / "records"


def get_origin_dir() -> Path:
    """Get the root of the local origin store."""
    return get_data_dir() / "origin"


def get_cache_dir() -> Path:
    """Get the root of the local cache store."""
    return get_data_dir() / "cache"


def get_asset_dir() -> Path:
    """Get the directory local composition assets may be read from."""
    return get_data_dir() / "assets"


def get_config_file() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.json"


def get_log_level() -> str:
    """Get the log level name."""
    return os.environ.get("VIDEO_CLIPPER_LOG_LEVEL", "INFO").upper()


def load_config() -> dict[str, Any]:
    """Load configuration from file."""
    config: dict[str, Any] = {}
    config_file = get_config_file()
    if config_file.exists():
        with open(config_file) as f:
            config = json.load(f)
    return config


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)


def ensure_dirs() -> None:
    """Ensure all required directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)
    get_work_dir().mkdir(parents=True, exist_ok=True)
    get_records_dir().mkdir(parents=True, exist_ok=True)
    get_origin_dir().mkdir(parents=True, exist_ok=True)
    get_cache_dir().mkdir(parents=True, exist_ok=True)
    get_asset_dir().mkdir(parents=True, exist_ok=True)


# Pipeline configuration
DEFAULT_PIPELINE_CONFIG = {
    "cache_ttl_days": 7,
    "cache_buffer_minutes": 5,
    "read_url_minutes": 60,
    "chunk_size": 500,
    "chunk_overlap": 100,
    "min_clip_seconds": 5,
    "max_clip_seconds": 600,
    "clip_end_padding_seconds": 0.5,
    "title_max_length": 50,
    "subtitle_max_chars": 16,
    "subtitle_max_lines": 2,
    "shorts_folder_name": "shorts",
    "dictionary_path": None,  # None = packaged default dictionary
    "audio_format": "flac",
    "canvas_width": 1080,
    "canvas_height": 1920,
}


class PipelineConfig(BaseModel):
    """Validated pipeline parameters."""

    cache_ttl_days: float = Field(gt=0)
    cache_buffer_minutes: float = Field(ge=0)
    read_url_minutes: int = Field(gt=0)
    chunk_size: int = Field(gt=0)
    chunk_overlap: int = Field(ge=0)
    min_clip_seconds: float = Field(gt=0)
    max_clip_seconds: float = Field(gt=0)
    clip_end_padding_seconds: float = Field(ge=0)
    title_max_length: int = Field(gt=0)
    subtitle_max_chars: int = Field(gt=0)
    subtitle_max_lines: int = Field(gt=0)
    shorts_folder_name: str
    dictionary_path: str | None = None
    audio_format: str
    canvas_width: int = Field(gt=0)
    canvas_height: int = Field(gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> PipelineConfig:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.min_clip_seconds > self.max_clip_seconds:
            raise ValueError("min_clip_seconds must not exceed max_clip_seconds")
        return self


def get_pipeline_config() -> PipelineConfig:
    """Get pipeline configuration with defaults."""
    config = load_config()
    pipeline = config.get("pipeline", {})
    return PipelineConfig(**{**DEFAULT_PIPELINE_CONFIG, **pipeline})


# Cleanup configuration
DEFAULT_CLEANUP_CONFIG = {
    "enabled": True,
    "retention_days": 1,
    "schedule": "0 */6 * * *",  # Every 6 hours
}


def get_cleanup_config() -> dict[str, Any]:
    """Get cleanup configuration with defaults."""
    config = load_config()
    cleanup = config.get("cleanup", {})
    return {**DEFAULT_CLEANUP_CONFIG, **cleanup}


# External client configuration
DEFAULT_CLIENTS_CONFIG = {
    "text_model_url": "https://openrouter.ai/api/v1/chat/completions",
    "text_model_name": "google/gemini-2.5-flash",
    "speech_url": "http://localhost:9000/v1/audio/transcriptions",
    "speech_model_name": "whisper-1",
    "request_timeout": 300,
    "language_code": "ja",
}


def get_clients_config() -> dict[str, Any]:
    """Get external client configuration with defaults.

    API keys are never stored in the config file; they come from
    ``VIDEO_CLIPPER_TEXT_MODEL_API_KEY`` and ``VIDEO_CLIPPER_SPEECH_API_KEY``.
    """
    config = load_config()
    clients = config.get("clients", {})
    merged = {**DEFAULT_CLIENTS_CONFIG, **clients}
    merged["text_model_api_key"] = os.environ.get("VIDEO_CLIPPER_TEXT_MODEL_API_KEY")
    merged["speech_api_key"] = os.environ.get("VIDEO_CLIPPER_SPEECH_API_KEY")
    return merged
