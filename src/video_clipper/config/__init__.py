"""Configuration module for video-clipper."""

from .settings import (
    PipelineConfig,
    ensure_dirs,
    get_asset_dir,
    get_cache_dir,
    get_cleanup_config,
    get_clients_config,
    get_config_dir,
    get_config_file,
    get_data_dir,
    get_log_level,
    get_origin_dir,
    get_pipeline_config,
    get_records_dir,
    get_work_dir,
    load_config,
    save_config,
)

__all__ = [
    "PipelineConfig",
    "ensure_dirs",
    "get_asset_dir",
    "get_cache_dir",
    "get_cleanup_config",
    "get_clients_config",
    "get_config_dir",
    "get_config_file",
    "get_data_dir",
    "get_log_level",
    "get_origin_dir",
    "get_pipeline_config",
    "get_records_dir",
    "get_work_dir",
    "load_config",
    "save_config",
]
