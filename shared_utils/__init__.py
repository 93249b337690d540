"""
Shared utilities for the productivity gap pipeline.

Logging setup and progress reporting, YAML configuration loading and
validation, and path helpers including atomic output replacement.
"""

from .logging_utils import (
    setup_logging, get_logger, format_duration, log_year_progress,
    log_pipeline_start, log_pipeline_end, log_section
)
from .config_utils import load_config, resolve_config, validate_config, get_config_value, save_config
from .path_utils import ensure_directory, validate_file_exists, atomic_output_path

__version__ = "1.0.0"

__all__ = [
    "setup_logging",
    "get_logger",
    "format_duration",
    "log_year_progress",
    "log_pipeline_start",
    "log_pipeline_end",
    "log_section",
    "load_config",
    "resolve_config",
    "validate_config",
    "get_config_value",
    "save_config",
    "ensure_directory",
    "validate_file_exists",
    "atomic_output_path"
]
