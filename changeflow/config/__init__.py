"""Configuration management for changeflow."""

from .loader import get_config_paths, load_config, save_config, validate_config_file
from .models import (
    ChangeflowConfig,
    EngineConfig,
    EscalationConfig,
    LoggingConfig,
    StorageConfig,
    ValidationConfig,
    WorkerConfig,
    parse_duration_seconds,
)

__all__ = [
    "ChangeflowConfig",
    "EngineConfig",
    "WorkerConfig",
    "ValidationConfig",
    "EscalationConfig",
    "StorageConfig",
    "LoggingConfig",
    "parse_duration_seconds",
    "load_config",
    "save_config",
    "validate_config_file",
    "get_config_paths",
]
