"""Configuration models for changeflow."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from changeflow.core.validation_gate import ChecklistOverride
from changeflow.orchestrator.retry_strategy import RetryConfig

DURATION_PATTERN = r"^\d+[hms]$"


def parse_duration_seconds(value: str) -> float:
    """Convert '30s', '10m' or '2h' to seconds."""
    match = re.match(r"^(\d+)([hms])$", value.strip())
    if not match:
        raise ValueError(f"Invalid duration: {value}")
    amount, unit = int(match.group(1)), match.group(2)
    return float(amount * {"s": 1, "m": 60, "h": 3600}[unit])


def _validate_duration(v: str) -> str:
    if not re.match(DURATION_PATTERN, v):
        raise ValueError("Duration must be in format like '30s', '10m' or '2h'")
    return v


class EngineConfig(BaseModel):
    """Retry, timeout and concurrency settings."""

    max_retries: int = Field(default=2, description="Retries per worker after the first attempt")
    retry_delay: str = Field(default="5s", description="Base delay before a retry")
    backoff_factor: float = Field(default=2.0, description="Delay multiplier per retry")
    max_retry_delay: str = Field(default="60s", description="Longest delay between attempts")
    timeout_weight: float = Field(default=1.5, description="Budget units a timeout consumes")
    worker_timeout: str = Field(default="10m", description="Wall-clock limit per worker call")
    max_parallel_workers: int = Field(default=4, description="Fan-out concurrency limit")
    default_template: str = Field(default="full-stack", description="Template used by setup")

    @field_validator("retry_delay", "max_retry_delay", "worker_timeout")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        """Validate duration format."""
        return _validate_duration(v)

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        if v > 10:
            raise ValueError("max_retries cannot exceed 10")
        return v

    @field_validator("backoff_factor", "timeout_weight")
    @classmethod
    def validate_at_least_one(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("Value must be at least 1.0")
        return v

    @field_validator("max_parallel_workers")
    @classmethod
    def validate_parallel_workers(cls, v: int) -> int:
        """Validate parallel worker count."""
        if v < 1:
            raise ValueError("max_parallel_workers must be at least 1")
        if v > 16:
            raise ValueError("max_parallel_workers cannot exceed 16")
        return v

    def worker_timeout_seconds(self) -> float:
        return parse_duration_seconds(self.worker_timeout)

    def to_retry_config(self) -> RetryConfig:
        """Retry settings in the form the retry strategy takes."""
        return RetryConfig(
            max_retries=self.max_retries,
            retry_delay=parse_duration_seconds(self.retry_delay),
            backoff_factor=self.backoff_factor,
            max_retry_delay=parse_duration_seconds(self.max_retry_delay),
            timeout_weight=self.timeout_weight,
        )


class WorkerConfig(BaseModel):
    """A worker backed by an external command."""

    command: str = Field(..., description="Command that reads a request on stdin")
    working_dir: str = Field(default=".", description="Working directory")
    timeout: Optional[str] = Field(default=None, description="Overrides engine.worker_timeout")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Worker command cannot be empty")
        return v.strip()

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[str]) -> Optional[str]:
        """Validate timeout format."""
        return _validate_duration(v) if v is not None else v

    def timeout_seconds(self) -> Optional[float]:
        return parse_duration_seconds(self.timeout) if self.timeout else None


class ValidationConfig(BaseModel):
    """Checklist overrides keyed by worker type."""

    checklists: Dict[str, ChecklistOverride] = Field(default_factory=dict)


class EscalationConfig(BaseModel):
    """How escalations reach a human."""

    mode: str = Field(default="interactive", description="interactive or defer")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate escalation mode."""
        valid_modes = ["interactive", "defer"]
        if v not in valid_modes:
            raise ValueError(f"mode must be one of: {', '.join(valid_modes)}")
        return v


class StorageConfig(BaseModel):
    """Where change state lives."""

    root_dir: str = Field(default=".changeflow", description="Storage root directory")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    output_dir: str = Field(default=".changeflow/logs", description="Log output directory")
    retention_days: int = Field(default=30, description="Log retention in days")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARN", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("retention_days")
    @classmethod
    def validate_retention_days(cls, v: int) -> int:
        """Validate retention days."""
        if v < 1:
            raise ValueError("retention_days must be at least 1")
        if v > 365:
            raise ValueError("retention_days cannot exceed 365")
        return v


class ChangeflowConfig(BaseModel):
    """Main changeflow configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig, description="Engine settings")
    workers: Dict[str, WorkerConfig] = Field(
        default_factory=dict, description="Worker commands by worker id"
    )
    validation: ValidationConfig = Field(
        default_factory=ValidationConfig, description="Checklist overrides"
    )
    escalation: EscalationConfig = Field(
        default_factory=EscalationConfig, description="Escalation settings"
    )
    storage: StorageConfig = Field(default_factory=StorageConfig, description="Storage settings")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    def resolve_env_vars(self) -> "ChangeflowConfig":
        """Resolve environment variables in configuration values."""
        config_dict = self.model_dump(mode="json")
        resolved_dict = resolve_env_vars_recursive(config_dict)
        return ChangeflowConfig(**resolved_dict)

    def get_root_dir(self) -> Path:
        return Path(self.storage.root_dir).expanduser().resolve()

    def get_templates_dir(self) -> Path:
        return self.get_root_dir() / "templates"

    def get_log_dir(self) -> Path:
        """Get the log directory as a Path object."""
        return Path(self.logging.output_dir).expanduser().resolve()

    def get_worker_timeouts(self) -> Dict[str, float]:
        """Timeout per configured worker, falling back to the engine default."""
        default = self.engine.worker_timeout_seconds()
        return {
            worker_id: worker.timeout_seconds() or default
            for worker_id, worker in self.workers.items()
        }


def resolve_env_vars_recursive(obj: Any) -> Any:
    """Recursively resolve environment variables in configuration."""
    if isinstance(obj, dict):
        return {key: resolve_env_vars_recursive(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [resolve_env_vars_recursive(item) for item in obj]
    elif isinstance(obj, str):
        return _resolve_env_var_string(obj)
    else:
        return obj


def _resolve_env_var_string(value: str) -> str:
    """Resolve environment variables in a string."""
    # Pattern for ${VAR_NAME} or ${VAR_NAME:default_value}
    pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

    def replace_var(match):
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.getenv(var_name, default_value)

    return re.sub(pattern, replace_var, value)
