"""Helpers shared by the CLI commands."""

from pathlib import Path
from typing import Optional

import click

from changeflow.config import ChangeflowConfig, load_config
from changeflow.core.exceptions import ChangeflowError
from changeflow.core.state_persistence import ChangeStateStore
from changeflow.tracking.activity_logger import ActivityLogger, new_session_id


def load_cli_config(ctx: Optional[click.Context] = None) -> ChangeflowConfig:
    """Load configuration, honouring the global ``--config`` option.

    Raises:
        click.ClickException: If the configuration is invalid
    """
    config_path: Optional[Path] = None
    if ctx is not None and ctx.obj:
        config_path = ctx.obj.get("config")

    try:
        return load_config(config_path=config_path)
    except ChangeflowError as e:
        raise click.ClickException(str(e))


def require_initialized(config: ChangeflowConfig) -> Path:
    """Return the storage root, failing when ``changeflow init`` has not run."""
    root_dir = config.get_root_dir()
    if not root_dir.exists():
        raise click.ClickException(
            f"changeflow not initialized in {Path.cwd()}. Run 'changeflow init' first."
        )
    return root_dir


def open_store(config: ChangeflowConfig) -> ChangeStateStore:
    return ChangeStateStore(require_initialized(config))


def open_logger(config: ChangeflowConfig) -> ActivityLogger:
    """Start an activity log session for one command invocation."""
    return ActivityLogger(
        session_id=new_session_id(),
        logs_dir=config.get_log_dir(),
        level=config.logging.level,
    )
