"""changeflow update command."""

from pathlib import Path

import click
from rich.console import Console

from changeflow.cli.commands.init import _write_templates
from changeflow.config.loader import PROJECT_DIR_NAME

console = Console()


@click.command()
def update_command() -> None:
    """Refresh the built-in templates of an initialized project.

    Template files that ship with changeflow are rewritten; project
    templates with other names, config.yaml and all change state are left
    alone.

    Examples:
        changeflow update
    """
    project_root = Path.cwd()
    root_dir = project_root / PROJECT_DIR_NAME

    if not root_dir.is_dir():
        raise click.ClickException(
            f"{PROJECT_DIR_NAME}/ not found in {project_root}. Run 'changeflow init' first."
        )

    try:
        written = _write_templates(root_dir / "templates")
    except OSError as e:
        raise click.ClickException(f"Update failed: {e}")

    console.print(f"[green]✓[/green] Templates updated in {root_dir / 'templates'}")
    console.print(f"[dim]Templates:[/dim] {', '.join(written)}")
