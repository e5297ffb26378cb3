"""changeflow archive command."""

import click
from rich.console import Console

from changeflow.cli.utils import load_cli_config, open_logger, open_store
from changeflow.core.exceptions import ChangeflowError

console = Console()


@click.command()
@click.argument("change_id")
@click.pass_context
def archive_command(ctx: click.Context, change_id: str) -> None:
    """Move a finished change to the read-only archive.

    Only changes whose phases are all completed or skipped
    (status ready_to_archive) can be archived.

    Examples:
        changeflow archive login-page
    """
    config = load_cli_config(ctx)
    store = open_store(config)

    try:
        path = store.archive(change_id)
    except ChangeflowError as e:
        raise click.ClickException(str(e))

    open_logger(config).log_change_archived(change_id, str(path))
    console.print(f"[green]✓[/green] Change [bold]{change_id}[/bold] archived")
    console.print(f"[dim]Archive:[/dim] {path}")
