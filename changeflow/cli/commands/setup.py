"""changeflow setup command."""

import re
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from changeflow.cli.utils import load_cli_config, open_logger, open_store
from changeflow.core.exceptions import ChangeflowError
from changeflow.orchestrator.driver import build_orchestrator

console = Console()

CHANGE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


@click.command()
@click.argument("change_id")
@click.option("--template", "-t", help="Template to build the change from")
@click.option("--description", "-d", default="", help="What the change should achieve")
@click.pass_context
def setup_command(
    ctx: click.Context, change_id: str, template: Optional[str], description: str
) -> None:
    """Create a new change from a template.

    All phases start pending. Run 'changeflow develop CHANGE_ID' to start
    working through them.

    Examples:
        changeflow setup login-page -d "Add a login page"
        changeflow setup billing-api --template backend-only
    """
    if not re.match(CHANGE_ID_PATTERN, change_id):
        raise click.ClickException(
            "Change ID may only contain letters, digits, '.', '_' and '-'"
        )

    config = load_cli_config(ctx)
    store = open_store(config)
    logger = open_logger(config)
    template_name = template or config.engine.default_template

    try:
        orchestrator = build_orchestrator(config, store=store, logger=logger)
        state = orchestrator.setup(change_id, template_name, description)
    except ChangeflowError as e:
        logger.log_error(str(e), change_id=change_id)
        raise click.ClickException(str(e))

    console.print(
        f"[green]✓[/green] Change [bold]{change_id}[/bold] created from "
        f"template [cyan]{template_name}[/cyan]"
    )

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Agent", style="cyan")
    table.add_column("Estimate", justify="right")
    for phase in state.ordered_phases():
        table.add_row(
            str(phase.number), phase.name, phase.agent.label(), f"{phase.estimated_minutes}m"
        )
    console.print(table)
    console.print(f"\n[dim]State file:[/dim] {store.state_file(change_id)}")
    console.print(f"Next: changeflow develop {change_id}")
