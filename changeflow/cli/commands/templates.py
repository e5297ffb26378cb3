"""changeflow templates command."""

import click
from rich.console import Console
from rich.table import Table

from changeflow.cli.utils import load_cli_config
from changeflow.core.exceptions import TemplateError
from changeflow.core.templates import BUILTIN_TEMPLATES, TEMPLATE_SUFFIXES, list_templates

console = Console()


@click.command()
@click.option("--phases", "-p", is_flag=True, help="Show the phases of each template")
@click.pass_context
def templates_command(ctx: click.Context, phases: bool) -> None:
    """List the change templates available to setup.

    Project templates in .changeflow/templates override built-ins of the
    same name.

    Examples:
        changeflow templates            # List templates
        changeflow templates --phases   # Include each template's phases
    """
    config = load_cli_config(ctx)
    templates_dir = config.get_templates_dir()

    try:
        templates = list_templates(templates_dir)
    except TemplateError as e:
        raise click.ClickException(str(e))

    table = Table(title="Change Templates")
    table.add_column("Name", style="cyan")
    table.add_column("Source", style="dim")
    table.add_column("Phases", justify="right")
    table.add_column("Estimate", justify="right")
    table.add_column("Description")

    for name, template in sorted(templates.items()):
        on_disk = any((templates_dir / f"{name}{suffix}").exists() for suffix in TEMPLATE_SUFFIXES)
        source = "project" if on_disk or name not in BUILTIN_TEMPLATES else "built-in"
        estimate = sum(p.estimated_minutes or 0 for p in template.phases)
        default = " (default)" if name == config.engine.default_template else ""
        table.add_row(
            f"{name}{default}",
            source,
            str(len(template.phases)),
            f"{estimate}m",
            template.description,
        )

    console.print(table)

    if phases:
        for name, template in sorted(templates.items()):
            console.print(f"\n[bold]{name}[/bold]")
            for number, phase in enumerate(template.phases, start=1):
                console.print(
                    f"  {number}. {phase.name} [dim]({phase.phase_id})[/dim] "
                    f"-> [cyan]{phase.agent.label()}[/cyan]"
                )
