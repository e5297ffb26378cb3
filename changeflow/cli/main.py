"""Main CLI entry point for changeflow."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from changeflow import __version__
from changeflow.cli.commands.archive import archive_command
from changeflow.cli.commands.develop import develop_command
from changeflow.cli.commands.history import history_command
from changeflow.cli.commands.init import init_command
from changeflow.cli.commands.setup import setup_command
from changeflow.cli.commands.status import status_command
from changeflow.cli.commands.templates import templates_command
from changeflow.cli.commands.update import update_command
from changeflow.core.exceptions import ChangeflowError

console = Console()


@click.group()
@click.version_option(__version__, prog_name="changeflow")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: Optional[Path]) -> None:
    """changeflow: drive a change through specialist workers, phase by phase.

    A change is created from a template of ordered phases. Each phase is
    handed to one worker, several workers in parallel, or a human. Worker
    output is validated, failed attempts are retried with feedback, and
    anything that cannot be fixed automatically is escalated to you.

    \b
    Examples:
        changeflow init                          # Set up .changeflow/ here
        changeflow setup login-page              # Create a change
        changeflow develop login-page            # Run until a human is needed
        changeflow develop login-page --continue # Approve the human phase
        changeflow status login-page             # Show progress
        changeflow archive login-page            # Archive a finished change
    """
    ctx.ensure_object(dict)

    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config

    if verbose:
        console.print("[dim]changeflow starting with verbose output enabled[/dim]")


cli.add_command(init_command, name="init")
cli.add_command(update_command, name="update")
cli.add_command(templates_command, name="templates")
cli.add_command(setup_command, name="setup")
cli.add_command(develop_command, name="develop")
cli.add_command(status_command, name="status")
cli.add_command(history_command, name="history")
cli.add_command(archive_command, name="archive")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except ChangeflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            console.print_exception()
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
