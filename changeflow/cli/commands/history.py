"""changeflow history command - escalations and activity of one change."""

from typing import Any, Dict, List

import click
from rich.console import Console
from rich.table import Table

from changeflow.cli.utils import load_cli_config, open_store
from changeflow.tracking.activity_logger import find_change_events

console = Console()


@click.command()
@click.argument("change_id")
@click.option(
    "--limit",
    "-n",
    type=int,
    default=20,
    help="Maximum number of activity events to show (default: 20)",
)
@click.option("--transitions", "-t", is_flag=True, help="Also show every phase transition")
@click.pass_context
def history_command(ctx: click.Context, change_id: str, limit: int, transitions: bool) -> None:
    """Show the escalation log and recent activity of a change.

    Examples:
        changeflow history login-page          # Escalations and recent activity
        changeflow history login-page -n 100   # More activity
        changeflow history login-page -t       # Include phase transitions
    """
    config = load_cli_config(ctx)
    store = open_store(config)

    state = store.load(change_id) or store.load_archived(change_id)
    if state is None:
        raise click.ClickException(f"No change named '{change_id}'")

    escalations = store.read_escalations(change_id)
    pending = store.load_pending_escalation(change_id)
    if pending is not None:
        escalations.append(pending)
    _display_escalations(escalations)

    if transitions:
        table = Table(title="Phase transitions")
        table.add_column("Time", style="dim")
        table.add_column("Phase", style="cyan")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Reason")
        for transition in state.history:
            table.add_row(
                transition.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                transition.phase_id,
                transition.from_status.value,
                transition.to_status.value,
                transition.reason or "",
            )
        console.print(table)

    events = find_change_events(config.get_log_dir(), change_id, limit=limit)
    if not events:
        console.print("[dim]No activity recorded[/dim]")
        return

    table = Table(title=f"Recent activity ({len(events)})")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Event", style="cyan")
    table.add_column("Phase")
    table.add_column("Message", overflow="fold")
    for event in events:
        level_style = {"WARN": "yellow", "ERROR": "red"}.get(event.level, "white")
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            f"[{level_style}]{event.level}[/{level_style}]",
            event.event_type.value,
            event.phase_id or "-",
            event.message,
        )
    console.print(table)


def _display_escalations(escalations: List[Dict[str, Any]]) -> None:
    if not escalations:
        console.print("[green]No escalations[/green]")
        return

    table = Table(title=f"Escalations ({len(escalations)})")
    table.add_column("Event", style="cyan")
    table.add_column("Raised", style="dim")
    table.add_column("Phase")
    table.add_column("Cause")
    table.add_column("Attempts", justify="right")
    table.add_column("Decision")
    table.add_column("Suspected cause", overflow="fold")

    for record in escalations:
        decision = record.get("decision") or "[yellow]pending[/yellow]"
        table.add_row(
            record.get("event_id", "?"),
            str(record.get("raised_at", ""))[:19].replace("T", " "),
            record.get("phase_id", "?"),
            record.get("cause", "?"),
            str(len(record.get("invocations", []))),
            decision,
            record.get("suspected_cause", ""),
        )
    console.print(table)
