"""changeflow status command."""

from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from changeflow.cli.utils import load_cli_config, open_store
from changeflow.core.change_state import ChangeState
from changeflow.core.phase_state import ChangeStatus, PhaseStatus
from changeflow.core.state_persistence import ChangeStateStore, StatePersistenceError

console = Console()

PHASE_STYLES = {
    PhaseStatus.PENDING: "dim",
    PhaseStatus.IN_PROGRESS: "yellow",
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.SKIPPED: "magenta",
    PhaseStatus.BLOCKED: "red",
}

CHANGE_STYLES = {
    ChangeStatus.ACTIVE: "blue",
    ChangeStatus.AWAITING_HUMAN: "cyan",
    ChangeStatus.BLOCKED: "red",
    ChangeStatus.READY_TO_ARCHIVE: "green",
    ChangeStatus.ARCHIVED: "dim",
}


@click.command()
@click.argument("change_id", required=False)
@click.option("--archived", "-a", is_flag=True, help="Include archived changes in the overview")
@click.pass_context
def status_command(ctx: click.Context, change_id: Optional[str], archived: bool) -> None:
    """Show the progress of one change, or an overview of all changes.

    Examples:
        changeflow status               # Overview of active changes
        changeflow status --archived    # Include archived changes
        changeflow status login-page    # Phase table for one change
    """
    config = load_cli_config(ctx)
    store = open_store(config)

    if change_id:
        state = store.load(change_id) or store.load_archived(change_id)
        if state is None:
            raise click.ClickException(
                f"No change named '{change_id}'. Run 'changeflow setup {change_id}' first."
            )
        _display_change(state)
    else:
        _display_overview(store, archived)


def _styled(value: str, style: str) -> str:
    return f"[{style}]{value}[/{style}]"


def _display_overview(store: ChangeStateStore, include_archived: bool) -> None:
    """One row per change."""
    change_ids = store.list_change_ids(include_archived=include_archived)
    if not change_ids:
        console.print("[yellow]No changes found[/yellow]")
        console.print("Create one with 'changeflow setup CHANGE_ID'")
        return

    table = Table(title="Changes")
    table.add_column("Change", style="cyan")
    table.add_column("Template")
    table.add_column("Status")
    table.add_column("Current phase")
    table.add_column("Progress", justify="right")

    for change_id in change_ids:
        try:
            state = store.load(change_id) or store.load_archived(change_id)
        except StatePersistenceError as e:
            table.add_row(change_id, "-", _styled("unreadable", "red"), str(e), "-")
            continue
        if state is None:
            continue
        table.add_row(
            state.change_id,
            state.template,
            _styled(state.status.value, CHANGE_STYLES[state.status]),
            state.current_phase or "-",
            f"{state.meta.progress_percentage:.1f}%",
        )

    console.print(table)


def _display_change(state: ChangeState) -> None:
    """Phase table plus totals for a single change."""
    meta = state.meta
    overview = (
        f"[bold]Template:[/bold] {state.template}\n"
        f"[bold]Status:[/bold] {_styled(state.status.value, CHANGE_STYLES[state.status])}\n"
        f"[bold]Current phase:[/bold] {state.current_phase or '-'}\n"
        f"[bold]Progress:[/bold] {meta.completed_phases} completed, "
        f"{meta.skipped_phases} skipped of {meta.total_phases} "
        f"({meta.progress_percentage:.1f}%)"
    )
    if state.description:
        overview = f"{state.description}\n\n{overview}"
    console.print(Panel(overview, title=f"Change {state.change_id}", border_style="blue"))

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Agent", style="cyan")
    table.add_column("Status")
    table.add_column("Estimate", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Retries", justify="right")

    for phase in state.ordered_phases():
        actual = f"{phase.actual_minutes:.1f}m" if phase.actual_minutes is not None else "-"
        marker = " ←" if phase.phase_id == state.current_phase else ""
        table.add_row(
            str(phase.number),
            f"{phase.name}{marker}",
            phase.agent.label(),
            _styled(phase.status.value, PHASE_STYLES[phase.status]),
            f"{phase.estimated_minutes}m",
            actual,
            str(phase.retry_count),
        )

    console.print(table)
    console.print(
        f"[dim]Estimated:[/dim] {meta.total_estimated_minutes}m  "
        f"[dim]Actual:[/dim] {meta.total_actual_minutes:.1f}m"
    )

    feedback = [p for p in state.ordered_phases() if p.feedback]
    for phase in feedback:
        console.print(f"[bold]Feedback on {phase.name}:[/bold] {phase.feedback}")
