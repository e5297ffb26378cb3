"""changeflow develop command."""

import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel

from changeflow.cli.utils import load_cli_config, open_logger, open_store
from changeflow.core.exceptions import ChangeflowError
from changeflow.core.phase_state import PhaseStatus
from changeflow.orchestrator.driver import (
    ChangeOrchestrator,
    DevelopResult,
    DriverState,
    HumanSignal,
    build_orchestrator,
)
from changeflow.orchestrator.escalation import (
    ConsoleDecisionProvider,
    Decision,
    DeferredDecisionProvider,
    render_event,
)
from changeflow.tracking.activity_logger import cleanup_old_sessions

console = Console()


@click.command()
@click.argument("change_id")
@click.option("--continue", "proceed", is_flag=True, help="Approve the current human phase")
@click.option("--feedback", "-f", help="Approve the current human phase with feedback")
@click.option("--retry", is_flag=True, help="Retry a blocked phase with a fresh budget")
@click.option("--skip", is_flag=True, help="Skip a blocked phase")
@click.option("--abort", is_flag=True, help="Abort a blocked phase and reset it to pending")
@click.option("--max-steps", "-n", type=int, help="Stop after this many phase steps")
@click.option(
    "--defer",
    is_flag=True,
    help="Leave escalations open instead of prompting (overrides escalation.mode)",
)
@click.pass_context
def develop_command(
    ctx: click.Context,
    change_id: str,
    proceed: bool,
    feedback: Optional[str],
    retry: bool,
    skip: bool,
    abort: bool,
    max_steps: Optional[int],
    defer: bool,
) -> None:
    """Drive a change forward until it needs a human.

    Phases run in template order. Worker phases are retried with feedback
    when their output fails validation; a phase that keeps failing is
    escalated and waits for your decision. Human phases pause the run
    until you continue it.

    Examples:
        changeflow develop login-page                   # Run the next phases
        changeflow develop login-page --continue        # Approve a human phase
        changeflow develop login-page --feedback "..."  # Approve with feedback
        changeflow develop login-page --retry           # Retry a blocked phase
        changeflow develop login-page --skip            # Skip a blocked phase
    """
    options_count = sum([proceed, feedback is not None, retry, skip, abort])
    if options_count > 1:
        raise click.ClickException(
            "Use only one of --continue, --feedback, --retry, --skip and --abort"
        )
    if max_steps is not None and max_steps < 1:
        raise click.ClickException("--max-steps must be at least 1")

    human_signal: Optional[HumanSignal] = None
    if proceed:
        human_signal = HumanSignal.proceed()
    elif feedback is not None:
        human_signal = HumanSignal.approve(feedback)

    resolution: Optional[Decision] = None
    if retry:
        resolution = Decision.RETRY
    elif skip:
        resolution = Decision.SKIP
    elif abort:
        resolution = Decision.ABORT

    config = load_cli_config(ctx)
    store = open_store(config)
    logger = open_logger(config)
    cleanup_old_sessions(config.get_log_dir(), config.logging.retention_days)

    if defer or config.escalation.mode == "defer":
        provider = DeferredDecisionProvider()
    else:
        provider = ConsoleDecisionProvider(console)

    orchestrator = build_orchestrator(config, store=store, logger=logger, provider=provider)

    start_time = time.time()
    logger.log_session_start(str(Path.cwd()))
    try:
        _warn_unused_signals(orchestrator, change_id, human_signal, resolution)
        result = orchestrator.run(
            change_id,
            max_steps=max_steps,
            human_signal=human_signal,
            resolution=resolution,
        )
    except ChangeflowError as e:
        logger.log_error(str(e), change_id=change_id)
        console.print(f"[red]Failed to develop {change_id}:[/red] {e}")
        if ctx.obj and ctx.obj.get("verbose"):
            console.print_exception()
        raise click.ClickException(f"Develop failed: {e}")
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; the phase in flight was rolled back[/yellow]")
        raise
    finally:
        logger.log_session_end(int((time.time() - start_time) * 1000))

    _display_result(orchestrator, result)


def _warn_unused_signals(
    orchestrator: ChangeOrchestrator,
    change_id: str,
    human_signal: Optional[HumanSignal],
    resolution: Optional[Decision],
) -> None:
    """Point out flags that do not match the phase the change is waiting on."""
    if human_signal is None and resolution is None:
        return

    state = orchestrator.store.load(change_id)
    if state is None:
        return
    runnable = orchestrator.graph_for(state.template).next_runnable(state)

    if human_signal is not None and (runnable is None or not runnable.is_human):
        console.print("[yellow]No human phase is waiting; --continue/--feedback ignored[/yellow]")
    if resolution is not None and (runnable is None or not runnable.is_blocked):
        console.print(
            f"[yellow]No phase is blocked; --{resolution.value} ignored[/yellow]"
        )


def _display_result(orchestrator: ChangeOrchestrator, result: DevelopResult) -> None:
    """Print what the run settled and where it stopped."""
    for outcome in result.settled:
        if outcome.status == PhaseStatus.COMPLETED:
            detail = []
            if outcome.actual_minutes is not None:
                detail.append(f"{outcome.actual_minutes:.1f}m")
            if outcome.retry_count:
                detail.append(f"{outcome.retry_count} retries")
            suffix = f" [dim]({', '.join(detail)})[/dim]" if detail else ""
            console.print(f"[green]✓[/green] {outcome.phase_id} completed{suffix}")
            for artifact in outcome.artifacts:
                console.print(f"    [dim]{artifact}[/dim]")
        else:
            console.print(f"[yellow]↷[/yellow] {outcome.phase_id} {outcome.status.value}")

    meta = result.meta
    console.print(
        f"\n[bold]Progress:[/bold] {meta.completed_phases + meta.skipped_phases}/"
        f"{meta.total_phases} phases ({meta.progress_percentage:.1f}%)"
    )

    if result.outcome == DriverState.AWAITING_HUMAN:
        state = orchestrator.store.require(result.change_id)
        phase = orchestrator.graph_for(state.template).get(result.current_phase)
        body = f"[bold]{phase.name}[/bold]"
        if phase.instructions:
            body += f"\n\n{phase.instructions}"
        console.print(Panel(body, title="Your turn", border_style="cyan"))
        console.print(
            f"When done: changeflow develop {result.change_id} --continue "
            "(or --feedback \"...\")"
        )

    elif result.outcome == DriverState.BLOCKED:
        if result.escalation is not None:
            render_event(result.escalation, console)
        console.print(f"[yellow]{result.message}[/yellow]")
        console.print(
            f"Resolve with: changeflow develop {result.change_id} --retry | --skip | --abort"
        )

    elif result.outcome == DriverState.ABORTED:
        console.print(f"[yellow]{result.message}[/yellow]")

    elif result.outcome == DriverState.READY_TO_ARCHIVE:
        console.print(f"[green]✓ {result.message}[/green]")
        console.print(f"Next: changeflow archive {result.change_id}")

    else:
        console.print(f"[dim]{result.message}[/dim]")

    console.print(f"[dim]Duration:[/dim] {result.duration_seconds:.1f}s")
