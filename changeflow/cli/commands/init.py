"""changeflow init command."""

from pathlib import Path
from typing import Dict, List

import click
import yaml
from rich.console import Console

from changeflow.config.loader import PROJECT_DIR_NAME
from changeflow.core.templates import list_templates, template_to_yaml

console = Console()

GITIGNORE_CONTENT = """# changeflow generated files
logs/
*.tmp
*.escalation-pending.json
*.pre-dispatch.json
"""


@click.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Merge into an existing .changeflow directory without asking and reset config.yaml",
)
def init_command(force: bool) -> None:
    """Initialize changeflow in the current project.

    Creates a .changeflow directory with a default configuration and the
    built-in change templates. If the directory already exists the
    templates are merged into it: files with the same name are replaced,
    everything else is kept.

    Examples:
        changeflow init            # Initialize with default settings
        changeflow init --force    # Merge without prompting
    """
    project_root = Path.cwd()
    root_dir = project_root / PROJECT_DIR_NAME

    if root_dir.exists():
        console.print(f"[yellow]{PROJECT_DIR_NAME}/ already exists in {project_root}[/yellow]")
        console.print("[dim]Existing files will be preserved, template files will be merged.[/dim]")
        if not force and not click.confirm("Merge with template files?", default=False):
            console.print("[dim]Initialization cancelled.[/dim]")
            return

    try:
        root_dir.mkdir(exist_ok=True)
        (root_dir / "changes").mkdir(exist_ok=True)
        (root_dir / "archive").mkdir(exist_ok=True)
        (root_dir / "logs").mkdir(exist_ok=True)

        config_path = root_dir / "config.yaml"
        if not config_path.exists() or force:
            with open(config_path, "w", encoding="utf-8") as f:
                yaml.dump(
                    _get_default_config(), f, default_flow_style=False, sort_keys=False, indent=2
                )

        gitignore_path = root_dir / ".gitignore"
        if not gitignore_path.exists() or force:
            with open(gitignore_path, "w", encoding="utf-8") as f:
                f.write(GITIGNORE_CONTENT)

        written = _write_templates(root_dir / "templates")

        console.print(f"[green]✓[/green] changeflow initialized in {project_root}")
        console.print(f"[dim]Configuration:[/dim] {config_path}")
        console.print(f"[dim]Templates:[/dim] {', '.join(written)}")
        console.print("\n[bold]Next steps:[/bold]")
        console.print(f"1. Point the workers in {PROJECT_DIR_NAME}/config.yaml at your agents")
        console.print("2. Create a change: changeflow setup my-change --description '...'")
        console.print("3. Start it: changeflow develop my-change")

    except OSError as e:
        console.print(f"[red]Failed to initialize changeflow:[/red] {e}")
        raise click.ClickException(f"Initialization failed: {e}")


def _write_templates(templates_dir: Path) -> List[str]:
    """Write the built-in templates, replacing files of the same name."""
    templates_dir.mkdir(exist_ok=True)
    written = []
    for name, template in list_templates().items():
        (templates_dir / f"{name}.yaml").write_text(template_to_yaml(template), encoding="utf-8")
        written.append(name)
    return written


def _worker_ids() -> List[str]:
    ids: List[str] = []
    for template in list_templates().values():
        for phase in template.phases:
            for worker_id in phase.agent.worker_ids:
                if worker_id not in ids:
                    ids.append(worker_id)
    return ids


def _get_default_config() -> Dict:
    """Get default changeflow configuration."""
    return {
        "engine": {
            "max_retries": 2,
            "retry_delay": "5s",
            "backoff_factor": 2.0,
            "max_retry_delay": "60s",
            "worker_timeout": "10m",
            "max_parallel_workers": 4,
            "default_template": "full-stack",
        },
        "workers": {
            worker_id: {
                "command": "${CHANGEFLOW_WORKER_COMMAND:claude -p}",
                "working_dir": ".",
                "env": {"CHANGEFLOW_AGENT": worker_id},
            }
            for worker_id in _worker_ids()
        },
        "escalation": {"mode": "interactive"},
        "storage": {"root_dir": PROJECT_DIR_NAME},
        "logging": {
            "level": "INFO",
            "output_dir": f"{PROJECT_DIR_NAME}/logs",
            "retention_days": 30,
        },
    }
