"""Shared helpers for CLI commands — config overrides and outcome rendering."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from envforge.config import ProvisionConfig
from envforge.models.environments import EnvironmentState, ProvisionOutcome

console = Console()

STATE_STYLES: dict[EnvironmentState, str] = {
    EnvironmentState.READY: "bold green",
    EnvironmentState.FAILED: "bold red",
    EnvironmentState.REQUESTED: "dim",
}


def state_markup(state: EnvironmentState) -> str:
    style = STATE_STYLES.get(state, "yellow")
    return f"[{style}]{state.value}[/{style}]"


def build_config(
    registry: Path | None = None,
    cache_dir: Path | None = None,
    **overrides: Any,
) -> ProvisionConfig:
    """Build a ``ProvisionConfig``; explicit CLI values win over ENVFORGE_*."""
    values = {k: v for k, v in overrides.items() if v is not None}
    if registry is not None:
        values["registry_path"] = registry
    if cache_dir is not None:
        values["cache_dir"] = cache_dir
    return ProvisionConfig(**values)


def render_outcome(outcome: ProvisionOutcome) -> None:
    """Print the stage table and a result panel for a finished run."""
    table = Table(title=f"Run {outcome.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Result", justify="center")
    table.add_column("Exit", justify="right")
    table.add_column("Message")
    for result in outcome.stage_results:
        mark = "[green]OK[/green]" if result.success else "[bold red]FAILED[/bold red]"
        exit_code = "" if result.exit_code is None else str(result.exit_code)
        table.add_row(result.stage_id, mark, exit_code, result.message)
    console.print(table)

    if outcome.ok:
        console.print(
            Panel(
                f"[bold green]{outcome.name} is ready.[/bold green]",
                border_style="green",
            )
        )
        return

    stage = outcome.failed_stage.value if outcome.failed_stage else "unknown"
    lines = [
        f"[bold red]{outcome.name} failed.[/bold red]",
        "",
        f"[bold]Stage:[/bold]     {stage}",
        f"[bold]Exit code:[/bold] {'' if outcome.exit_code is None else outcome.exit_code}",
        f"[bold]Reason:[/bold]    {outcome.message}",
    ]
    console.print(Panel("\n".join(lines), border_style="red"))
