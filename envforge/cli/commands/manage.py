"""``envforge list`` and ``envforge remove`` — registry inspection and teardown."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from envforge.bridge.command_bridge import BridgeError
from envforge.bridge.control_plane import BackendError
from envforge.cli.commands._common import build_config, console, state_markup
from envforge.core.pipeline import ProvisioningPipeline
from envforge.core.registry import RegistryError


def list_cmd(
    registry: Path = typer.Option(None, "--registry", help="Path to the registry database."),
) -> None:
    """List registered environments and their lifecycle state."""
    pipeline = ProvisioningPipeline.from_config(build_config(registry))
    environments = pipeline.registry.list_environments()
    if not environments:
        console.print("[dim]No environments registered.[/dim]")
        return

    table = Table(title="Environments")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("User")
    table.add_column("Storage")
    table.add_column("Image digest")
    table.add_column("Updated")
    for env in environments:
        state = state_markup(env.state)
        if env.failed_stage is not None:
            state = f"{state} ({env.failed_stage.value})"
        table.add_row(
            env.name,
            state,
            env.default_user,
            str(env.storage_path),
            env.source_artifact_digest[:16],
            env.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def remove_cmd(
    name: str = typer.Option(..., "--name", "-n", help="Environment name."),
    registry: Path = typer.Option(None, "--registry", help="Path to the registry database."),
) -> None:
    """Tear down an environment on the backend and drop its record."""
    pipeline = ProvisioningPipeline.from_config(build_config(registry))
    try:
        pipeline.registry.remove(name)
    except (RegistryError, BridgeError, BackendError) as exc:
        console.print(f"[bold red]Cannot remove:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] {name}")
