"""``envforge update`` — re-run bootstrap and configuration without reimport."""

from __future__ import annotations

from pathlib import Path

import typer

from envforge.cli.commands._common import build_config, console, render_outcome
from envforge.core.pipeline import ProvisioningPipeline
from envforge.core.registry import RegistryError


def update_cmd(
    name: str = typer.Option(..., "--name", "-n", help="Environment name."),
    user: str = typer.Option(..., "--user", "-u", help="Default user configured in the guest."),
    registry: Path = typer.Option(None, "--registry", help="Path to the registry database."),
) -> None:
    """Re-provision an existing environment, starting at bootstrapping."""
    pipeline = ProvisioningPipeline.from_config(build_config(registry))
    try:
        outcome = pipeline.update(name, user)
    except (RegistryError, ValueError) as exc:
        console.print(f"[bold red]Cannot update:[/bold red] {exc}")
        raise typer.Exit(code=1)

    render_outcome(outcome)
    if not outcome.ok:
        raise typer.Exit(code=1)
