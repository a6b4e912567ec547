"""``envforge install`` — full pipeline from a verified root filesystem image.

An existing environment with the same name is torn down after the new image
has been verified, then recreated.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from envforge.cli.commands._common import build_config, console, render_outcome
from envforge.core.pipeline import ProvisioningPipeline


def install_cmd(
    name: str = typer.Option(..., "--name", "-n", help="Environment name."),
    user: str = typer.Option(..., "--user", "-u", help="Default user configured in the guest."),
    storage: Path = typer.Option(
        None, "--storage", "-s", help="Backing storage directory (default: storage root / name)."
    ),
    image_url: str = typer.Option(None, "--image-url", help="Root filesystem image URL."),
    image_digest: str = typer.Option(
        None, "--image-digest", help="Expected hex digest of the image."
    ),
    registry: Path = typer.Option(None, "--registry", help="Path to the registry database."),
    cache_dir: Path = typer.Option(None, "--cache-dir", help="Artifact cache directory."),
) -> None:
    """Install (or replace) an environment and provision it to ready."""
    try:
        config = build_config(
            registry, cache_dir, image_url=image_url, image_digest=image_digest
        )
        pipeline = ProvisioningPipeline.from_config(config)
        artifact = pipeline.default_artifact()
    except (ValidationError, ValueError) as exc:
        console.print(f"[bold red]Invalid configuration:[/bold red] {exc}")
        raise typer.Exit(code=1)

    try:
        outcome = pipeline.install(name, user, storage_path=storage, artifact=artifact)
    except ValueError as exc:
        console.print(f"[bold red]Invalid request:[/bold red] {exc}")
        raise typer.Exit(code=1)

    render_outcome(outcome)
    if not outcome.ok:
        raise typer.Exit(code=1)
