"""``envforge fetch`` — download and verify an image without provisioning."""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from envforge.cli.commands._common import build_config, console
from envforge.core.verifier import FetchError, IntegrityError, IntegrityVerifier
from envforge.models.artifacts import ArtifactRef


def fetch_cmd(
    image_url: str = typer.Option(None, "--image-url", help="Root filesystem image URL."),
    image_digest: str = typer.Option(
        None, "--image-digest", help="Expected hex digest of the image."
    ),
    cache_dir: Path = typer.Option(None, "--cache-dir", help="Artifact cache directory."),
) -> None:
    """Fetch the image into the cache and check its digest."""
    config = build_config(cache_dir=cache_dir, image_url=image_url, image_digest=image_digest)
    try:
        ref = ArtifactRef(
            url=config.image_url,
            expected_digest=config.image_digest,
            algorithm=config.digest_algorithm,
        )
    except ValidationError as exc:
        console.print(f"[bold red]Invalid artifact:[/bold red] {exc}")
        raise typer.Exit(code=1)

    verifier = IntegrityVerifier(config.cache_dir, timeout=config.fetch_timeout_seconds)
    try:
        artifact = verifier.verify(ref)
    except IntegrityError as exc:
        console.print("[bold red]Integrity check failed[/bold red]")
        console.print(f"  expected: {exc.expected}")
        console.print(f"  actual:   {exc.actual}")
        console.print(f"  file kept at {exc.path}")
        raise typer.Exit(code=1)
    except FetchError as exc:
        console.print(f"[bold red]Fetch failed:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Verified[/green] {artifact.local_path} "
        f"({artifact.size_bytes} bytes, {artifact.algorithm}:{artifact.digest})"
    )
