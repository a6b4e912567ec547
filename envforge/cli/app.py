"""Main Typer application — imports and registers all CLI commands.

Entry point: ``envforge`` (configured via pyproject.toml console_scripts).

Exit code 0 means the environment reached ready (or the query succeeded);
any failure exits 1.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from envforge.cli.commands.fetch import fetch_cmd
from envforge.cli.commands.history import history_cmd
from envforge.cli.commands.install import install_cmd
from envforge.cli.commands.manage import list_cmd, remove_cmd
from envforge.cli.commands.update import update_cmd
from envforge.config import ProvisionConfig

app = typer.Typer(
    name="envforge",
    help="envforge: verified, staged provisioning of named Linux environments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def configure_logging(level: str) -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
        ],
        force=True,
    )


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (default: ENVFORGE_LOG_LEVEL or INFO)."
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or ProvisionConfig().log_level)


# Register subcommands
app.command(name="install", help="Install an environment through the full pipeline.")(install_cmd)
app.command(name="update", help="Re-run bootstrap and configuration on an environment.")(update_cmd)
app.command(name="remove", help="Tear down an environment.")(remove_cmd)
app.command(name="list", help="List registered environments.")(list_cmd)
app.command(name="history", help="Show the transition history of an environment.")(history_cmd)
app.command(name="fetch", help="Download and verify the root filesystem image.")(fetch_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
