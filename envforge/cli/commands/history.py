"""``envforge history`` — transition ledger entries for an environment."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from envforge.cli.commands._common import build_config, console
from envforge.core.ledger import LedgerIntegrityError, TransitionLedger


def history_cmd(
    name: str = typer.Option(..., "--name", "-n", help="Environment name."),
    run_id: str = typer.Option(None, "--run", "-r", help="Only show this run."),
    verify_chain: bool = typer.Option(
        False, "--verify-chain", "-V", help="Verify the hash chain of each run shown."
    ),
    registry: Path = typer.Option(None, "--registry", help="Path to the registry database."),
) -> None:
    """Show every recorded state transition for an environment."""
    config = build_config(registry)
    ledger = TransitionLedger(config.registry_path)

    if run_id:
        entries = [e for e in ledger.get_run_entries(run_id) if e.environment == name]
    else:
        entries = ledger.get_environment_entries(name)
    if not entries:
        console.print(f"[bold red]No history for[/bold red] {name}")
        raise typer.Exit(code=1)

    table = Table(title=f"History of {name}")
    table.add_column("Time (UTC)")
    table.add_column("Run", style="cyan")
    table.add_column("Stage")
    table.add_column("Transition")
    table.add_column("Exit", justify="right")
    table.add_column("Detail")
    for entry in entries:
        table.add_row(
            entry.timestamp_utc.strftime("%Y-%m-%d %H:%M:%S"),
            entry.run_id,
            entry.stage_id,
            entry.state_transition,
            "" if entry.exit_code is None else str(entry.exit_code),
            entry.detail,
        )
    console.print(table)

    if verify_chain:
        for rid in dict.fromkeys(e.run_id for e in entries):
            try:
                ledger.verify_chain(rid)
            except LedgerIntegrityError as exc:
                console.print(f"[bold red]Chain invalid for {rid}:[/bold red] {exc}")
                raise typer.Exit(code=1)
            console.print(f"[green]Chain valid[/green] {rid}")
