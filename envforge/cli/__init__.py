"""envforge CLI — Typer-based command-line interface.

Provides the ``envforge`` command with subcommands to install, update,
list, remove and inspect environments. All output uses Rich.
"""
