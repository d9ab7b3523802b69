"""Root CLI application for the market scanner."""

from __future__ import annotations

import logging

import typer

from marketscan.cli.scan_cmds import checkpoint_app, runs_app, universe_app
from marketscan.cli.scan_cmds import scan as scan_command

app = typer.Typer(
    name="marketscan",
    help="Resumable, concurrent daily market scanner",
    no_args_is_help=True,
)

app.command("scan")(scan_command)
app.add_typer(checkpoint_app, name="checkpoint")
app.add_typer(runs_app, name="runs")
app.add_typer(universe_app, name="universe")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Market scanner CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s | %(name)s | %(message)s",
    )


if __name__ == "__main__":
    app()
