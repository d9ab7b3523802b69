"""Output formatters for the CLI - JSON and rich table output."""

from __future__ import annotations

import json
import sys
from typing import Any

from rich.console import Console
from rich.table import Table

from marketscan.core.models import ScoredCandidate

console = Console()


def output_json(data: Any, file=sys.stdout) -> None:
    """Write JSON output to stdout."""
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    elif isinstance(data, list) and data and hasattr(data[0], "model_dump"):
        data = [item.model_dump(mode="json") for item in data]
    print(json.dumps(data, indent=2, default=str), file=file)


def output_error(message: str, code: int = 1) -> None:
    """Write JSON error to stderr and exit."""
    output_json({"error": message, "code": code}, file=sys.stderr)
    raise SystemExit(code)


def print_candidates_table(candidates: list[ScoredCandidate], title: str = "Top Candidates") -> None:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Ticker", style="cyan")
    table.add_column("Name")
    table.add_column("Market")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Close", justify="right")

    for rank, c in enumerate(candidates, start=1):
        table.add_row(str(rank), c.ticker, c.name, c.market, f"{c.score:.1f}", f"{c.close:,.2f}")

    console.print(table)


def print_run_summary(outcome: dict[str, Any]) -> None:
    """Print a rich summary of a scan run outcome."""
    table = Table(title=f"Market Scan Run #{outcome['run_id']}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    status = str(outcome["status"])
    color = {"SUCCESS": "green", "PARTIAL": "yellow"}.get(status, "red")
    table.add_row("Status", f"[{color}]{status}[/{color}]")
    table.add_row("Universe", str(outcome["universe_size"]))
    table.add_row("Scanned", str(outcome["scanned"]))
    table.add_row("Failed", str(outcome["failed"]))
    table.add_row("Candidates", str(outcome["candidate_count"]))
    table.add_row(
        "Batch Progress", f"{outcome['next_segment_index']}/{outcome['segment_count']}"
    )
    table.add_row("Segments This Run", str(outcome.get("segments_this_run", 0)))
    table.add_row("Checkpoint", str(outcome.get("checkpoint_state", "")))

    console.print(table)


def print_histogram(title: str, counts: dict[str, int]) -> None:
    table = Table(title=title)
    table.add_column("Reason", style="cyan")
    table.add_column("Count", justify="right")
    for reason, count in counts.items():
        table.add_row(reason, str(count))
    console.print(table)


def print_key_values(title: str, data: dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)
