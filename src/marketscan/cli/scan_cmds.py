"""CLI commands for running scans and inspecting checkpoints, runs and the universe."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer

from marketscan.cli.formatters import (
    console,
    output_error,
    output_json,
    print_candidates_table,
    print_histogram,
    print_key_values,
    print_run_summary,
)
from marketscan.config import ScanConfig
from marketscan.engine.checkpoint import CheckpointManager
from marketscan.engine.orchestrator import EmptyUniverseError, build_orchestrator
from marketscan.storage.sqlite_store import SqliteStore

checkpoint_app = typer.Typer(name="checkpoint", help="Inspect or clear the batch checkpoint")
runs_app = typer.Typer(name="runs", help="Inspect recorded scan runs")
universe_app = typer.Typer(name="universe", help="Manage the scan universe")

DbOption = Annotated[
    Optional[Path], typer.Option("--db", help="SQLite database path (overrides config)")
]
OutputOption = Annotated[Optional[str], typer.Option("--output", help="Output format (json)")]


def _load(db: Path | None) -> tuple[ScanConfig, SqliteStore]:
    config = ScanConfig(db_path=db) if db else ScanConfig()
    return config, SqliteStore(config.db_path)


def scan(
    top_n: Annotated[
        Optional[int], typer.Option("--top-n", "-n", help="Override the number of top candidates")
    ] = None,
    reset: Annotated[
        bool, typer.Option("--reset", help="Discard any checkpoint and start from segment 1")
    ] = False,
    max_segments: Annotated[
        Optional[int],
        typer.Option("--max-segments", help="Segment budget for this run (0 = all remaining)"),
    ] = None,
    db: DbOption = None,
    output: OutputOption = None,
) -> None:
    """Scan the active universe, resuming from the last checkpoint."""
    config, store = _load(db)
    orchestrator = build_orchestrator(config, store)
    try:
        outcome = orchestrator.run(
            top_n_override=top_n, reset_checkpoint=reset, max_segments=max_segments
        )
    except EmptyUniverseError as e:
        output_error(str(e))
    except KeyboardInterrupt:
        orchestrator.interrupt()
        output_error("Scan interrupted", code=130)
    finally:
        store.close()

    if output == "json":
        output_json(outcome)
    else:
        print_run_summary(outcome.model_dump(mode="json"))
        if outcome.top_candidates:
            print_candidates_table(outcome.top_candidates)
        else:
            console.print("[yellow]No candidates met the minimum score.[/yellow]")
        if outcome.partial:
            console.print(
                f"[yellow]Partial run: resume with `marketscan scan` to continue from segment "
                f"{outcome.next_segment_index + 1}/{outcome.segment_count}.[/yellow]"
            )

    if outcome.interrupted:
        if output != "json":
            console.print("[yellow]Scan interrupted; progress up to the last segment is saved.[/yellow]")
        raise typer.Exit(code=130)


@checkpoint_app.command("show")
def checkpoint_show(db: DbOption = None, output: OutputOption = None) -> None:
    """Show the stored batch checkpoint, if any."""
    config, store = _load(db)
    try:
        checkpoint = CheckpointManager(store, config.checkpoint_key).peek()
    finally:
        store.close()

    if checkpoint is None:
        if output == "json":
            output_json({"checkpoint": None})
        else:
            console.print("No checkpoint stored.")
        return

    if output == "json":
        output_json(checkpoint)
        return
    print_key_values(
        f"Checkpoint {config.checkpoint_key}",
        {
            "universe_signature": checkpoint.universe_signature,
            "progress": f"{checkpoint.next_segment_index}/{checkpoint.segment_count}",
            "scanned": checkpoint.scanned,
            "failed": checkpoint.failed,
            "candidates": checkpoint.candidate_count,
            "top_n": checkpoint.top_n,
        },
    )


@checkpoint_app.command("clear")
def checkpoint_clear(db: DbOption = None) -> None:
    """Delete the batch checkpoint so the next scan starts from segment 1."""
    config, store = _load(db)
    try:
        CheckpointManager(store, config.checkpoint_key, config.resume_enabled).reset()
    finally:
        store.close()
    console.print(f"Batch checkpoint cleared. key={config.checkpoint_key}")


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run id")],
    db: DbOption = None,
    output: OutputOption = None,
) -> None:
    """Show a run with its candidates and failure histogram."""
    _, store = _load(db)
    try:
        run = store.get_run(run_id)
        if run is None:
            output_error(f"Run not found: {run_id}")
        candidates = store.list_candidates(run_id)
        histogram = store.failure_histogram(run_id)
    finally:
        store.close()

    if output == "json":
        output_json(
            {
                "run": run,
                "candidates": [c.model_dump() for c in candidates],
                "failure_histogram": histogram,
            }
        )
        return
    print_key_values(f"Run #{run_id}", run)
    if candidates:
        print_candidates_table(candidates)
    if histogram:
        print_histogram("Scan Outcomes", histogram)


@universe_app.command("import")
def universe_import(
    csv_path: Annotated[Path, typer.Argument(help="CSV with ticker,code,name,market columns")],
    keep_missing: Annotated[
        bool, typer.Option("--keep-missing", help="Do not deactivate tickers absent from the file")
    ] = False,
    db: DbOption = None,
) -> None:
    """Load universe records from a CSV file."""
    import pandas as pd

    from marketscan.core.models import UniverseRecord

    if not csv_path.exists():
        output_error(f"File not found: {csv_path}")

    df = pd.read_csv(csv_path, dtype=str).fillna("")
    df.columns = [c.strip().lower() for c in df.columns]
    if "ticker" not in df.columns:
        output_error("CSV must have a 'ticker' column")

    records = [
        UniverseRecord(
            ticker=row["ticker"].strip(),
            code=row.get("code", "").strip(),
            name=row.get("name", "").strip(),
            market=row.get("market", "").strip(),
        )
        for row in df.to_dict(orient="records")
        if row["ticker"].strip()
    ]

    _, store = _load(db)
    try:
        count = store.upsert_universe(records, deactivate_missing=not keep_missing)
        active = len(store.list_active())
    finally:
        store.close()
    console.print(f"Imported {count} universe records ({active} active).")
