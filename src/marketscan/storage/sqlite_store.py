"""SQLite persistence for the universe, bar cache, checkpoints and runs."""

from __future__ import annotations

import math
import sqlite3
import threading
from datetime import date, datetime, timedelta
from pathlib import Path

from marketscan.core.enums import RunStatus
from marketscan.core.models import BarDaily, ScoredCandidate, TickerScanResult, UniverseRecord


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS universe (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticker TEXT NOT NULL UNIQUE,
    code TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL DEFAULT '',
    market TEXT NOT NULL DEFAULT '',
    active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bars_daily (
    ticker TEXT NOT NULL,
    trade_date TEXT NOT NULL,
    open REAL NOT NULL,
    high REAL NOT NULL,
    low REAL NOT NULL,
    close REAL NOT NULL,
    volume REAL NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT '',
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (ticker, trade_date)
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    universe_size INTEGER DEFAULT 0,
    scanned INTEGER DEFAULT 0,
    candidate_count INTEGER DEFAULT 0,
    top_n INTEGER DEFAULT 0,
    notes TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS candidates (
    run_id INTEGER NOT NULL REFERENCES runs(id),
    rank INTEGER NOT NULL,
    ticker TEXT NOT NULL,
    code TEXT,
    name TEXT,
    market TEXT,
    score REAL NOT NULL,
    close REAL,
    reasons_json TEXT,
    indicators_json TEXT,
    PRIMARY KEY (run_id, rank)
);

CREATE TABLE IF NOT EXISTS scan_results (
    run_id INTEGER NOT NULL REFERENCES runs(id),
    ticker TEXT NOT NULL,
    data_source TEXT,
    fallback_path TEXT,
    request_failed INTEGER DEFAULT 0,
    request_failure_category TEXT,
    failure_reason TEXT,
    data_insufficient_reason TEXT,
    bars_count INTEGER DEFAULT 0,
    last_trade_date TEXT,
    last_close REAL,
    fetch_latency_ms INTEGER DEFAULT 0,
    cache_hit INTEGER DEFAULT 0,
    indicator_ready INTEGER DEFAULT 0,
    missing_optional TEXT,
    error TEXT,
    PRIMARY KEY (run_id, ticker)
);
"""


class SqliteStore:
    """Single-connection SQLite store shared by all scan components.

    Worker threads upsert bars concurrently, so every statement runs under
    one lock on a connection opened with ``check_same_thread=False``.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Universe ─────────────────────────────────────────────────────────

    def upsert_universe(self, records: list[UniverseRecord], deactivate_missing: bool = True) -> int:
        """Insert or refresh records; optionally deactivate tickers not listed."""
        with self._lock:
            self._conn.executemany(
                "INSERT INTO universe (ticker, code, name, market, active) VALUES (?, ?, ?, ?, 1) "
                "ON CONFLICT(ticker) DO UPDATE SET code=excluded.code, name=excluded.name, "
                "market=excluded.market, active=1, updated_at=datetime('now')",
                [(r.ticker, r.code, r.name, r.market) for r in records],
            )
            if deactivate_missing:
                tickers = [r.ticker for r in records]
                placeholders = ",".join("?" * len(tickers)) or "''"
                self._conn.execute(
                    f"UPDATE universe SET active = 0 WHERE ticker NOT IN ({placeholders})",
                    tickers,
                )
            self._conn.commit()
        return len(records)

    def list_active(self, limit: int = 0) -> list[UniverseRecord]:
        sql = "SELECT ticker, code, name, market FROM universe WHERE active = 1 ORDER BY id"
        params: tuple = ()
        if limit > 0:
            sql += " LIMIT ?"
            params = (limit,)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [UniverseRecord(**dict(row)) for row in rows]

    # ── Bars ─────────────────────────────────────────────────────────────

    def load_recent(self, ticker: str, max_bars: int) -> list[BarDaily]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ticker, trade_date, open, high, low, close, volume FROM bars_daily "
                "WHERE ticker = ? ORDER BY trade_date DESC LIMIT ?",
                (ticker, max(1, max_bars)),
            ).fetchall()
        return [
            BarDaily(
                ticker=row["ticker"],
                trade_date=date.fromisoformat(row["trade_date"]),
                open=row["open"],
                high=row["high"],
                low=row["low"],
                close=row["close"],
                volume=row["volume"],
            )
            for row in reversed(rows)
        ]

    def latest_trade_date(self, ticker: str) -> date | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(trade_date) AS d FROM bars_daily WHERE ticker = ?", (ticker,)
            ).fetchone()
        return date.fromisoformat(row["d"]) if row and row["d"] else None

    def upsert_incremental(
        self,
        ticker: str,
        bars: list[BarDaily],
        source: str,
        initial_days: int = 300,
        recent_days: int = 10,
    ) -> int:
        """Write only the tail of ``bars`` the cache does not already hold.

        First write keeps the last ``max(60, initial_days)`` bars. Later
        writes start at the earlier of the day after the cached latest bar
        and ``recent_days`` before the newest incoming bar, so recent
        revisions are overwritten.
        """
        if not bars:
            return 0
        bars = sorted(bars, key=lambda b: b.trade_date)
        latest = self.latest_trade_date(ticker)
        if latest is None:
            target = bars[-max(60, initial_days) :]
        else:
            anchor = bars[-1].trade_date
            cutoff = min(latest + timedelta(days=1), anchor - timedelta(days=max(1, recent_days)))
            target = [b for b in bars if b.trade_date >= cutoff]
        if not target:
            return 0

        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO bars_daily "
                "(ticker, trade_date, open, high, low, close, volume, source, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))",
                [
                    (ticker, b.trade_date.isoformat(), b.open, b.high, b.low, b.close, b.volume, source)
                    for b in target
                ],
            )
            self._conn.commit()
        return len(target)

    # ── Metadata (key/value) ─────────────────────────────────────────────

    def get(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value, updated_at) "
                "VALUES (?, ?, datetime('now'))",
                (key, value),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM metadata WHERE key = ?", (key,))
            self._conn.commit()

    # ── Runs & candidates ────────────────────────────────────────────────

    def start_run(self, mode: str, notes: str = "") -> int:
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO runs (mode, status, started_at, notes) VALUES (?, ?, ?, ?)",
                (mode, RunStatus.RUNNING.value, datetime.now().isoformat(timespec="seconds"), notes),
            )
            self._conn.commit()
        return int(cur.lastrowid)

    def finish_run(
        self,
        run_id: int,
        status: str,
        universe_size: int,
        scanned: int,
        candidate_count: int,
        top_n: int,
        notes: str = "",
    ) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE runs SET status = ?, finished_at = ?, universe_size = ?, scanned = ?, "
                "candidate_count = ?, top_n = ?, notes = ? WHERE id = ?",
                (
                    status,
                    datetime.now().isoformat(timespec="seconds"),
                    universe_size,
                    scanned,
                    candidate_count,
                    top_n,
                    notes,
                    run_id,
                ),
            )
            self._conn.commit()

    def get_run(self, run_id: int) -> dict | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row else None

    def insert_candidates(self, run_id: int, candidates: list[ScoredCandidate]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO candidates "
                "(run_id, rank, ticker, code, name, market, score, close, reasons_json, "
                "indicators_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        run_id,
                        rank,
                        c.ticker,
                        c.code,
                        c.name,
                        c.market,
                        c.score,
                        c.close,
                        c.reasons_json,
                        c.indicators_json,
                    )
                    for rank, c in enumerate(candidates, start=1)
                ],
            )
            self._conn.commit()

    def list_candidates(self, run_id: int) -> list[ScoredCandidate]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ticker, code, name, market, score, close, reasons_json, indicators_json "
                "FROM candidates WHERE run_id = ? ORDER BY rank",
                (run_id,),
            ).fetchall()
        return [
            ScoredCandidate(**{k: v for k, v in dict(row).items() if v is not None}) for row in rows
        ]

    # ── Scan results ─────────────────────────────────────────────────────

    def insert_scan_results(self, run_id: int, results: list[TickerScanResult]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO scan_results "
                "(run_id, ticker, data_source, fallback_path, request_failed, "
                "request_failure_category, failure_reason, data_insufficient_reason, bars_count, "
                "last_trade_date, last_close, fetch_latency_ms, cache_hit, indicator_ready, "
                "missing_optional, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        run_id,
                        r.ticker,
                        r.data_source.value,
                        r.fallback_path,
                        int(r.request_failed),
                        r.request_failure_category,
                        r.failure_reason.value,
                        r.data_insufficient_reason.value,
                        r.bars_count,
                        r.last_trade_date.isoformat() if r.last_trade_date else None,
                        None if math.isnan(r.last_close) else r.last_close,
                        r.fetch_latency_ms,
                        int(r.cache_hit),
                        int(r.indicator_ready),
                        ",".join(r.missing_optional_indicators),
                        r.error or r.upsert_error,
                    )
                    for r in results
                ],
            )
            self._conn.commit()

    def failure_histogram(self, run_id: int) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT failure_reason, COUNT(*) AS n FROM scan_results "
                "WHERE run_id = ? GROUP BY failure_reason ORDER BY failure_reason",
                (run_id,),
            ).fetchall()
        return {row["failure_reason"]: row["n"] for row in rows}