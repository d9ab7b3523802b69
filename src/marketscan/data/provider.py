"""Collaborator protocols consumed by the scan engine."""

from __future__ import annotations

from datetime import date
from typing import Protocol

from marketscan.core.models import (
    BarDaily,
    FilterDecision,
    IndicatorSnapshot,
    RiskDecision,
    ScoredCandidate,
    ScoreResult,
    TickerScanResult,
    UniverseRecord,
)


class UniverseProvider(Protocol):
    def list_active(self, limit: int = 0) -> list[UniverseRecord]:
        """Return active universe records in stable order; ``limit <= 0`` means all."""
        ...


class BarStore(Protocol):
    """Daily bar cache. Upserts are idempotent on (ticker, trade_date)."""

    def load_recent(self, ticker: str, max_bars: int) -> list[BarDaily]:
        """Most recent ``max_bars`` bars, ascending by date."""
        ...

    def upsert_incremental(
        self,
        ticker: str,
        bars: list[BarDaily],
        source: str,
        initial_days: int = 300,
        recent_days: int = 10,
    ) -> int:
        """Persist the new tail of ``bars``. Returns the number of bars written."""
        ...


class PriceFetcher(Protocol):
    def fetch_history(self, ticker: str, range_: str = "2y", interval: str = "1d"):
        """Fetch daily bars. Returns a ``FetchResult``; never raises for transport errors."""
        ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class RunSink(Protocol):
    def start_run(self, mode: str, notes: str = "") -> int: ...

    def finish_run(
        self,
        run_id: int,
        status: str,
        universe_size: int,
        scanned: int,
        candidate_count: int,
        top_n: int,
        notes: str = "",
    ) -> None: ...

    def insert_candidates(self, run_id: int, candidates: list[ScoredCandidate]) -> None: ...


class ScanResultSink(Protocol):
    def insert_scan_results(self, run_id: int, results: list[TickerScanResult]) -> None: ...


# ── Pure decision collaborators ──────────────────────────────────────────────


class IndicatorEngine(Protocol):
    def compute(self, bars: list[BarDaily]) -> IndicatorSnapshot | None:
        """``None`` signals an unrecoverable computation failure."""
        ...


class CandidateFilter(Protocol):
    def evaluate(self, bars: list[BarDaily], indicators: IndicatorSnapshot) -> FilterDecision: ...


class RiskFilter(Protocol):
    def evaluate(self, indicators: IndicatorSnapshot) -> RiskDecision: ...


class Scorer(Protocol):
    def score(self, indicators: IndicatorSnapshot, risk: RiskDecision) -> ScoreResult: ...


class Clock(Protocol):
    def __call__(self) -> date: ...
