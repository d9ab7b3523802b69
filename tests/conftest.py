"""Shared test fixtures."""

from __future__ import annotations

import logging
import threading
import time
from datetime import date, timedelta

import pandas as pd
import pytest

from marketscan.config import ScanConfig
from marketscan.core.enums import RequestFailureCategory
from marketscan.core.models import (
    BarDaily,
    FilterDecision,
    IndicatorSnapshot,
    RiskDecision,
    ScoredCandidate,
    ScoreResult,
    UniverseRecord,
)
from marketscan.data.fetcher import FetchResult, RetryingFetcher
from marketscan.engine.fetch import TieredFetchStrategy
from marketscan.engine.pipeline import TickerPipeline
from marketscan.engine.worker import ScanWorkerPool

# A Friday.
TODAY = date(2026, 10, 16)


# ---------------------------------------------------------------------------
# Bar / candidate builders
# ---------------------------------------------------------------------------


def build_bars(
    ticker: str = "7203.T",
    n: int = 200,
    end: date = TODAY,
    last_close: float = 1000.0,
    step: float = 1.0,
    volume: float = 100_000.0,
) -> list[BarDaily]:
    """Ascending business-day bars ending at ``end`` and closing at ``last_close``."""
    dates = pd.bdate_range(end=end, periods=n)
    bars = []
    for i, ts in enumerate(dates):
        close = last_close - step * (n - 1 - i)
        bars.append(
            BarDaily(
                ticker=ticker,
                trade_date=ts.date(),
                open=close - 0.5,
                high=close + 1.0,
                low=close - 1.0,
                close=close,
                volume=volume,
            )
        )
    return bars


def build_candidate(ticker: str, score: float, market: str = "PRIME") -> ScoredCandidate:
    return ScoredCandidate(ticker=ticker, code=ticker.split(".")[0], market=market, score=score)


@pytest.fixture
def make_bars():
    return build_bars


@pytest.fixture
def make_candidate():
    return build_candidate


@pytest.fixture
def today() -> date:
    return TODAY


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class MemoryStore:
    """Universe, bar cache, key/value and run sink kept in dicts."""

    def __init__(self, universe: list[UniverseRecord] | None = None):
        self.universe = list(universe or [])
        self.bars: dict[str, list[BarDaily]] = {}
        self.kv: dict[str, str] = {}
        self.runs: dict[int, dict] = {}
        self.candidates: dict[int, list[ScoredCandidate]] = {}
        self.scan_rows: dict[int, list] = {}
        self.upsert_calls: list[str] = []
        self.fail_upsert_for: set[str] = set()
        self._lock = threading.Lock()

    def list_active(self, limit: int = 0) -> list[UniverseRecord]:
        return self.universe[:limit] if limit > 0 else list(self.universe)

    def load_recent(self, ticker: str, max_bars: int) -> list[BarDaily]:
        return list(self.bars.get(ticker, []))[-max_bars:]

    def upsert_incremental(self, ticker, bars, source, initial_days=300, recent_days=10) -> int:
        with self._lock:
            self.upsert_calls.append(ticker)
            if ticker in self.fail_upsert_for:
                raise RuntimeError("disk full")
            merged = {b.trade_date: b for b in self.bars.get(ticker, [])}
            merged.update({b.trade_date: b for b in bars})
            self.bars[ticker] = [merged[d] for d in sorted(merged)]
        return len(bars)

    def get(self, key):
        return self.kv.get(key)

    def put(self, key, value):
        self.kv[key] = value

    def delete(self, key):
        self.kv.pop(key, None)

    def start_run(self, mode, notes=""):
        run_id = len(self.runs) + 1
        self.runs[run_id] = {"mode": mode, "status": "RUNNING", "notes": notes}
        return run_id

    def finish_run(self, run_id, status, universe_size, scanned, candidate_count, top_n, notes=""):
        self.runs[run_id].update(
            status=status,
            universe_size=universe_size,
            scanned=scanned,
            candidate_count=candidate_count,
            top_n=top_n,
            notes=notes,
        )

    def insert_candidates(self, run_id, candidates):
        self.candidates[run_id] = list(candidates)

    def insert_scan_results(self, run_id, results):
        self.scan_rows.setdefault(run_id, []).extend(results)


class ScriptedFetcher:
    """Price fetcher answering from a per-symbol script.

    Each symbol maps to a list of ``FetchResult``; calls consume the list in
    order and the last entry repeats. Unknown symbols return ``no_data``.
    """

    def __init__(self, script: dict[str, list[FetchResult]] | None = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch_history(self, ticker, range_="2y", interval="1d") -> FetchResult:
        with self._lock:
            self.calls.append(ticker)
            queue = self.script.get(ticker)
            if not queue:
                return FetchResult.failure(RequestFailureCategory.NO_DATA, f"no data for {ticker}")
            return queue.pop(0) if len(queue) > 1 else queue[0]

    def call_count(self, ticker: str) -> int:
        return self.calls.count(ticker)


class StubIndicatorEngine:
    """Every known indicator present; ``missing`` names are left out."""

    def __init__(self, missing: tuple[str, ...] = (), fail: bool = False):
        self.missing = set(missing)
        self.fail = fail

    def compute(self, bars):
        if self.fail:
            return None
        names = ["sma20", "sma60", "rsi14", "atr14", "sma120", "volume_ratio20", "drawdown120_pct"]
        values = {n: 1.0 for n in names if n not in self.missing}
        return IndicatorSnapshot(last_close=bars[-1].close, values=values)


class PassFilter:
    def __init__(self, passed: bool = True):
        self.passed = passed

    def evaluate(self, bars, indicators):
        return FilterDecision(passed=self.passed, reasons=["stub"])


class PassRisk:
    def __init__(self, passed: bool = True):
        self.passed = passed

    def evaluate(self, indicators):
        return RiskDecision(passed=self.passed)


class CloseScorer:
    """Score = last close / 10, so bars ending at 700 score 70."""

    def score(self, indicators, risk):
        return ScoreResult(score=indicators.last_close / 10.0)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def make_store():
    return MemoryStore


@pytest.fixture
def scan_config(tmp_path) -> ScanConfig:
    return ScanConfig(
        _env_file=None,
        db_path=tmp_path / "scan.db",
        threads=2,
        retry_count=0,
        retry_backoff_sec=0.0,
        progress_log_every=0,
    )


@pytest.fixture
def build_strategy():
    """Factory for a tiered fetch strategy over a scripted fetcher; returns (strategy, fetcher)."""

    def _build(store: MemoryStore, config: ScanConfig, script=None, clock=lambda: TODAY):
        fetcher = ScriptedFetcher(script)
        retrying = RetryingFetcher(fetcher, retry_count=config.retry_count, backoff_sec=0.0)
        return TieredFetchStrategy(store, retrying, config, clock), fetcher

    return _build


@pytest.fixture
def build_pipeline(build_strategy):
    """Factory for a ticker pipeline with stub collaborators; returns (pipeline, fetcher)."""

    def _build(
        store: MemoryStore,
        config: ScanConfig,
        script=None,
        engine=None,
        candidate_filter=None,
        risk=None,
        scorer=None,
    ):
        strategy, fetcher = build_strategy(store, config, script)
        pipeline = TickerPipeline(
            fetch_strategy=strategy,
            indicator_engine=engine or StubIndicatorEngine(),
            candidate_filter=candidate_filter or PassFilter(),
            risk_filter=risk or PassRisk(),
            scorer=scorer or CloseScorer(),
            config=config,
            clock=lambda: TODAY,
        )
        return pipeline, fetcher

    return _build


@pytest.fixture
def stubs():
    """Stub collaborator classes for pipeline tests."""

    class _Stubs:
        IndicatorEngine = StubIndicatorEngine
        Filter = PassFilter
        Risk = PassRisk
        Scorer = CloseScorer

    return _Stubs


@pytest.fixture
def build_pool():
    """Factory wiring a worker pool around fakes; returns (pool, fetcher).

    The retrying fetcher and the pool share one stop event, as in production.
    """

    def _build(
        store: MemoryStore,
        config: ScanConfig,
        script: dict[str, list[FetchResult]] | None = None,
        engine=None,
        candidate_filter=None,
        risk=None,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ):
        stop_event = stop_event or threading.Event()
        fetcher = ScriptedFetcher(script)
        retrying = RetryingFetcher(
            fetcher,
            retry_count=config.retry_count,
            backoff_sec=config.retry_backoff_sec,
            backoff_max_sec=config.retry_backoff_max_sec,
            timeout_streak=config.circuit_timeout_streak,
            cooldown_sec=config.circuit_cooldown_sec,
            stop_event=stop_event,
        )
        clock = lambda: TODAY  # noqa: E731
        pipeline = TickerPipeline(
            fetch_strategy=TieredFetchStrategy(store, retrying, config, clock),
            indicator_engine=engine or StubIndicatorEngine(),
            candidate_filter=candidate_filter or PassFilter(),
            risk_filter=risk or PassRisk(),
            scorer=CloseScorer(),
            config=config,
            clock=clock,
        )
        pool = ScanWorkerPool(
            pipeline, store, config, result_sink=store, logger=logger, stop_event=stop_event
        )
        return pool, fetcher

    return _build


class InterruptingLogger(logging.Logger):
    """Logger that raises ``KeyboardInterrupt`` on the first info line with ``prefix``.

    Stands in for Ctrl-C arriving on the draining thread; ``raised_at`` is
    the ``time.monotonic()`` of the raise.
    """

    def __init__(self, prefix: str):
        super().__init__("marketscan.tests.interrupting")
        self.prefix = prefix
        self.raised_at: float | None = None

    def info(self, msg, *args, **kwargs):
        if self.raised_at is None and str(msg).startswith(self.prefix):
            self.raised_at = time.monotonic()
            raise KeyboardInterrupt
        super().info(msg, *args, **kwargs)


@pytest.fixture
def interrupting_logger():
    return InterruptingLogger


@pytest.fixture
def live_ok():
    """``FetchResult`` success builder for a ticker."""

    def _ok(ticker: str, last_close: float = 1000.0, n: int = 200, end: date = TODAY):
        return FetchResult.success(
            build_bars(ticker, n=n, last_close=last_close, end=end),
            download_nanos=1_000_000,
            parse_nanos=100_000,
        )

    return _ok


@pytest.fixture
def stale_end() -> date:
    return TODAY - timedelta(days=10)
