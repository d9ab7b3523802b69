"""Tiered bar acquisition: fresh cache, then live fetch, then stale cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from marketscan.config import ScanConfig
from marketscan.core.enums import DataSource, RequestFailureCategory
from marketscan.core.models import BarDaily, UniverseRecord
from marketscan.data.fetcher import RetryingFetcher
from marketscan.data.provider import BarStore, Clock
from marketscan.data.yahoo import to_yahoo_symbol
from marketscan.engine.freshness import is_fresh
from marketscan.engine.gates import has_screening_shape

logger = logging.getLogger(__name__)

PATH_CACHE = "cache"
PATH_LIVE = "yahoo"
PATH_STALE_CACHE = "yahoo->cache"
PATH_FAILED = "yahoo->failed"


@dataclass(frozen=True)
class FetchDecision:
    """Which bars a ticker is scanned with, and how they were obtained."""

    bars: list[BarDaily] = field(default_factory=list)
    source: DataSource = DataSource.UNKNOWN
    request_failed: bool = False
    category: str = ""
    fallback_path: str = ""
    cache_hit: bool = False
    error: str | None = None
    download_nanos: int = 0
    parse_nanos: int = 0
    latency_ms: int = 0
    attempts: int = 0


class TieredFetchStrategy:
    """Decide per ticker between cached and live bars.

    1. Cache-fresh: enough fresh, shaped cached bars are served without
       touching the network.
    2. Live fetch through the retrying fetcher. When cached bars exist and
       ``retry_when_cache_exists`` is off, the live fetch gets one attempt.
    3. Stale cache: live failed but the cache holds bars; served with
       ``request_failed=True`` and the live failure category.
    4. Hard failure: no usable bars anywhere.
    """

    def __init__(
        self,
        bar_store: BarStore,
        fetcher: RetryingFetcher,
        config: ScanConfig,
        clock: Clock,
    ):
        self.bar_store = bar_store
        self.fetcher = fetcher
        self.config = config
        self.clock = clock

    def fetch(self, record: UniverseRecord) -> FetchDecision:
        cfg = self.config
        cached = self._load_cache(record.ticker)

        if (
            cfg.cache_prefer_enabled
            and len(cached) >= cfg.min_history_bars
            and is_fresh(cached, self.clock(), cfg.fresh_days)
            and has_screening_shape(cached)
        ):
            return FetchDecision(
                bars=cached, source=DataSource.CACHE, fallback_path=PATH_CACHE, cache_hit=True
            )

        retries = 0 if cached and not cfg.retry_when_cache_exists else None
        started = time.monotonic()
        result = self.fetcher.fetch(
            to_yahoo_symbol(record), cfg.fetch_range, cfg.fetch_interval, retries=retries
        )
        latency_ms = int((time.monotonic() - started) * 1000)

        category = result.category
        error = result.error
        if result.ok and not has_screening_shape(result.bars):
            category = RequestFailureCategory.NO_DATA
            error = "live bars have no volume and no range"

        common = dict(
            download_nanos=result.download_nanos,
            parse_nanos=result.parse_nanos,
            latency_ms=latency_ms,
            attempts=result.attempts,
        )

        if category is None:
            bars = [
                b if b.ticker == record.ticker else b.model_copy(update={"ticker": record.ticker})
                for b in result.bars
            ]
            return FetchDecision(
                bars=bars, source=DataSource.YAHOO, fallback_path=PATH_LIVE, **common
            )

        if cached:
            logger.debug(
                "Live fetch for %s failed (%s), serving %d stale cached bars",
                record.ticker,
                category,
                len(cached),
            )
            return FetchDecision(
                bars=cached,
                source=DataSource.CACHE,
                request_failed=True,
                category=category.value,
                fallback_path=PATH_STALE_CACHE,
                cache_hit=True,
                **common,
            )

        return FetchDecision(
            request_failed=True,
            category=category.value,
            fallback_path=PATH_FAILED,
            error=error or category.value,
            **common,
        )

    def _load_cache(self, ticker: str) -> list[BarDaily]:
        try:
            return list(self.bar_store.load_recent(ticker, self.config.max_bars))
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", ticker, e)
            return []
