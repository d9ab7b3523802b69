"""Concurrent per-segment scanning."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from marketscan.config import ScanConfig
from marketscan.core.enums import DataSource
from marketscan.core.models import TickerScanResult, UniverseRecord
from marketscan.data.provider import BarStore, ScanResultSink
from marketscan.engine.pipeline import TickerPipeline
from marketscan.engine.stats import ScanStats, format_progress

_log = logging.getLogger(__name__)


class ScanWorkerPool:
    """Runs the ticker pipeline over one segment with a bounded thread pool.

    Worker threads fetch, evaluate and upsert; only the calling thread
    touches the segment's ``ScanStats`` while draining completed futures.

    ``stop_event`` must be the event the retrying fetcher waits on. A
    ``KeyboardInterrupt`` while draining sets it, cancels queued tickers
    and re-raises once in-flight work has wound down.
    """

    def __init__(
        self,
        pipeline: TickerPipeline,
        bar_store: BarStore,
        config: ScanConfig,
        result_sink: ScanResultSink | None = None,
        logger: logging.Logger | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.pipeline = pipeline
        self.bar_store = bar_store
        self.config = config
        self.result_sink = result_sink
        self.log = logger or _log
        self.stop_event = stop_event or threading.Event()

    def scan_segment(
        self,
        records: list[UniverseRecord],
        top_n: int,
        segment_no: int = 1,
        segment_count: int = 1,
        label: str = "ALL",
        run_id: int | None = None,
    ) -> ScanStats:
        stats = ScanStats(top_n=top_n)
        total = len(records)
        if total == 0:
            return stats

        log_every = self.config.progress_log_every
        started = time.monotonic()
        rows: list[TickerScanResult] = []

        pool = ThreadPoolExecutor(max_workers=self.config.threads)
        try:
            futures = {pool.submit(self._scan_one, record): record for record in records}
            for completed, future in enumerate(as_completed(futures), start=1):
                record = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    self.log.warning("Scan task failed for %s: %s", record.ticker, e)
                    stats.failed += 1
                else:
                    rows.append(result)
                    self._record(stats, result)

                if completed >= total or (log_every > 0 and completed % log_every == 0):
                    self.log.info(
                        format_progress(
                            segment_no,
                            segment_count,
                            label,
                            completed,
                            total,
                            stats,
                            time.monotonic() - started,
                        )
                    )
                    self.log.info(stats.format_stage_metrics())
        except KeyboardInterrupt:
            # In-flight fetches wait on the stop event; queued tickers never start.
            self.stop_event.set()
            pool.shutdown(wait=True, cancel_futures=True)
            self.log.warning(
                "Segment %d/%d market=%s interrupted after %d/%d tickers",
                segment_no,
                segment_count,
                label,
                len(rows),
                total,
            )
            raise
        finally:
            pool.shutdown(wait=True)

        self._persist_rows(run_id, rows)
        return stats

    # ── Internals ────────────────────────────────────────────────────────

    def _scan_one(self, record: UniverseRecord) -> TickerScanResult:
        result = self.pipeline.scan(record)
        if result.error is not None or not result.bars or result.data_source != DataSource.YAHOO:
            return result

        cfg = self.config
        started = time.perf_counter_ns()
        try:
            written = self.bar_store.upsert_incremental(
                record.ticker,
                result.bars,
                DataSource.YAHOO.value,
                initial_days=cfg.upsert_initial_days,
                recent_days=max(1, cfg.upsert_recent_days),
            )
        except Exception as e:
            self.log.warning("Stage[upsert] failed ticker=%s: %s", record.ticker, e)
            return result.model_copy(
                update={"upsert_error": str(e), "upsert_nanos": time.perf_counter_ns() - started}
            )
        return result.model_copy(
            update={"upserted_bars": written, "upsert_nanos": time.perf_counter_ns() - started}
        )

    @staticmethod
    def _record(stats: ScanStats, result: TickerScanResult) -> None:
        stats.record_fetch(result.download_nanos, result.parse_nanos, result.data_source)
        stats.record_outcome(result)
        if result.is_failed:
            stats.failed += 1
            return
        if result.upsert_nanos > 0 or result.upserted_bars > 0:
            stats.record_upsert(result.upsert_nanos, result.upserted_bars)
        if result.counts_as_scanned:
            stats.scanned += 1
        if result.candidate is not None:
            stats.add_candidate(result.candidate)

    def _persist_rows(self, run_id: int | None, rows: list[TickerScanResult]) -> None:
        if self.result_sink is None or run_id is None or not rows:
            return
        try:
            self.result_sink.insert_scan_results(run_id, rows)
        except Exception as e:
            self.log.warning("Failed to persist scan results for run_id=%s: %s", run_id, e)
