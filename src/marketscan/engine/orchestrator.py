"""Batch orchestrator: segmented, checkpointed, budgeted market scans."""

from __future__ import annotations

import logging
import threading

from pydantic import BaseModel, Field

from marketscan.config import ScanConfig
from marketscan.core.enums import CheckpointState, RunStatus
from marketscan.core.models import ScoredCandidate, UniverseRecord
from marketscan.data.fetcher import RetryingFetcher
from marketscan.data.provider import (
    BarStore,
    Clock,
    KeyValueStore,
    PriceFetcher,
    RunSink,
    ScanResultSink,
    UniverseProvider,
)
from marketscan.data.yahoo import YahooPriceFetcher
from marketscan.engine.checkpoint import BatchPlan, CheckpointManager
from marketscan.engine.fetch import TieredFetchStrategy
from marketscan.engine.freshness import make_clock
from marketscan.engine.pipeline import TickerPipeline
from marketscan.engine.segmenter import segment_universe, universe_signature
from marketscan.engine.worker import ScanWorkerPool
from marketscan.strategy.basic import (
    MomentumScorer,
    PandasIndicatorEngine,
    TrendFilter,
    VolatilityRiskFilter,
)

RUN_MODE = "DAILY_MARKET_SCAN"

_log = logging.getLogger(__name__)


class EmptyUniverseError(RuntimeError):
    """The universe provider returned no active records."""


class ScanRunOutcome(BaseModel):
    run_id: int
    status: RunStatus
    universe_size: int
    scanned: int
    failed: int
    candidate_count: int
    top_n: int
    top_candidates: list[ScoredCandidate] = Field(default_factory=list)
    market_reference: list[ScoredCandidate] = Field(default_factory=list)
    segment_count: int
    next_segment_index: int
    segments_this_run: int = 0
    checkpoint_state: CheckpointState = CheckpointState.NO_CHECKPOINT
    partial: bool = False
    interrupted: bool = False
    summary: dict = Field(default_factory=dict)


class BatchOrchestrator:
    """Drives one run: plan, resume, scan up to the segment budget, persist.

    Progress is checkpointed after every completed segment, so a run that
    is killed or stops at its budget resumes at the first unscanned segment.
    """

    def __init__(
        self,
        config: ScanConfig,
        universe: UniverseProvider,
        worker_pool: ScanWorkerPool,
        checkpoint_store: KeyValueStore,
        run_sink: RunSink,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.universe = universe
        self.worker_pool = worker_pool
        self.run_sink = run_sink
        self.stop_event = stop_event or threading.Event()
        self.log = logger or _log
        self.checkpoints = CheckpointManager(
            checkpoint_store, config.checkpoint_key, config.resume_enabled, self.log
        )

    def interrupt(self) -> None:
        """Ask in-flight fetches and the segment loop to stop."""
        self.stop_event.set()

    def build_plan(self, universe: list[UniverseRecord], top_n: int) -> BatchPlan:
        cfg = self.config
        segments = segment_universe(
            universe, cfg.segment_mode, cfg.market_chunk_size, cfg.batch_enabled
        )
        return BatchPlan(segments=segments, signature=universe_signature(universe), top_n=top_n)

    def run(
        self,
        top_n_override: int | None = None,
        reset_checkpoint: bool = False,
        max_segments: int | None = None,
    ) -> ScanRunOutcome:
        run_id = self.run_sink.start_run(RUN_MODE)
        try:
            return self._execute(run_id, top_n_override, reset_checkpoint, max_segments)
        except BaseException as e:
            self.stop_event.set()
            self._safe_finish_failed(run_id, e)
            raise

    # ── Internals ────────────────────────────────────────────────────────

    def _execute(
        self,
        run_id: int,
        top_n_override: int | None,
        reset_checkpoint: bool,
        max_segments: int | None,
    ) -> ScanRunOutcome:
        cfg = self.config
        universe = self.universe.list_active(cfg.max_universe_size)
        if not universe:
            raise EmptyUniverseError("Universe is empty; nothing to scan")

        top_n = max(1, top_n_override if top_n_override is not None else cfg.top_n)
        plan = self.build_plan(universe, top_n)
        if reset_checkpoint:
            self.checkpoints.reset()
        state = self.checkpoints.load(plan)

        budget = cfg.max_segments_per_run if max_segments is None else max(0, max_segments)
        remaining = max(0, plan.segment_count - state.next_segment_index)
        allowed = remaining if budget <= 0 else min(budget, remaining)

        if cfg.retry_when_cache_exists:
            self.log.info("Data source priority: cache(fresh) -> yahoo -> cache(retry_enabled)")
        else:
            self.log.info("Data source priority: cache(fresh) -> yahoo -> cache")

        scanned_segments = 0
        interrupted = False
        for _ in range(allowed):
            if self.stop_event.is_set():
                interrupted = True
                break
            index = state.next_segment_index
            segment = plan.segments[index]
            self.log.info(
                "Batch segment %d/%d market=%s size=%d",
                index + 1,
                plan.segment_count,
                segment.key,
                len(segment),
            )
            try:
                segment_stats = self.worker_pool.scan_segment(
                    segment.records,
                    top_n,
                    segment_no=index + 1,
                    segment_count=plan.segment_count,
                    label=segment.key,
                    run_id=run_id,
                )
            except KeyboardInterrupt:
                self.stop_event.set()
            if self.stop_event.is_set():
                self.log.warning(
                    "Interrupted during segment %d/%d; it will be rescanned on resume",
                    index + 1,
                    plan.segment_count,
                )
                interrupted = True
                break
            state.stats.merge(segment_stats)
            state.next_segment_index = index + 1
            self.checkpoints.save(plan, state)
            scanned_segments += 1

        complete = state.next_segment_index >= plan.segment_count
        if complete:
            self.checkpoints.clear()
            state.checkpoint_state = CheckpointState.COMPLETED

        stats = state.stats
        top = stats.top_candidates()[:top_n]
        market_reference = top[: cfg.market_reference_top_n]
        status = RunStatus.SUCCESS if complete else RunStatus.PARTIAL
        notes = (
            f"failures={stats.failed}; "
            f"batch_progress={state.next_segment_index}/{plan.segment_count}; "
            f"partial={str(not complete).lower()}"
        )

        self.run_sink.insert_candidates(run_id, top)
        self.run_sink.finish_run(
            run_id,
            status.value,
            universe_size=len(universe),
            scanned=stats.scanned,
            candidate_count=stats.candidate_count,
            top_n=top_n,
            notes=notes,
        )
        self.log.info(
            "Market scan run %d %s: scanned=%d failed=%d candidates=%d %s",
            run_id,
            status,
            stats.scanned,
            stats.failed,
            stats.candidate_count,
            notes,
        )

        return ScanRunOutcome(
            run_id=run_id,
            status=status,
            universe_size=len(universe),
            scanned=stats.scanned,
            failed=stats.failed,
            candidate_count=stats.candidate_count,
            top_n=top_n,
            top_candidates=top,
            market_reference=market_reference,
            segment_count=plan.segment_count,
            next_segment_index=state.next_segment_index,
            segments_this_run=scanned_segments,
            checkpoint_state=state.checkpoint_state,
            partial=not complete,
            interrupted=interrupted,
            summary=stats.summary(),
        )

    def _safe_finish_failed(self, run_id: int, error: BaseException) -> None:
        try:
            self.run_sink.finish_run(
                run_id,
                RunStatus.FAILED.value,
                universe_size=0,
                scanned=0,
                candidate_count=0,
                top_n=0,
                notes=f"error={type(error).__name__}: {error}",
            )
        except Exception as e:
            self.log.error("Could not mark run %d as FAILED: %s", run_id, e)


def build_orchestrator(
    config: ScanConfig,
    store,
    price_fetcher: PriceFetcher | None = None,
    clock: Clock | None = None,
    logger: logging.Logger | None = None,
) -> BatchOrchestrator:
    """Wire the default scanner around one store.

    ``store`` must provide the universe, bar cache, key/value, run and
    scan-result interfaces (``SqliteStore`` does).
    """
    stop_event = threading.Event()
    clock = clock or make_clock(config.zone)
    fetcher = RetryingFetcher(
        price_fetcher
        or YahooPriceFetcher(timeout_sec=config.request_timeout_sec, max_bars=config.max_bars),
        retry_count=config.retry_count,
        backoff_sec=config.retry_backoff_sec,
        backoff_max_sec=config.retry_backoff_max_sec,
        request_pause_ms=config.request_pause_ms,
        timeout_streak=config.circuit_timeout_streak,
        cooldown_sec=config.circuit_cooldown_sec,
        stop_event=stop_event,
    )
    bar_store: BarStore = store
    result_sink: ScanResultSink = store
    pipeline = TickerPipeline(
        fetch_strategy=TieredFetchStrategy(bar_store, fetcher, config, clock),
        indicator_engine=PandasIndicatorEngine(),
        candidate_filter=TrendFilter(),
        risk_filter=VolatilityRiskFilter(),
        scorer=MomentumScorer(),
        config=config,
        clock=clock,
    )
    worker_pool = ScanWorkerPool(
        pipeline, bar_store, config, result_sink=result_sink, logger=logger, stop_event=stop_event
    )
    return BatchOrchestrator(
        config,
        universe=store,
        worker_pool=worker_pool,
        checkpoint_store=store,
        run_sink=store,
        stop_event=stop_event,
        logger=logger,
    )
