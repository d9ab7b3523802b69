"""Per-ticker scan pipeline: fetch, gate, compute, filter, score.

Stages run in a fixed order and the first one that fails decides the
result's classification:

    FETCHED -> FRESH -> SUFFICIENT_HISTORY -> TRADABLE -> INDICATORS_READY
        -> FILTER_PASSED -> RISK_PASSED -> SCORED

Every outcome carries exactly one ``ScanFailureReason``. Collaborator
exceptions are caught here and turned into failed results so one bad
ticker never aborts a segment.
"""

from __future__ import annotations

import json
import logging
import math

from marketscan.config import ScanConfig
from marketscan.core.enums import (
    DataInsufficientReason,
    ScanFailureReason,
    request_failure_reason,
)
from marketscan.core.models import (
    BarDaily,
    IndicatorCoverage,
    IndicatorSnapshot,
    ScoredCandidate,
    TickerScanResult,
    UniverseRecord,
)
from marketscan.data.provider import CandidateFilter, Clock, IndicatorEngine, RiskFilter, Scorer
from marketscan.engine.fetch import FetchDecision, TieredFetchStrategy
from marketscan.engine.freshness import is_fresh
from marketscan.engine.gates import TradabilityConfig, is_tradable_and_liquid

logger = logging.getLogger(__name__)


def indicator_coverage(
    indicators: IndicatorSnapshot, core: list[str], optional: list[str]
) -> IndicatorCoverage:
    return IndicatorCoverage(
        missing_core=[name for name in core if not indicators.has(name)],
        missing_optional=[name for name in optional if not indicators.has(name)],
    )


class TickerPipeline:
    """Turns one universe record into a fully classified ``TickerScanResult``."""

    def __init__(
        self,
        fetch_strategy: TieredFetchStrategy,
        indicator_engine: IndicatorEngine,
        candidate_filter: CandidateFilter,
        risk_filter: RiskFilter,
        scorer: Scorer,
        config: ScanConfig,
        clock: Clock,
    ):
        self.fetch_strategy = fetch_strategy
        self.indicator_engine = indicator_engine
        self.candidate_filter = candidate_filter
        self.risk_filter = risk_filter
        self.scorer = scorer
        self.config = config
        self.clock = clock
        self.tradability = TradabilityConfig.from_config(config)

    def scan(self, record: UniverseRecord) -> TickerScanResult:
        return self.evaluate(record, self.fetch_strategy.fetch(record))

    def evaluate(self, record: UniverseRecord, decision: FetchDecision) -> TickerScanResult:
        bars = decision.bars
        base = dict(
            universe=record,
            bars=bars,
            download_nanos=decision.download_nanos,
            parse_nanos=decision.parse_nanos,
            data_source=decision.source,
            request_failed=decision.request_failed,
            request_failure_category=decision.category,
            fetch_latency_ms=decision.latency_ms,
            cache_hit=decision.cache_hit,
            fallback_path=decision.fallback_path,
            bars_count=len(bars),
            last_trade_date=bars[-1].trade_date if bars else None,
            last_close=bars[-1].close if bars else math.nan,
        )

        if not bars:
            reason = request_failure_reason(decision.category)
            if reason == ScanFailureReason.NONE:
                reason = ScanFailureReason.HTTP_404_NO_DATA
            return TickerScanResult(
                **base,
                error=decision.error or "no_data",
                data_insufficient_reason=DataInsufficientReason.NO_DATA,
                failure_reason=reason,
            )

        base["fetch_success"] = True
        try:
            return self._evaluate_bars(record, bars, base)
        except Exception as e:
            logger.warning("Scan pipeline error for %s: %s", record.ticker, e)
            return TickerScanResult(
                **base,
                error=f"{type(e).__name__}: {e}",
                failure_reason=ScanFailureReason.OTHER,
            )

    # ── Stages ───────────────────────────────────────────────────────────

    def _evaluate_bars(
        self, record: UniverseRecord, bars: list[BarDaily], base: dict
    ) -> TickerScanResult:
        cfg = self.config

        if not is_fresh(bars, self.clock(), cfg.fresh_days):
            return TickerScanResult(
                **base,
                data_insufficient_reason=DataInsufficientReason.STALE,
                failure_reason=ScanFailureReason.STALE,
            )

        if len(bars) < cfg.min_history_bars:
            return TickerScanResult(
                **base,
                data_insufficient_reason=DataInsufficientReason.HISTORY_SHORT,
                failure_reason=ScanFailureReason.HISTORY_SHORT,
            )

        if not is_tradable_and_liquid(bars, self.tradability):
            return TickerScanResult(**base, failure_reason=ScanFailureReason.FILTERED_NON_TRADABLE)

        indicators = self.indicator_engine.compute(bars)
        if indicators is None:
            return TickerScanResult(
                **base, error="indicator_failed", failure_reason=ScanFailureReason.OTHER
            )

        coverage = indicator_coverage(
            indicators, cfg.core_indicator_list, cfg.optional_indicator_list
        )
        base["missing_optional_indicators"] = coverage.missing_optional
        if not coverage.core_ready:
            return TickerScanResult(
                **base,
                error="missing_core_indicators: " + ",".join(coverage.missing_core),
                failure_reason=ScanFailureReason.OTHER,
            )
        base["indicator_ready"] = True

        decision = self.candidate_filter.evaluate(bars, indicators)
        if not decision.passed:
            return TickerScanResult(**base)

        risk = self.risk_filter.evaluate(indicators)
        if not risk.passed:
            return TickerScanResult(**base)

        scored = self.scorer.score(indicators, risk)
        if scored.score < cfg.min_score:
            return TickerScanResult(**base)

        reasons = {
            "filter": decision.reasons,
            "filter_metrics": decision.metrics,
            "risk_flags": risk.flags,
            "risk_penalty": risk.penalty,
            "score_breakdown": scored.breakdown,
            "missing_optional": coverage.missing_optional,
            "data_source": str(base["data_source"]),
            "fallback_path": base["fallback_path"],
        }
        candidate = ScoredCandidate(
            ticker=record.ticker,
            code=record.code,
            name=record.name,
            market=record.market,
            score=scored.score,
            close=bars[-1].close,
            reasons_json=json.dumps(reasons, sort_keys=True, default=str),
            indicators_json=json.dumps(_finite_values(indicators), sort_keys=True),
        )
        return TickerScanResult(**base, candidate=candidate)


def _finite_values(indicators: IndicatorSnapshot) -> dict[str, float]:
    return {name: indicators.get(name) for name in indicators.values if indicators.has(name)}
