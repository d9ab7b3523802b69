"""Scan statistics aggregation and the bounded top-N candidate list."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from marketscan.core.enums import (
    DataInsufficientReason,
    DataSource,
    ScanFailureReason,
    request_failure_reason,
)
from marketscan.core.models import ScoredCandidate, TickerScanResult


class TopCandidates:
    """Highest-scoring candidates, at most ``limit`` of them.

    Ordered by score descending; equal scores order by ticker so merging
    the same candidates in any order yields the same list.
    """

    def __init__(self, limit: int, candidates: list[ScoredCandidate] | None = None):
        self.limit = max(1, limit)
        self._items: list[ScoredCandidate] = []
        for c in candidates or []:
            self.add(c)

    def add(self, candidate: ScoredCandidate) -> None:
        self._items.append(candidate)
        self._items.sort(key=lambda c: (-c.score, c.ticker))
        del self._items[self.limit :]

    def extend(self, candidates: list[ScoredCandidate]) -> None:
        for c in candidates:
            self.add(c)

    def to_list(self) -> list[ScoredCandidate]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class ScanStats:
    """Counters for one segment, or for a whole run after merging segments."""

    top_n: int = 15
    scanned: int = 0
    failed: int = 0
    candidate_count: int = 0
    fetch_coverage: int = 0
    indicator_coverage: int = 0

    download_nanos: int = 0
    parse_nanos: int = 0
    upsert_nanos: int = 0
    download_count: int = 0
    parse_count: int = 0
    upsert_ops: int = 0
    upsert_bars: int = 0

    source_yahoo: int = 0
    source_cache: int = 0
    source_unknown: int = 0

    failure_reasons: Counter = field(default_factory=Counter)
    request_failures: Counter = field(default_factory=Counter)
    insufficient: Counter = field(default_factory=Counter)

    _top: TopCandidates = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.top_n = max(1, self.top_n)
        self._top = TopCandidates(self.top_n)

    @classmethod
    def from_checkpoint(
        cls,
        scanned: int,
        failed: int,
        candidate_count: int,
        top_candidates: list[ScoredCandidate],
        top_n: int,
    ) -> ScanStats:
        stats = cls(top_n=top_n, scanned=scanned, failed=failed, candidate_count=candidate_count)
        stats._top.extend(top_candidates)
        return stats

    # ── Recording ────────────────────────────────────────────────────────

    def record_fetch(self, download_nanos: int, parse_nanos: int, source: DataSource | str) -> None:
        if download_nanos > 0:
            self.download_nanos += download_nanos
            self.download_count += 1
        if parse_nanos > 0:
            self.parse_nanos += parse_nanos
            self.parse_count += 1

        src = str(source or "").strip().lower()
        if src == DataSource.YAHOO:
            self.source_yahoo += 1
        elif src == DataSource.CACHE:
            self.source_cache += 1
        else:
            self.source_unknown += 1

    def record_upsert(self, upsert_nanos: int, bars: int) -> None:
        self.upsert_nanos += max(0, upsert_nanos)
        self.upsert_ops += 1
        self.upsert_bars += max(0, bars)

    def record_outcome(self, result: TickerScanResult) -> None:
        """Update coverage and histograms from a classified result."""
        if result.fetch_success:
            self.fetch_coverage += 1
        if result.indicator_ready:
            self.indicator_coverage += 1
        if result.failure_reason != ScanFailureReason.NONE:
            self.failure_reasons[result.failure_reason] += 1
        if result.data_insufficient_reason != DataInsufficientReason.NONE:
            self.insufficient[result.data_insufficient_reason] += 1
        if result.request_failed or result.request_failure_category.strip():
            reason = request_failure_reason(result.request_failure_category)
            if reason == ScanFailureReason.NONE:
                reason = ScanFailureReason.OTHER
            self.request_failures[reason] += 1

    def add_candidate(self, candidate: ScoredCandidate) -> None:
        self.candidate_count += 1
        self._top.add(candidate)

    def merge(self, other: ScanStats) -> None:
        """Fold ``other`` into this instance."""
        for name in (
            "scanned",
            "failed",
            "candidate_count",
            "fetch_coverage",
            "indicator_coverage",
            "download_nanos",
            "parse_nanos",
            "upsert_nanos",
            "download_count",
            "parse_count",
            "upsert_ops",
            "upsert_bars",
            "source_yahoo",
            "source_cache",
            "source_unknown",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.failure_reasons.update(other.failure_reasons)
        self.request_failures.update(other.request_failures)
        self.insufficient.update(other.insufficient)
        self._top.extend(other.top_candidates())

    # ── Views ────────────────────────────────────────────────────────────

    def top_candidates(self) -> list[ScoredCandidate]:
        return self._top.to_list()

    def summary(self) -> dict:
        return {
            "scanned": self.scanned,
            "failed": self.failed,
            "candidate_count": self.candidate_count,
            "coverage": {"fetch": self.fetch_coverage, "indicator": self.indicator_coverage},
            "source": {
                "yahoo": self.source_yahoo,
                "cache": self.source_cache,
                "unknown": self.source_unknown,
            },
            "upsert": {"ops": self.upsert_ops, "bars": self.upsert_bars},
            "failure_reasons": {str(k): v for k, v in sorted(self.failure_reasons.items())},
            "request_failures": {str(k): v for k, v in sorted(self.request_failures.items())},
            "insufficient": {str(k): v for k, v in sorted(self.insufficient.items())},
        }

    def format_stage_metrics(self) -> str:
        fr, rf = self.failure_reasons, self.request_failures
        return (
            f"Stage metrics: "
            f"download(avg={_avg_ms(self.download_nanos, self.download_count):.1f}ms,"
            f"total={self.download_nanos / 1e9:.2f}s,n={self.download_count}) "
            f"parse(avg={_avg_ms(self.parse_nanos, self.parse_count):.1f}ms,"
            f"total={self.parse_nanos / 1e9:.2f}s,n={self.parse_count}) "
            f"upsert(avg={_avg_ms(self.upsert_nanos, self.upsert_ops):.1f}ms,"
            f"total={self.upsert_nanos / 1e9:.2f}s,ops={self.upsert_ops},bars={self.upsert_bars}) "
            f"source(yahoo={self.source_yahoo},cache={self.source_cache},"
            f"unknown={self.source_unknown}) "
            f"coverage(fetch={self.fetch_coverage},indicator={self.indicator_coverage}) "
            f"failure(timeout={rf[ScanFailureReason.TIMEOUT]},"
            f"http_404/no_data={rf[ScanFailureReason.HTTP_404_NO_DATA]},"
            f"parse_error={rf[ScanFailureReason.PARSE_ERROR]},"
            f"rate_limit={rf[ScanFailureReason.RATE_LIMIT]},"
            f"stale={fr[ScanFailureReason.STALE]},"
            f"history_short={fr[ScanFailureReason.HISTORY_SHORT]},"
            f"filtered_non_tradable={fr[ScanFailureReason.FILTERED_NON_TRADABLE]},"
            f"other={fr[ScanFailureReason.OTHER] + rf[ScanFailureReason.OTHER]})"
        )


def format_progress(
    segment_no: int,
    segment_count: int,
    label: str,
    completed: int,
    total: int,
    stats: ScanStats,
    elapsed_sec: float,
) -> str:
    elapsed = max(0, round(elapsed_sec))
    remaining = max(0, total - completed)
    eta = round(elapsed * remaining / completed) if completed > 0 else 0
    pct = 100.0 if total <= 0 else completed * 100.0 / total
    return (
        f"Progress segment {segment_no}/{segment_count} market={label} "
        f"done={completed}/{total} ({pct:.1f}%) scanned={stats.scanned} "
        f"failed={stats.failed} candidates={stats.candidate_count} "
        f"elapsed={format_seconds(elapsed)} eta={format_seconds(eta)}"
    )


def format_seconds(seconds: int) -> str:
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{s:02d}s"
    if m:
        return f"{m}m{s:02d}s"
    return f"{s}s"


def _avg_ms(total_nanos: int, count: int) -> float:
    return total_nanos / count / 1e6 if count > 0 else 0.0
