"""Tests for ScanStats aggregation and the bounded top-N list."""

from __future__ import annotations

from marketscan.core.enums import (
    DataInsufficientReason,
    DataSource,
    ScanFailureReason,
)
from marketscan.core.models import TickerScanResult, UniverseRecord
from marketscan.engine.stats import ScanStats, TopCandidates, format_progress, format_seconds


class TestTopCandidates:
    def test_bounded_and_sorted(self, make_candidate):
        top = TopCandidates(3)
        for i, score in enumerate([50, 90, 10, 70, 60, 95]):
            top.add(make_candidate(f"T{i}", score))
            items = top.to_list()
            assert len(items) <= 3
            assert [c.score for c in items] == sorted((c.score for c in items), reverse=True)
        assert [c.score for c in top.to_list()] == [95, 90, 70]

    def test_ties_break_on_ticker(self, make_candidate):
        top = TopCandidates(2, [make_candidate("B", 80), make_candidate("A", 80), make_candidate("C", 80)])
        assert [c.ticker for c in top.to_list()] == ["A", "B"]

    def test_limit_floor(self):
        assert TopCandidates(0).limit == 1


class TestMerge:
    def test_merge_yields_top_n_of_union(self, make_candidate):
        left, right = ScanStats(top_n=3), ScanStats(top_n=3)
        for t, s in [("A", 10), ("B", 80), ("C", 40)]:
            left.add_candidate(make_candidate(t, s))
        for t, s in [("D", 90), ("E", 20), ("F", 50)]:
            right.add_candidate(make_candidate(t, s))

        left.merge(right)

        assert [c.ticker for c in left.top_candidates()] == ["D", "B", "F"]
        assert left.candidate_count == 6

    def test_merge_order_independent(self, make_candidate):
        def stats(pairs, scanned):
            s = ScanStats(top_n=2, scanned=scanned, failed=1)
            s.failure_reasons[ScanFailureReason.STALE] += scanned
            for t, score in pairs:
                s.add_candidate(make_candidate(t, score))
            return s

        a1, b1 = stats([("A", 10), ("B", 30)], 2), stats([("C", 20)], 5)
        a2, b2 = stats([("A", 10), ("B", 30)], 2), stats([("C", 20)], 5)
        a1.merge(b1)
        b2.merge(a2)

        assert a1.top_candidates() == b2.top_candidates()
        assert a1.scanned == b2.scanned == 7
        assert a1.failed == b2.failed == 2
        assert a1.failure_reasons == b2.failure_reasons

    def test_from_checkpoint(self, make_candidate):
        stats = ScanStats.from_checkpoint(
            scanned=10,
            failed=2,
            candidate_count=4,
            top_candidates=[make_candidate("A", 60), make_candidate("B", 70)],
            top_n=1,
        )
        assert stats.scanned == 10
        assert stats.candidate_count == 4
        assert [c.ticker for c in stats.top_candidates()] == ["B"]


class TestRecording:
    def test_record_fetch_sources(self):
        stats = ScanStats()
        stats.record_fetch(1_000, 500, DataSource.YAHOO)
        stats.record_fetch(0, 0, "cache")
        stats.record_fetch(0, 0, "")
        assert (stats.source_yahoo, stats.source_cache, stats.source_unknown) == (1, 1, 1)
        assert stats.download_count == 1
        assert stats.parse_nanos == 500

    def test_record_outcome_histograms(self):
        record = UniverseRecord(ticker="A")
        stats = ScanStats()
        stats.record_outcome(
            TickerScanResult(
                universe=record,
                request_failed=True,
                request_failure_category="timeout",
                fetch_success=True,
                data_insufficient_reason=DataInsufficientReason.STALE,
                failure_reason=ScanFailureReason.STALE,
            )
        )
        stats.record_outcome(
            TickerScanResult(
                universe=record,
                request_failed=True,
                request_failure_category="no_data",
                data_insufficient_reason=DataInsufficientReason.NO_DATA,
                failure_reason=ScanFailureReason.HTTP_404_NO_DATA,
            )
        )
        stats.record_outcome(TickerScanResult(universe=record, fetch_success=True, indicator_ready=True))

        assert stats.fetch_coverage == 2
        assert stats.indicator_coverage == 1
        assert stats.failure_reasons[ScanFailureReason.STALE] == 1
        assert stats.failure_reasons[ScanFailureReason.HTTP_404_NO_DATA] == 1
        assert stats.request_failures[ScanFailureReason.TIMEOUT] == 1
        assert stats.request_failures[ScanFailureReason.HTTP_404_NO_DATA] == 1
        assert stats.insufficient[DataInsufficientReason.NO_DATA] == 1

    def test_record_upsert(self):
        stats = ScanStats()
        stats.record_upsert(2_000_000, 12)
        stats.record_upsert(-1, -5)
        assert stats.upsert_ops == 2
        assert stats.upsert_bars == 12
        assert stats.upsert_nanos == 2_000_000


class TestFormatting:
    def test_progress_line(self):
        stats = ScanStats(scanned=40, failed=2, candidate_count=3)
        line = format_progress(1, 4, "PRIME", 50, 200, stats, elapsed_sec=30)
        assert line.startswith("Progress segment 1/4 market=PRIME done=50/200 (25.0%)")
        assert "scanned=40 failed=2 candidates=3" in line
        assert "elapsed=30s eta=1m30s" in line

    def test_stage_metrics_line(self):
        stats = ScanStats()
        stats.record_fetch(2_000_000, 0, "yahoo")
        line = stats.format_stage_metrics()
        assert line.startswith("Stage metrics: download(avg=2.0ms")
        assert "source(yahoo=1,cache=0,unknown=0)" in line

    def test_format_seconds(self):
        assert format_seconds(5) == "5s"
        assert format_seconds(65) == "1m05s"
        assert format_seconds(3725) == "1h02m05s"

    def test_summary_keys(self):
        summary = ScanStats(scanned=1).summary()
        assert summary["scanned"] == 1
        assert set(summary) >= {"failure_reasons", "request_failures", "source", "coverage"}
