"""Tests for the marketscan CLI commands."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from marketscan.cli.app import app
from marketscan.core.enums import CheckpointState, RunStatus
from marketscan.core.models import MarketSegment, ScoredCandidate, UniverseRecord
from marketscan.engine.checkpoint import BatchPlan, BatchState, CheckpointManager
from marketscan.engine.orchestrator import EmptyUniverseError, ScanRunOutcome
from marketscan.engine.stats import ScanStats
from marketscan.storage.sqlite_store import SqliteStore

runner = CliRunner()

_MOCK_TARGET = "marketscan.cli.scan_cmds.build_orchestrator"
_KEY = "daily.scan.batch.checkpoint.v1"


def _make_outcome(
    partial: bool = False, candidates: bool = True, interrupted: bool = False
) -> ScanRunOutcome:
    top = (
        [
            ScoredCandidate(ticker="7203.T", code="7203", name="Toyota", market="PRIME", score=82.5, close=2900),
            ScoredCandidate(ticker="6758.T", code="6758", name="Sony", market="PRIME", score=71.0, close=3100),
        ]
        if candidates
        else []
    )
    return ScanRunOutcome(
        run_id=3,
        status=RunStatus.PARTIAL if partial else RunStatus.SUCCESS,
        universe_size=120,
        scanned=110,
        failed=10,
        candidate_count=len(top),
        top_n=15,
        top_candidates=top,
        segment_count=4,
        next_segment_index=2 if partial else 4,
        segments_this_run=2,
        checkpoint_state=CheckpointState.RESUMED if partial else CheckpointState.COMPLETED,
        partial=partial,
        interrupted=interrupted,
    )


def _orchestrator(outcome=None, side_effect=None) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.run.return_value = outcome
    orchestrator.run.side_effect = side_effect
    return orchestrator


class TestScanCommand:
    @patch(_MOCK_TARGET)
    def test_scan_rich_output(self, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(_make_outcome())

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code == 0
        assert "SUCCESS" in result.output
        assert "7203.T" in result.output
        assert "Toyota" in result.output

    @patch(_MOCK_TARGET)
    def test_scan_forwards_options(self, mock_build, tmp_path):
        orchestrator = _orchestrator(_make_outcome())
        mock_build.return_value = orchestrator

        runner.invoke(
            app,
            ["scan", "--db", str(tmp_path / "scan.db"), "-n", "5", "--reset", "--max-segments", "2"],
        )

        orchestrator.run.assert_called_once_with(top_n_override=5, reset_checkpoint=True, max_segments=2)
        config = mock_build.call_args[0][0]
        assert config.db_path == tmp_path / "scan.db"

    @patch(_MOCK_TARGET)
    def test_scan_partial_hint(self, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(_make_outcome(partial=True, candidates=False))

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code == 0
        assert "PARTIAL" in result.output
        assert "No candidates" in result.output
        assert "segment 3/4" in result.output

    @patch(_MOCK_TARGET)
    @patch("marketscan.cli.scan_cmds.output_json")
    def test_scan_json_output(self, mock_json, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(_make_outcome())

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db"), "--output", "json"])

        assert result.exit_code == 0
        mock_json.assert_called_once()
        data = mock_json.call_args[0][0]
        assert data.run_id == 3
        assert data.status == RunStatus.SUCCESS

    @patch(_MOCK_TARGET)
    def test_scan_interrupted_exit_code(self, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(_make_outcome(partial=True, interrupted=True))

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code == 130
        assert "PARTIAL" in result.output
        assert "Scan interrupted" in result.output

    @patch(_MOCK_TARGET)
    def test_scan_keyboard_interrupt(self, mock_build, tmp_path):
        orchestrator = _orchestrator(side_effect=KeyboardInterrupt())
        mock_build.return_value = orchestrator

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code == 130
        orchestrator.interrupt.assert_called_once()

    @patch(_MOCK_TARGET)
    def test_scan_empty_universe(self, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(side_effect=EmptyUniverseError("Universe is empty"))

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code == 1

    @patch(_MOCK_TARGET)
    def test_scan_error_handling(self, mock_build, tmp_path):
        mock_build.return_value = _orchestrator(side_effect=RuntimeError("database is locked"))

        result = runner.invoke(app, ["scan", "--db", str(tmp_path / "scan.db")])

        assert result.exit_code != 0


class TestCheckpointCommands:
    def _seed(self, db):
        store = SqliteStore(db)
        try:
            segments = [
                MarketSegment(key=m, records=[UniverseRecord(ticker=f"{m}.T", market=m)])
                for m in ("PRIME", "GROWTH")
            ]
            plan = BatchPlan(segments=segments, signature="3:abcdef0123456789", top_n=15)
            stats = ScanStats(top_n=15, scanned=40, failed=2)
            manager = CheckpointManager(store, _KEY)
            manager.save(plan, BatchState(stats=stats, next_segment_index=1))
        finally:
            store.close()

    def test_show_empty(self, tmp_path):
        result = runner.invoke(app, ["checkpoint", "show", "--db", str(tmp_path / "scan.db")])
        assert result.exit_code == 0
        assert "No checkpoint" in result.output

    def test_show_and_clear(self, tmp_path):
        db = tmp_path / "scan.db"
        self._seed(db)

        shown = runner.invoke(app, ["checkpoint", "show", "--db", str(db)])
        assert shown.exit_code == 0
        assert "3:abcdef0123456789" in shown.output
        assert "40" in shown.output

        cleared = runner.invoke(app, ["checkpoint", "clear", "--db", str(db)])
        assert cleared.exit_code == 0
        assert "cleared" in cleared.output

        store = SqliteStore(db)
        try:
            assert store.get(_KEY) is None
        finally:
            store.close()


class TestRunsCommand:
    def test_run_not_found(self, tmp_path):
        result = runner.invoke(app, ["runs", "show", "99", "--db", str(tmp_path / "scan.db")])
        assert result.exit_code == 1

    def test_show_run(self, tmp_path):
        db = tmp_path / "scan.db"
        store = SqliteStore(db)
        try:
            run_id = store.start_run("DAILY_MARKET_SCAN")
            store.insert_candidates(run_id, [ScoredCandidate(ticker="7203.T", name="Toyota", score=80)])
            store.finish_run(run_id, "SUCCESS", 1, 1, 1, 15, notes="failures=0")
        finally:
            store.close()

        result = runner.invoke(app, ["runs", "show", str(run_id), "--db", str(db)])

        assert result.exit_code == 0
        assert "SUCCESS" in result.output
        assert "Toyota" in result.output


class TestUniverseImport:
    def test_import_csv(self, tmp_path):
        db = tmp_path / "scan.db"
        csv = tmp_path / "universe.csv"
        csv.write_text(
            "ticker,code,name,market\n7203.T,7203,Toyota,PRIME\n6758.T,6758,Sony,PRIME\n,,,\n"
        )

        result = runner.invoke(app, ["universe", "import", str(csv), "--db", str(db)])

        assert result.exit_code == 0
        assert "Imported 2" in result.output
        store = SqliteStore(db)
        try:
            assert store.list_active() == [
                UniverseRecord(ticker="7203.T", code="7203", name="Toyota", market="PRIME"),
                UniverseRecord(ticker="6758.T", code="6758", name="Sony", market="PRIME"),
            ]
        finally:
            store.close()

    def test_missing_ticker_column(self, tmp_path):
        csv = tmp_path / "bad.csv"
        csv.write_text("symbol,name\n7203,Toyota\n")
        result = runner.invoke(app, ["universe", "import", str(csv), "--db", str(tmp_path / "scan.db")])
        assert result.exit_code == 1

    def test_missing_file(self, tmp_path):
        result = runner.invoke(
            app, ["universe", "import", str(tmp_path / "nope.csv"), "--db", str(tmp_path / "scan.db")]
        )
        assert result.exit_code == 1
