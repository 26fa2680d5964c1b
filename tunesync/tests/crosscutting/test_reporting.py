import json
import os

import pytest

from tunesync.crosscutting.reporting import (
    DebugReportWriter,
    MetricsCollector,
    PlaylistStatus,
    PlaylistSummary,
    SyncReport,
)
from tunesync.domain.entities import Track


class TestPlaylistSummary:
    """Tests for per-playlist counters."""

    def test_conversion_rate(self):
        """The rate is matched over searched tracks; skips do not count."""
        summary = PlaylistSummary(name="Mix", matched=3, unmatched=1, skipped=5)

        assert summary.attempts == 4
        assert summary.conversion_rate == 0.75

    def test_conversion_rate_without_attempts(self):
        """Nothing to search counts as full conversion."""
        assert PlaylistSummary(name="Empty").conversion_rate == 1.0

    def test_to_json(self):
        """Status is serialized by value."""
        data = PlaylistSummary(name="Mix", status=PlaylistStatus.SYNCED, matched=1).to_json()

        assert data["status"] == "synced"
        assert data["totals"]["matched"] == 1


class TestMetricsCollector:
    """Tests for run metrics."""

    def test_additive_counters(self):
        """Retries and waits accumulate; negatives are ignored."""
        metrics = MetricsCollector()
        metrics.record_retry_count(2)
        metrics.record_retry_count(-1)
        metrics.record_rl_wait_ms(150)
        metrics.record_rl_wait_ms(50)
        metrics.record_duration_ms(1200)

        assert metrics.get_metrics() == {"retry_count": 2, "rl_wait_ms": 200, "duration_ms": 1200}


class TestSyncReport:
    """Tests for the run report."""

    def setup_method(self):
        """Set up test fixtures."""
        self.report = SyncReport(run_id="run-1", source="spotify", destination="yandex")
        self.source = Track(id="s1", title="One", artists=("A",))
        self.destination = Track(id="d1", title="One", artists=("A",), platform="yandex")

    def test_summary_counts_buckets(self):
        """Totals reflect every recorded track."""
        self.report.record_matched("Mix", self.source, self.destination, 1.0, "isrc")
        self.report.record_unmatched("Mix", Track(id="s2", title="Two"), "below_threshold")
        self.report.record_skipped("Mix", Track(id="s3", title="Three"), "already_present")
        self.report.record_like_added(2)

        assert self.report.summary() == {
            "total": 3, "matched": 1, "unmatched": 1, "skipped": 1, "failed": 0, "likesAdded": 2,
        }

    def test_finished_report_is_immutable(self):
        """Recording after finish raises."""
        self.report.finish(cancelled=True)

        assert self.report.finished
        assert self.report.cancelled
        with pytest.raises(RuntimeError):
            self.report.record_failed("Mix", self.source, "write failed")

    def test_finish_is_idempotent(self):
        """A second finish keeps the first timestamp."""
        self.report.finish()
        finished_at = self.report.finished_at

        self.report.finish(cancelled=True)

        assert self.report.finished_at == finished_at
        assert self.report.cancelled is False

    def test_to_json_is_serializable(self):
        """The report serializes to plain JSON."""
        self.report.record_matched("Mix", self.source, self.destination, 0.91234, "fuzzy")
        self.report.record_no_album("Mix", Track(id="s9", title="Nine"))
        self.report.finish()

        data = json.loads(json.dumps(self.report.to_json()))

        assert data["header"]["runId"] == "run-1"
        assert data["header"]["finishedAt"] is not None
        assert data["matched"][0]["score"] == 0.9123
        assert data["noAlbum"][0]["reason"] == "missing_album"


class TestDebugReportWriter:
    """Tests for the debug file writer."""

    def test_writes_files_keyed_by_playlist(self, tmp_path):
        """Each debug file groups entries by playlist name."""
        report = SyncReport(run_id="run-1", source="spotify", destination="yandex")
        report.record_playlist(PlaylistSummary(name="Mix", status=PlaylistStatus.SYNCED, matched=1, unmatched=1))
        report.record_playlist(PlaylistSummary(name="Skipped", status=PlaylistStatus.SKIPPED))
        report.record_matched("Mix", Track(id="s1", title="One"), Track(id="d1", title="One"), 1.0, "isrc")
        report.record_unmatched("Mix", Track(id="s2", title="Two"), "below_threshold")

        writer = DebugReportWriter(str(tmp_path / "debug"))
        written = writer.write(report)

        assert len(written) == 4
        with open(os.path.join(writer.debug_dir, DebugReportWriter.CONVERSION_RATE)) as f:
            conversion = json.load(f)
        assert conversion == {"Mix": {"percentage": 0.5, "number": "1/2"}}
        with open(os.path.join(writer.debug_dir, DebugReportWriter.MISSING_SONGS)) as f:
            missing = json.load(f)
        assert [t["id"] for t in missing["Mix"]] == ["s2"]

    def test_conversion_rate_is_a_ratio(self, tmp_path):
        """The conversion figure is the matched share in [0, 1], not a percent."""
        report = SyncReport(run_id="run-2", source="spotify", destination="tidal")
        report.record_playlist(PlaylistSummary(name="Thirds", status=PlaylistStatus.SYNCED, matched=2, unmatched=1))
        report.record_playlist(PlaylistSummary(name="Empty", status=PlaylistStatus.SYNCED))

        writer = DebugReportWriter(str(tmp_path / "debug"))
        writer.write(report)

        with open(os.path.join(writer.debug_dir, DebugReportWriter.CONVERSION_RATE)) as f:
            conversion = json.load(f)
        assert conversion["Thirds"] == {"percentage": 0.6667, "number": "2/3"}
        assert conversion["Empty"] == {"percentage": 1.0, "number": "0/0"}
