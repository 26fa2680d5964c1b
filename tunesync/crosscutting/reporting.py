import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tunesync.domain.entities import Track


logger = logging.getLogger(__name__)

LIKED_TRACKS = "Liked tracks"


class PlaylistStatus(str, Enum):
    """Outcome of one playlist step."""

    PENDING = "pending"
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TrackEntry:
    """A source track recorded as unmatched, skipped, failed or missing its album."""

    playlist: str
    track: Track
    reason: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {
            "playlist": self.playlist,
            "track": self.track.to_json(),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class MatchedPair:
    """A source track and the destination track written for it."""

    playlist: str
    source: Track
    destination: Track
    score: float
    reason: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "playlist": self.playlist,
            "source": self.source.to_json(),
            "destination": self.destination.to_json(),
            "score": round(self.score, 4),
            "reason": self.reason,
        }


@dataclass
class PlaylistSummary:
    """Per-playlist counters, updated while the playlist is processed."""

    name: str
    source_id: str = ""
    destination_id: Optional[str] = None
    status: PlaylistStatus = PlaylistStatus.PENDING
    reason: Optional[str] = None
    matched: int = 0
    unmatched: int = 0
    skipped: int = 0
    failed: int = 0
    snapshot_hash: str = ""

    @property
    def attempts(self) -> int:
        return self.matched + self.unmatched + self.failed

    @property
    def conversion_rate(self) -> float:
        """Matched share of searched tracks; 1.0 when nothing needed searching."""
        if self.attempts == 0:
            return 1.0
        return self.matched / self.attempts

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sourceId": self.source_id,
            "destinationId": self.destination_id,
            "status": self.status.value,
            "reason": self.reason,
            "totals": {
                "matched": self.matched,
                "unmatched": self.unmatched,
                "skipped": self.skipped,
                "failed": self.failed,
            },
            "conversionRate": round(self.conversion_rate, 4),
            "snapshotHash": self.snapshot_hash,
        }


class MetricsCollector:
    """Collects and aggregates metrics during sync operations."""

    def __init__(self):
        self._metrics: Dict[str, Any] = {
            "retry_count": 0,
            "rl_wait_ms": 0,
            "duration_ms": 0,
        }

    def record_retry_count(self, count: int) -> None:
        """Record retry count (additive)."""
        self._metrics["retry_count"] += max(0, count)

    def record_rl_wait_ms(self, wait_ms: int) -> None:
        """Record rate limit wait time in milliseconds (additive)."""
        self._metrics["rl_wait_ms"] += max(0, wait_ms)

    def record_duration_ms(self, duration_ms: int) -> None:
        """Record operation duration in milliseconds."""
        self._metrics["duration_ms"] = max(0, duration_ms)

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.copy()

    def to_json(self) -> Dict[str, Any]:
        return self.get_metrics()


@dataclass
class SyncReport:
    """Structured record of one sync run.

    Built incrementally by the orchestrator and closed by ``finish()``; any
    further record raises ``RuntimeError``.
    """

    run_id: str
    source: str
    destination: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    aborted: Optional[str] = None
    likes_added: int = 0
    matched: List[MatchedPair] = field(default_factory=list)
    unmatched: List[TrackEntry] = field(default_factory=list)
    skipped: List[TrackEntry] = field(default_factory=list)
    failed: List[TrackEntry] = field(default_factory=list)
    no_album: List[TrackEntry] = field(default_factory=list)
    playlists: List[PlaylistSummary] = field(default_factory=list)
    metrics: MetricsCollector = field(default_factory=MetricsCollector)

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def _ensure_open(self) -> None:
        if self.finished:
            raise RuntimeError(f"Report {self.run_id} is finished and can no longer change")

    def record_playlist(self, summary: PlaylistSummary) -> PlaylistSummary:
        self._ensure_open()
        self.playlists.append(summary)
        return summary

    def record_matched(self, playlist: str, source: Track, destination: Track,
                       score: float, reason: str) -> None:
        self._ensure_open()
        self.matched.append(MatchedPair(playlist, source, destination, score, reason))

    def record_unmatched(self, playlist: str, track: Track, reason: str) -> None:
        self._ensure_open()
        self.unmatched.append(TrackEntry(playlist, track, reason))

    def record_skipped(self, playlist: str, track: Track, reason: str) -> None:
        self._ensure_open()
        self.skipped.append(TrackEntry(playlist, track, reason))

    def record_failed(self, playlist: str, track: Track, reason: str) -> None:
        self._ensure_open()
        self.failed.append(TrackEntry(playlist, track, reason))

    def record_no_album(self, playlist: str, track: Track) -> None:
        self._ensure_open()
        self.no_album.append(TrackEntry(playlist, track, "missing_album"))

    def record_like_added(self, count: int = 1) -> None:
        self._ensure_open()
        self.likes_added += count

    def finish(self, cancelled: Optional[bool] = None) -> None:
        if self.finished:
            return
        if cancelled is not None:
            self.cancelled = cancelled
        self.finished_at = datetime.utcnow()

    @property
    def total_tracks(self) -> int:
        return len(self.matched) + len(self.unmatched) + len(self.skipped) + len(self.failed)

    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total_tracks,
            "matched": len(self.matched),
            "unmatched": len(self.unmatched),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "likesAdded": self.likes_added,
        }

    def to_json(self) -> Dict[str, Any]:
        """Serialize report to JSON."""
        return {
            "header": {
                "runId": self.run_id,
                "source": self.source,
                "destination": self.destination,
                "startedAt": self.started_at.isoformat(),
                "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
                "cancelled": self.cancelled,
                "aborted": self.aborted,
            },
            "totals": self.summary(),
            "metrics": self.metrics.to_json(),
            "playlists": [p.to_json() for p in self.playlists],
            "matched": [m.to_json() for m in self.matched],
            "unmatched": [e.to_json() for e in self.unmatched],
            "skipped": [e.to_json() for e in self.skipped],
            "failed": [e.to_json() for e in self.failed],
            "noAlbum": [e.to_json() for e in self.no_album],
        }


class DebugReportWriter:
    """Writes the per-run debug files, keyed by playlist name."""

    CONVERSION_RATE = "conversion_rate.json"
    MISSING_SONGS = "missing_songs.json"
    NEW_SONGS = "new_songs.json"
    NO_ALBUM_SONGS = "songs_with_no_albums.json"

    def __init__(self, debug_dir: str = "debug"):
        self.debug_dir = debug_dir

    def write(self, report: SyncReport) -> List[str]:
        os.makedirs(self.debug_dir, exist_ok=True)

        conversion = {}
        for summary in report.playlists:
            if summary.status == PlaylistStatus.SKIPPED:
                continue
            conversion[summary.name] = {
                "percentage": round(summary.conversion_rate, 4),
                "number": f"{summary.matched}/{summary.attempts}",
            }

        missing: Dict[str, List[Dict[str, Any]]] = {}
        for entry in report.unmatched:
            missing.setdefault(entry.playlist, []).append(entry.track.to_json())

        new_songs: Dict[str, List[Dict[str, Any]]] = {}
        for pair in report.matched:
            new_songs.setdefault(pair.playlist, []).append({
                "source": pair.source.to_json(),
                "destination": pair.destination.to_json(),
                "score": round(pair.score, 4),
                "reason": pair.reason,
            })

        no_album: Dict[str, List[Dict[str, Any]]] = {}
        for entry in report.no_album:
            no_album.setdefault(entry.playlist, []).append(entry.track.to_json())

        written = []
        for filename, payload in (
            (self.CONVERSION_RATE, conversion),
            (self.MISSING_SONGS, missing),
            (self.NEW_SONGS, new_songs),
            (self.NO_ALBUM_SONGS, no_album),
        ):
            path = os.path.join(self.debug_dir, filename)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            written.append(path)

        logger.info(f"Debug reports written to {self.debug_dir}")
        return written
