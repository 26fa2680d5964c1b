import logging
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from tunesync.application.gateway import RetryingProvider
from tunesync.application.idempotency import DestinationIndex, calculate_snapshot_hash, dedup_tracks
from tunesync.application.matching import MatchResult, TrackMatcher
from tunesync.crosscutting.config import SyncConfig
from tunesync.crosscutting.logging import (
    CorrelationContext, log_playlist_complete, log_playlist_start, log_run_complete, log_run_start,
)
from tunesync.crosscutting.ratelimit import RetryPolicy
from tunesync.crosscutting.reporting import (
    LIKED_TRACKS, DebugReportWriter, PlaylistStatus, PlaylistSummary, SyncReport,
)
from tunesync.domain.entities import Playlist, Track
from tunesync.domain.errors import (
    ADAPTER_ERRORS, CapabilityAbsent, ConfigurationInvalid, SyncAborted, SyncCancelled, Unauthorized,
)
from tunesync.domain.ports import MusicProvider


logger = logging.getLogger(__name__)

# Playlists the catalogs generate on their own; never worth mirroring.
PLATFORM_PLAYLISTS = frozenset({
    "New playlist",
    "Your Likes",
    "My Supermix",
    "Discover Mix",
    "Episodes for Later",
    "New Release Mix",
    "Archive Mix",
    "Liked Songs",
    "Discover Weekly",
    "Big Room House Mix",
    "Motivation Electronic Mix",
    "High Energy Mix",
})


class SyncState(str, Enum):
    """Orchestrator states, in the order a run walks through them."""

    INIT = "init"
    ENUMERATING_PLAYLISTS = "enumerating_playlists"
    FETCHING = "fetching"
    MATCHING = "matching"
    WRITING = "writing"
    SYNCING_LIKES = "syncing_likes"
    DONE = "done"


def split_into_batches(items: Sequence[Any], batch_size: int) -> List[List[Any]]:
    """Split items into consecutive batches of at most ``batch_size``."""
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


class ProgressTracker:
    """Tracks progress and provides periodic updates."""

    def __init__(self, total_tracks: int, label: str = "", progress_interval_sec: int = 60):
        """Initialize progress tracker.

        Args:
            total_tracks: Total number of tracks to process
            label: Playlist name used in progress messages
            progress_interval_sec: Interval for progress updates in seconds
        """
        self.total_tracks = total_tracks
        self.label = label
        self.processed_tracks = 0
        self.counts: Dict[str, int] = {"matched": 0, "unmatched": 0, "skipped": 0, "failed": 0}
        self.progress_interval_sec = progress_interval_sec
        self.start_time = time.time()
        self.last_progress_time = self.start_time

    def update(self, outcome: str) -> None:
        """Count one processed track and log every 10 tracks or every interval."""
        self.processed_tracks += 1
        self.counts[outcome] = self.counts.get(outcome, 0) + 1

        current_time = time.time()
        if (self.processed_tracks % 10 == 0 or
                current_time - self.last_progress_time >= self.progress_interval_sec):
            elapsed_sec = current_time - self.start_time
            progress_pct = (self.processed_tracks / self.total_tracks) * 100 if self.total_tracks else 100.0
            logger.info(f"Progress '{self.label}': {self.processed_tracks}/{self.total_tracks} tracks "
                        f"({progress_pct:.1f}%) in {elapsed_sec:.1f}s. "
                        f"Matched: {self.counts['matched']}, Unmatched: {self.counts['unmatched']}, "
                        f"Skipped: {self.counts['skipped']}, Failed: {self.counts['failed']}")
            self.last_progress_time = current_time

    def get_final_summary(self) -> Dict[str, Any]:
        total_time = time.time() - self.start_time
        return {
            "total_tracks": self.total_tracks,
            "processed_tracks": self.processed_tracks,
            **self.counts,
            "total_time_seconds": round(total_time, 3),
        }


class SyncOrchestrator:
    """Drives one-way reconciliation of playlists and likes between two catalogs.

    Playlists and their tracks are processed sequentially. Every adapter call
    goes through the retry policy; per-track and per-playlist failures are
    recorded in the report, while ``Unauthorized`` aborts the run with
    ``SyncAborted``. Nothing is ever removed from the destination and the
    source is only read.
    """

    def __init__(self,
                 source: MusicProvider,
                 destination: MusicProvider,
                 matcher: TrackMatcher,
                 config: SyncConfig,
                 retry_policy: Optional[RetryPolicy] = None,
                 debug_writer: Optional[DebugReportWriter] = None,
                 run_id: Optional[str] = None):
        self.config = config
        self.matcher = matcher
        self.retry_policy = retry_policy or RetryPolicy(
            max_tries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )
        self.metrics = self.retry_policy.metrics
        self.source = RetryingProvider(source, self.retry_policy)
        self.destination = RetryingProvider(destination, self.retry_policy)
        self.debug_writer = debug_writer
        self.run_id = run_id or f"tunesync_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"

        self.state = SyncState.INIT
        self.report: Optional[SyncReport] = None
        self._current_playlist: Optional[str] = None
        self._current_track: Optional[Track] = None
        self._destination_likes: Optional[DestinationIndex] = None
        self._likes_unavailable = False

    def _set_state(self, state: SyncState) -> None:
        if state != self.state:
            logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled("Sync cancelled by user")

    def run(self, cancel_event: Optional[threading.Event] = None) -> SyncReport:
        """Execute the run and return its finished report.

        Raises:
            ConfigurationInvalid: before any adapter call when the config is unusable, and at
                start when the two accounts are in different countries
            SyncAborted: on a fatal adapter error; ``report`` holds the partial report
        """
        self._set_state(SyncState.INIT)
        self.config.validate()
        if not self.config.diff_country:
            self._check_same_country()

        self.report = SyncReport(
            run_id=self.run_id,
            source=self.config.source,
            destination=self.config.destination,
            metrics=self.metrics,
        )
        started = time.monotonic()
        log_run_start(logger, self.run_id, self.config.source, self.config.destination,
                      sync_likes=self.config.sync_likes, like_all=self.config.like_all)

        try:
            with CorrelationContext(run_id=self.run_id):
                playlists = self._enumerate_playlists()
                for playlist in playlists:
                    self._check_cancelled(cancel_event)
                    self._sync_playlist(playlist, cancel_event)

                if self.config.sync_likes:
                    self._check_cancelled(cancel_event)
                    self._sync_likes(cancel_event)
        except SyncCancelled:
            logger.warning("Sync cancelled; tracks already written are kept")
            self.report.cancelled = True
        except Unauthorized as e:
            aborted = self._abort(e, e.platform)
            raise aborted from e
        except SyncAborted as e:
            e.report = self.report
            self.report.aborted = str(e)
            raise
        finally:
            self.metrics.record_duration_ms(int((time.monotonic() - started) * 1000))
            self.report.finish()
            self._set_state(SyncState.DONE)
            self._write_debug_reports()
            log_run_complete(logger, self.run_id, len(self.report.playlists), self.report.total_tracks,
                             **self.report.summary())

        return self.report

    def _country_of(self, provider: RetryingProvider) -> Optional[str]:
        try:
            code = provider.country_code()
        except Unauthorized as e:
            raise SyncAborted(e, platform=e.platform or provider.platform, stage=self.state.value) from e
        except ADAPTER_ERRORS as e:
            logger.warning(f"Cannot determine the {provider.platform} account country: {e}")
            return None
        return code.strip().upper() if code else None

    def _check_same_country(self) -> None:
        """Refuse to pair accounts registered in different countries.

        Platforms that cannot report a country are not checked.
        """
        source_country = self._country_of(self.source)
        destination_country = self._country_of(self.destination)
        if source_country and destination_country and source_country != destination_country:
            raise ConfigurationInvalid(
                f"Source and destination accounts are in different countries "
                f"({source_country} vs {destination_country}). Set diff_country (--diff-country) "
                f"to sync anyway; matches may be incorrect."
            )

    def _abort(self, error: Exception, platform: Optional[str]) -> SyncAborted:
        track = self._current_track.describe() if self._current_track else None
        aborted = SyncAborted(
            error,
            platform=platform,
            playlist=self._current_playlist,
            track=track,
            stage=self.state.value,
            report=self.report,
        )
        self.report.aborted = str(aborted)
        logger.error(str(aborted))
        return aborted

    def _write_debug_reports(self) -> None:
        if not self.config.debug:
            return
        writer = self.debug_writer or DebugReportWriter(self.config.debug_dir)
        try:
            writer.write(self.report)
        except OSError as e:
            logger.error(f"Failed to write debug reports to {writer.debug_dir}: {e}")

    def _enumerate_playlists(self) -> List[Playlist]:
        self._set_state(SyncState.ENUMERATING_PLAYLISTS)
        try:
            playlists = self.source.list_playlists(self.config.owner_filter)
        except ADAPTER_ERRORS as e:
            raise self._abort(e, self.source.platform) from e

        selected = []
        for playlist in playlists:
            reason = self._skip_reason(playlist)
            if reason:
                logger.info(f"Skipping playlist '{playlist.name}': {reason}")
                self.report.record_playlist(PlaylistSummary(
                    name=playlist.name,
                    source_id=playlist.id,
                    status=PlaylistStatus.SKIPPED,
                    reason=reason,
                ))
                continue
            selected.append(playlist)

        logger.info(f"Found {len(selected)} playlists to sync ({len(playlists) - len(selected)} skipped)")
        return selected

    def _skip_reason(self, playlist: Playlist) -> Optional[str]:
        if playlist.name in self.config.skip_playlists:
            return "skip_list"
        if self.config.owner_filter and playlist.owner_id != self.config.owner_filter:
            return "owner_mismatch"
        if playlist.name in PLATFORM_PLAYLISTS:
            return "platform_generated"
        if playlist.track_count == 0:
            return "empty"
        return None

    def _sync_playlist(self, playlist: Playlist, cancel_event: Optional[threading.Event]) -> None:
        summary = self.report.record_playlist(PlaylistSummary(name=playlist.name, source_id=playlist.id))
        self._current_playlist = playlist.name
        try:
            with CorrelationContext(playlist=playlist.name):
                self._sync_playlist_tracks(playlist, summary, cancel_event)
        except SyncCancelled:
            summary.status = PlaylistStatus.CANCELLED
            raise
        self._current_playlist = None
        self._current_track = None

    def _sync_playlist_tracks(self, playlist: Playlist, summary: PlaylistSummary,
                              cancel_event: Optional[threading.Event]) -> None:
        self._set_state(SyncState.FETCHING)
        try:
            source_tracks = self.source.list_tracks(playlist)
        except ADAPTER_ERRORS as e:
            self._fail_playlist(summary, f"failed to fetch source tracks: {e}")
            return

        if not source_tracks:
            summary.status = PlaylistStatus.SKIPPED
            summary.reason = "empty"
            logger.info(f"Skipping playlist '{playlist.name}': empty")
            return

        tracks, duplicates = dedup_tracks(source_tracks)
        for duplicate in duplicates:
            logger.warning(f"Duplicate track {duplicate.describe()} in source playlist '{playlist.name}'")
            self.report.record_skipped(playlist.name, duplicate, "duplicate_in_source")
            summary.skipped += 1
        summary.snapshot_hash = calculate_snapshot_hash(tracks)
        log_playlist_start(logger, playlist.name, len(tracks), snapshot_hash=summary.snapshot_hash)

        try:
            destination_playlist = self.destination.get_or_create_playlist(playlist.name)
            destination_tracks = self.destination.list_tracks(destination_playlist)
        except ADAPTER_ERRORS as e:
            self._fail_playlist(summary, f"failed to prepare destination playlist: {e}")
            return
        summary.destination_id = destination_playlist.id

        index = DestinationIndex(destination_tracks, self.matcher, platform=self.destination.platform)

        self._set_state(SyncState.MATCHING)
        pending = self._resolve_tracks(playlist.name, tracks, index, summary, cancel_event)

        self._set_state(SyncState.WRITING)
        written = self._write_tracks(playlist.name, destination_playlist, pending, index, summary)

        if self.config.like_all and written:
            self._like_written(written)

        summary.status = PlaylistStatus.SYNCED
        log_playlist_complete(logger, playlist.name, summary.matched, summary.unmatched,
                              skipped=summary.skipped, failed=summary.failed)

    def _fail_playlist(self, summary: PlaylistSummary, reason: str) -> None:
        logger.error(f"Playlist '{summary.name}' failed: {reason}")
        summary.status = PlaylistStatus.FAILED
        summary.reason = reason

    def _resolve_tracks(self, section: str, tracks: Sequence[Track], index: DestinationIndex,
                        summary: PlaylistSummary,
                        cancel_event: Optional[threading.Event]) -> List[Tuple[Track, MatchResult]]:
        """Match every source track not already present; return the pairs to write."""
        pending: List[Tuple[Track, MatchResult]] = []
        queued_ids = set()
        progress = ProgressTracker(len(tracks), label=section)

        for track in tracks:
            self._check_cancelled(cancel_event)
            self._current_track = track
            outcome = self._resolve_track(section, track, index, queued_ids, pending, summary)
            progress.update(outcome)

        self._current_track = None
        logger.info(f"Matching summary for '{section}': {progress.get_final_summary()}")
        return pending

    def _resolve_track(self, section: str, track: Track, index: DestinationIndex, queued_ids: set,
                       pending: List[Tuple[Track, MatchResult]], summary: PlaylistSummary) -> str:
        if index.find(track) is not None:
            self.report.record_skipped(section, track, "already_present")
            summary.skipped += 1
            return "skipped"

        if not track.album:
            self.report.record_no_album(section, track)

        try:
            candidates = self.destination.search(track)
        except ADAPTER_ERRORS as e:
            logger.warning(f"Search failed for {track.describe()}: {e}")
            self.report.record_failed(section, track, f"search failed: {e}")
            summary.failed += 1
            return "failed"

        result = self.matcher.match(track, candidates)
        if not result.matched:
            logger.debug(f"No match for {track.describe()}: {result.reason} (best score {result.score:.2f})")
            self.report.record_unmatched(section, track, result.reason)
            summary.unmatched += 1
            return "unmatched"

        resolved = result.track
        if index.contains_id(resolved.id) or resolved.id in queued_ids:
            self.report.record_skipped(section, track, "duplicate_in_destination")
            summary.skipped += 1
            return "skipped"

        queued_ids.add(resolved.id)
        pending.append((track, result))
        return "matched"

    def _write_tracks(self, section: str, playlist: Playlist, pending: List[Tuple[Track, MatchResult]],
                      index: DestinationIndex, summary: PlaylistSummary) -> List[Track]:
        written: List[Track] = []
        if not pending:
            return written

        logger.info(f"Adding {len(pending)} tracks to '{playlist.name}' on {self.destination.platform}")
        batches = split_into_batches(pending, self.config.batch_size)
        for batch_index, batch in enumerate(batches):
            tracks = [result.track for _, result in batch]
            failure_reason = "write rejected by destination"
            try:
                result = self.destination.add_tracks(playlist, tracks)
            except ADAPTER_ERRORS as e:
                logger.error(f"Failed to write batch {batch_index} to '{playlist.name}': {e}")
                failure_reason = f"write failed: {e}"
                stored = self._stored_ids(playlist)
            else:
                logger.info(f"Batch {batch_index} completed: added={result.added}, "
                            f"duplicates={result.duplicates}, errors={result.errors}")
                if result.failed_ids:
                    stored = {t.id for t in tracks} - set(result.failed_ids)
                elif result.errors:
                    stored = self._stored_ids(playlist)
                else:
                    stored = {t.id for t in tracks}

            for source, match in batch:
                if match.track.id not in stored:
                    self.report.record_failed(section, source, failure_reason)
                    summary.failed += 1
                    continue
                self.report.record_matched(section, source, match.track, match.score, match.reason)
                summary.matched += 1
                index.add(match.track)
                written.append(match.track)
        return written

    def _stored_ids(self, playlist: Playlist) -> Set[str]:
        """Ids the destination playlist holds now; empty when it cannot be read back."""
        try:
            return {t.id for t in self.destination.list_tracks(playlist)}
        except ADAPTER_ERRORS as e:
            logger.warning(f"Cannot verify writes to '{playlist.name}': {e}")
            return set()

    def _likes_index(self) -> Optional[DestinationIndex]:
        """Destination liked set, fetched once per run; None when the destination has no likes.

        Transient fetch failures propagate so the next caller can try again.
        """
        if self._likes_unavailable:
            return None
        if self._destination_likes is None:
            try:
                likes = self.destination.get_likes()
            except CapabilityAbsent as e:
                logger.info(f"Likes unavailable on destination: {e}")
                self._likes_unavailable = True
                return None
            self._destination_likes = DestinationIndex(likes, self.matcher, platform=self.destination.platform)
        return self._destination_likes

    def _like_written(self, tracks: Sequence[Track]) -> None:
        try:
            likes = self._likes_index()
        except ADAPTER_ERRORS as e:
            logger.warning(f"Failed to fetch destination likes, not liking written tracks: {e}")
            return
        if likes is None:
            return

        for track in tracks:
            if likes.contains_id(track.id):
                continue
            try:
                self.destination.add_like(track)
            except CapabilityAbsent as e:
                logger.info(f"Liking disabled: {e}")
                self._likes_unavailable = True
                return
            except ADAPTER_ERRORS as e:
                logger.warning(f"Failed to like {track.describe()}: {e}")
                continue
            likes.add(track)
            self.report.record_like_added()

    def _sync_likes(self, cancel_event: Optional[threading.Event]) -> None:
        self._set_state(SyncState.SYNCING_LIKES)
        summary = self.report.record_playlist(PlaylistSummary(name=LIKED_TRACKS, source_id="likes"))
        self._current_playlist = LIKED_TRACKS

        try:
            with CorrelationContext(playlist=LIKED_TRACKS):
                try:
                    source_likes = self.source.get_likes()
                except CapabilityAbsent as e:
                    logger.info(f"Skipping likes sync: {e}")
                    summary.status = PlaylistStatus.SKIPPED
                    summary.reason = "capability_absent"
                    return
                except ADAPTER_ERRORS as e:
                    self._fail_playlist(summary, f"failed to fetch source likes: {e}")
                    return

                try:
                    likes = self._likes_index()
                except ADAPTER_ERRORS as e:
                    self._fail_playlist(summary, f"failed to fetch destination likes: {e}")
                    return
                if likes is None:
                    summary.status = PlaylistStatus.SKIPPED
                    summary.reason = "capability_absent"
                    return

                tracks, duplicates = dedup_tracks(source_likes)
                for duplicate in duplicates:
                    self.report.record_skipped(LIKED_TRACKS, duplicate, "duplicate_in_source")
                    summary.skipped += 1
                summary.snapshot_hash = calculate_snapshot_hash(tracks)
                log_playlist_start(logger, LIKED_TRACKS, len(tracks))

                pending = self._resolve_tracks(LIKED_TRACKS, tracks, likes, summary, cancel_event)
                self._write_likes(pending, likes, summary)

                summary.status = PlaylistStatus.SYNCED
                log_playlist_complete(logger, LIKED_TRACKS, summary.matched, summary.unmatched,
                                      skipped=summary.skipped, failed=summary.failed)
        except SyncCancelled:
            summary.status = PlaylistStatus.CANCELLED
            raise
        self._current_playlist = None

    def _write_likes(self, pending: List[Tuple[Track, MatchResult]], likes: DestinationIndex,
                     summary: PlaylistSummary) -> None:
        for position, (source, match) in enumerate(pending):
            try:
                self.destination.add_like(match.track)
            except CapabilityAbsent as e:
                logger.info(f"Liking disabled: {e}")
                self._likes_unavailable = True
                for remaining, _ in pending[position:]:
                    self.report.record_failed(LIKED_TRACKS, remaining, "likes unsupported by destination")
                    summary.failed += 1
                return
            except ADAPTER_ERRORS as e:
                logger.warning(f"Failed to like {match.track.describe()}: {e}")
                self.report.record_failed(LIKED_TRACKS, source, f"like failed: {e}")
                summary.failed += 1
                continue

            self.report.record_matched(LIKED_TRACKS, source, match.track, match.score, match.reason)
            summary.matched += 1
            likes.add(match.track)
            self.report.record_like_added()
