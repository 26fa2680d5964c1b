import hashlib
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from tunesync.application.matching import TrackMatcher
from tunesync.domain.entities import Track
from tunesync.domain.normalization import build_track_key, normalize_isrc, normalize_string


def calculate_snapshot_hash(tracks: Sequence[Track]) -> str:
    """Calculate a stable hash for a snapshot of tracks.

    The hash is deterministic and order-independent, so two runs over an
    unchanged source playlist report the same value.
    """
    if not tracks:
        return hashlib.sha256(b"empty_snapshot").hexdigest()

    track_keys = sorted(build_track_key(track) for track in tracks)
    snapshot_str = "\n".join(track_keys)
    return hashlib.sha256(snapshot_str.encode('utf-8')).hexdigest()


def dedup_tracks(tracks: Iterable[Track]) -> Tuple[List[Track], List[Track]]:
    """Split tracks into first occurrences and later repeats, keeping order."""
    seen = set()
    unique: List[Track] = []
    duplicates: List[Track] = []
    for track in tracks:
        key = build_track_key(track)
        if key in seen:
            duplicates.append(track)
            continue
        seen.add(key)
        unique.append(track)
    return unique, duplicates


class DestinationIndex:
    """Current content of a destination playlist or liked set.

    Membership is checked by native id first (only meaningful when the track
    comes from the same platform), then by ISRC, then by matcher equivalence.
    Titles are normalized once when a track is added; a lookup only scores
    the tracks whose title similarity can still reach the match threshold.
    """

    def __init__(self, tracks: Iterable[Track], matcher: TrackMatcher, platform: str = ""):
        self.matcher = matcher
        self.platform = platform
        self._tracks: List[Track] = []
        self._titles: List[str] = []
        self._by_id: Dict[str, Track] = {}
        self._by_isrc: Dict[str, Track] = {}
        for track in tracks:
            self.add(track)

    def __len__(self) -> int:
        return len(self._tracks)

    @property
    def ids(self) -> List[str]:
        return list(self._by_id)

    def contains_id(self, track_id: str) -> bool:
        return bool(track_id) and track_id in self._by_id

    def add(self, track: Track) -> None:
        self._tracks.append(track)
        self._titles.append(normalize_string(track.title))
        if track.id:
            self._by_id[track.id] = track
        isrc = normalize_isrc(track.isrc)
        if isrc:
            self._by_isrc.setdefault(isrc, track)

    def shortlist(self, track: Track) -> List[Track]:
        """Members whose normalized title is similar enough to matter, in insertion order."""
        title = normalize_string(track.title)
        if not title:
            return list(self._tracks)
        # Slack for float rounding at the boundary.
        cutoff = max(0.0, self.matcher.min_title_score() - 1e-9)
        hits = process.extract(
            title,
            self._titles,
            scorer=Levenshtein.normalized_similarity,
            score_cutoff=cutoff,
            limit=None,
        )
        return [self._tracks[index] for index in sorted(hit[2] for hit in hits)]

    def find(self, track: Track) -> Optional[Track]:
        if track.platform and track.platform == self.platform and self.contains_id(track.id):
            return self._by_id[track.id]
        if not self._tracks:
            return None
        isrc = normalize_isrc(track.isrc)
        if isrc and isrc in self._by_isrc:
            return self._by_isrc[isrc]
        candidates = self.shortlist(track)
        if not candidates:
            return None
        return self.matcher.find_equivalent(track, candidates)
