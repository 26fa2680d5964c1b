from dataclasses import dataclass
from typing import List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from tunesync.domain.entities import Candidate, Track
from tunesync.domain.normalization import normalize_isrc, normalize_string


DEFAULT_MATCH_THRESHOLD = 0.8
DEFAULT_DURATION_TOLERANCE_MS = 5000
DEFAULT_TITLE_WEIGHT = 0.7
DEFAULT_ALBUM_WEIGHT = 0.3


def string_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Levenshtein similarity in [0, 1] over normalized text.

    Titles made only of punctuation or bracketed text normalize to nothing;
    those are compared on their raw lower-cased form instead.
    """
    a = normalize_string(left)
    b = normalize_string(right)
    if not a and not b:
        a = (left or "").strip().lower()
        b = (right or "").strip().lower()
    return float(Levenshtein.normalized_similarity(a, b))


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one source track against destination candidates."""

    track: Optional[Track] = None
    score: float = 0.0
    reason: str = "not_found"

    @property
    def matched(self) -> bool:
        return self.track is not None


@dataclass(frozen=True)
class ExactByIsrc(MatchResult):
    score: float = 1.0
    reason: str = "isrc_exact"


@dataclass(frozen=True)
class FuzzyMatch(MatchResult):
    reason: str = "fuzzy_match"


@dataclass(frozen=True)
class NoMatch(MatchResult):
    pass


class TrackMatcher:
    """Decides whether a destination candidate is the same recording as a source track.

    ISRC equality is authoritative. Otherwise candidates are scored on title and
    album similarity, with duration acting as a hard filter. Artists are never
    consulted. The matcher is pure and performs no I/O.
    """

    def __init__(self,
                 threshold: float = DEFAULT_MATCH_THRESHOLD,
                 duration_tolerance_ms: int = DEFAULT_DURATION_TOLERANCE_MS,
                 title_weight: float = DEFAULT_TITLE_WEIGHT,
                 album_weight: float = DEFAULT_ALBUM_WEIGHT):
        if not 0.0 < threshold <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        if duration_tolerance_ms < 0:
            raise ValueError(f"duration_tolerance_ms must be >= 0, got {duration_tolerance_ms}")
        if title_weight <= 0 or album_weight <= 0:
            raise ValueError("title_weight and album_weight must be positive")
        self.threshold = threshold
        self.duration_tolerance_ms = duration_tolerance_ms
        self.title_weight = title_weight
        self.album_weight = album_weight

    def duration_ok(self, source: Track, candidate: Track) -> bool:
        """True unless both durations are known and differ by more than the tolerance."""
        if source.duration_ms is None or candidate.duration_ms is None:
            return True
        return abs(source.duration_ms - candidate.duration_ms) <= self.duration_tolerance_ms

    def score(self, source: Track, candidate: Track) -> Optional[float]:
        """Composite title/album score, or None when the candidate is disqualified."""
        if not self.duration_ok(source, candidate):
            return None

        title_score = string_similarity(source.title, candidate.title)
        if source.album and candidate.album:
            return self.combine(title_score, string_similarity(source.album, candidate.album))
        return title_score

    def combine(self, title_score: float, album_score: Optional[float]) -> float:
        """Weighted composite; the title alone decides when there is no album score."""
        if album_score is None:
            return title_score
        total_weight = self.title_weight + self.album_weight
        return (self.title_weight * title_score + self.album_weight * album_score) / total_weight

    def min_title_score(self) -> float:
        """Lowest title similarity that can still reach the threshold, assuming a perfect album."""
        floor = (self.threshold * (self.title_weight + self.album_weight) - self.album_weight) / self.title_weight
        return max(0.0, min(self.threshold, floor))

    def score_candidates(self, source: Track, candidates: Sequence[Track]) -> List[Candidate]:
        """Score every qualifying candidate, keeping the search order."""
        scored = []
        for candidate in candidates:
            value = self.score(source, candidate)
            if value is not None:
                scored.append(Candidate(track=candidate, score=value))
        return scored

    def match(self, source: Track, candidates: Sequence[Track]) -> MatchResult:
        if not candidates:
            return NoMatch(reason="not_found")

        source_isrc = normalize_isrc(source.isrc)
        if source_isrc:
            for candidate in candidates:
                if normalize_isrc(candidate.isrc) == source_isrc:
                    return ExactByIsrc(track=candidate)

        if not (source.title or "").strip():
            return NoMatch(reason="insufficient_metadata")

        best: Optional[Candidate] = None
        for scored in self.score_candidates(source, candidates):
            # Strict comparison keeps the earliest candidate on ties.
            if best is None or scored.score > best.score:
                best = scored

        if best is None:
            return NoMatch(reason="not_found")
        if best.score >= self.threshold:
            return FuzzyMatch(track=best.track, score=best.score)
        return NoMatch(score=best.score, reason="below_threshold")

    def find_equivalent(self, track: Track, tracks: Sequence[Track]) -> Optional[Track]:
        """Return the member of ``tracks`` the matcher considers the same recording."""
        result = self.match(track, tracks)
        return result.track if result.matched else None
