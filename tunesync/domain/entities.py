from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Track:
    """Catalog-independent track record.

    ``duration_ms`` of ``None`` (or a non-positive value, which is folded into
    ``None``) means the duration is unknown. ``uri`` is the platform write
    handle when it differs from ``id``.
    """

    id: str = ""
    title: str = ""
    artists: Tuple[str, ...] = ()
    album: Optional[str] = None
    duration_ms: Optional[int] = None
    isrc: Optional[str] = None
    uri: Optional[str] = None
    platform: str = ""

    def __post_init__(self):
        if self.artists is None:
            object.__setattr__(self, 'artists', ())
        elif not isinstance(self.artists, tuple):
            object.__setattr__(self, 'artists', tuple(self.artists))
        if self.duration_ms is not None and self.duration_ms <= 0:
            object.__setattr__(self, 'duration_ms', None)
        if self.album is not None and not self.album.strip():
            object.__setattr__(self, 'album', None)
        if self.isrc is not None and not self.isrc.strip():
            object.__setattr__(self, 'isrc', None)

    @property
    def write_handle(self) -> str:
        return self.uri or self.id

    def build_queries(self) -> List[str]:
        """Search texts for this track, most specific first."""
        queries: List[str] = []
        title = (self.title or "").strip()
        if not title:
            return queries
        if self.artists:
            queries.append(f"{title} {self.artists[0]}")
        if self.album:
            queries.append(f"{title} {self.album}")
        queries.append(title)

        unique: List[str] = []
        for query in queries:
            if query not in unique:
                unique.append(query)
        return unique

    def describe(self) -> str:
        artist = self.artists[0] if self.artists else "Unknown"
        return f"'{self.title}' by {artist}"

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "artists": list(self.artists),
            "album": self.album,
            "durationMs": self.duration_ms,
            "isrc": self.isrc,
            "uri": self.uri,
            "platform": self.platform,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Track":
        return cls(
            id=str(data.get("id") or ""),
            title=data.get("title", ""),
            artists=tuple(data.get("artists") or ()),
            album=data.get("album"),
            duration_ms=data.get("durationMs"),
            isrc=data.get("isrc"),
            uri=data.get("uri"),
            platform=data.get("platform", ""),
        )


@dataclass(frozen=True)
class Playlist:
    """Playlist as listed by a provider, optionally carrying its tracks."""

    id: str
    name: str
    owner_id: Optional[str] = None
    platform: str = ""
    tracks: Tuple[Track, ...] = ()
    track_count: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.tracks, tuple):
            object.__setattr__(self, 'tracks', tuple(self.tracks or ()))
        if self.track_count is None and self.tracks:
            object.__setattr__(self, 'track_count', len(self.tracks))

    def with_tracks(self, tracks: Sequence[Track]) -> "Playlist":
        return replace(self, tracks=tuple(tracks), track_count=len(tracks))

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "platform": self.platform,
            "trackCount": self.track_count,
            "tracks": [t.to_json() for t in self.tracks],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Playlist":
        tracks = tuple(Track.from_json(t) for t in data.get("tracks") or [])
        return cls(
            id=str(data.get("id") or data.get("name", "")),
            name=data["name"],
            owner_id=data.get("ownerId"),
            platform=data.get("platform", ""),
            tracks=tracks,
            track_count=data.get("trackCount", len(tracks)),
        )


@dataclass(frozen=True)
class Candidate:
    """Destination search result paired with its score against a source track."""

    track: Track
    score: float


@dataclass(frozen=True)
class AddResult:
    """Result of a batch add operation to a playlist.

    ``failed_ids`` lists the native ids the destination rejected; they were
    not written and ``errors`` counts them.
    """

    added: int
    duplicates: int
    errors: int = 0
    failed_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.failed_ids, tuple):
            object.__setattr__(self, 'failed_ids', tuple(self.failed_ids))
        if self.failed_ids and self.errors < len(self.failed_ids):
            object.__setattr__(self, 'errors', len(self.failed_ids))
