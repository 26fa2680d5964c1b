from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, runtime_checkable

from .entities import AddResult, Playlist, Track


@runtime_checkable
class MusicProvider(Protocol):
    """Port defining the capability set every catalog adapter exposes.

    Adapters satisfy it structurally. They map provider-specific payloads into
    domain entities and provider failures into ``tunesync.domain.errors``.
    """

    platform: str

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        """Return the user's playlists, restricted to ``owner_filter`` when set."""

    def get_or_create_playlist(self, name: str) -> Playlist:
        """Return the user's playlist with this exact name, creating an empty one if absent."""

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        """Return the tracks of a playlist in order."""

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        """Append tracks, skipping native ids already present."""

    def search(self, track: Track) -> List[Track]:
        """Return catalog candidates for a source track in a stable order."""

    def get_likes(self) -> List[Track]:
        """Return the liked set. Raises CapabilityAbsent when unsupported."""

    def add_like(self, track: Track) -> None:
        """Like a track. Raises CapabilityAbsent when unsupported."""

    def country_code(self) -> Optional[str]:
        """ISO country of the authenticated account, or None when the catalog does not expose it."""


@runtime_checkable
class RateLimiter(Protocol):
    """Per-platform throttle shared by every outbound call of one adapter."""

    def acquire(self, tokens: int = 1) -> float:
        """Block until capacity is available; return the seconds waited."""
