from typing import List, Optional, Sequence

from tunesync.crosscutting.ratelimit import RetryPolicy
from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import Unauthorized
from tunesync.domain.ports import MusicProvider


class RetryingProvider:
    """Routes every capability call of an adapter through a retry policy.

    Unauthorized errors are tagged with the adapter's platform so the
    orchestrator can report which side of the pairing failed.
    """

    def __init__(self, provider: MusicProvider, retry_policy: RetryPolicy):
        self._provider = provider
        self._retry = retry_policy

    @property
    def platform(self) -> str:
        return self._provider.platform

    @property
    def wrapped(self) -> MusicProvider:
        return self._provider

    def _call(self, operation: str, *args):
        method = getattr(self._provider, operation)
        try:
            return self._retry.call(method, *args, description=f"{self.platform}.{operation}")
        except Unauthorized as e:
            if not e.platform:
                e.platform = self.platform
            raise

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        return list(self._call("list_playlists", owner_filter))

    def get_or_create_playlist(self, name: str) -> Playlist:
        return self._call("get_or_create_playlist", name)

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        return list(self._call("list_tracks", playlist))

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        return self._call("add_tracks", playlist, list(tracks))

    def search(self, track: Track) -> List[Track]:
        return list(self._call("search", track))

    def get_likes(self) -> List[Track]:
        return list(self._call("get_likes"))

    def add_like(self, track: Track) -> None:
        self._call("add_like", track)

    def country_code(self) -> Optional[str]:
        return self._call("country_code")
