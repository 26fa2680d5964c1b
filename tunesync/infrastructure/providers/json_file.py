import logging
from typing import Dict, List, Optional, Sequence

from tunesync.application.backup import load_playlists
from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import CapabilityAbsent, NotFound, PermanentFailure


logger = logging.getLogger(__name__)


class JsonFileProvider:
    """Read-only source backed by an export file.

    Lets a previously exported library be replayed into any destination
    through the normal sync path.
    """

    platform = "json"

    def __init__(self, path: str):
        self.path = path
        self._playlists: Optional[Dict[str, Playlist]] = None

    def _load(self) -> Dict[str, Playlist]:
        if self._playlists is None:
            playlists = load_playlists(self.path)
            self._playlists = {}
            for playlist in playlists:
                if playlist.id in self._playlists:
                    logger.warning(f"Duplicate playlist '{playlist.name}' in {self.path} ignored")
                    continue
                self._playlists[playlist.id] = playlist
            logger.info(f"Loaded {len(self._playlists)} playlists from {self.path}")
        return self._playlists

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        return [p for p in self._load().values() if not owner_filter or p.owner_id == owner_filter]

    def get_or_create_playlist(self, name: str) -> Playlist:
        raise PermanentFailure(f"{self.path} is a read-only import source")

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        stored = self._load().get(playlist.id)
        if stored is None:
            raise NotFound(f"Playlist '{playlist.name}' not found in {self.path}")
        return list(stored.tracks)

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        raise PermanentFailure(f"{self.path} is a read-only import source")

    def search(self, track: Track) -> List[Track]:
        raise PermanentFailure(f"{self.path} is a read-only import source")

    def get_likes(self) -> List[Track]:
        raise CapabilityAbsent("likes", self.platform)

    def add_like(self, track: Track) -> None:
        raise CapabilityAbsent("likes", self.platform)

    def country_code(self) -> Optional[str]:
        return None
