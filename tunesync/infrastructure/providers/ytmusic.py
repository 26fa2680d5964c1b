import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from ytmusicapi import YTMusic

from tunesync.crosscutting.ratelimit import NoopLimiter
from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.domain.ports import RateLimiter


logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
ADD_BATCH_SIZE = 100
# Liked Music and Episodes for Later are generated by YouTube Music itself.
GENERATED_PLAYLIST_IDS = frozenset({"LM", "SE"})


def translate_ytmusic_error(error: Exception, operation: str) -> Exception:
    """Map a ytmusicapi failure onto the domain error taxonomy.

    ytmusicapi reports HTTP failures as exceptions whose message carries the
    status code, so the classification is textual.
    """
    if isinstance(error, requests.HTTPError) and error.response is not None:
        text = f"HTTP {error.response.status_code}: {error}"
    else:
        text = str(error)
    message = f"YouTube Music {operation} failed: {text}"
    if "401" in text or "403" in text:
        return Unauthorized(message, platform="ytmusic")
    if "429" in text:
        return RateLimited(message=message)
    if "404" in text:
        return NotFound(message)
    if "400" in text:
        return PermanentFailure(message)
    return TemporaryFailure(message)


class YtMusicProvider:
    """YouTube Music adapter on top of ytmusicapi.

    The catalog exposes no ISRC. When the source track has one, the ISRC is
    searched as a quoted query and the top song of that query is tagged with
    the source ISRC so the matcher treats it as an exact match.
    """

    platform = "ytmusic"

    def __init__(self, auth_file: str, limiter: Optional[RateLimiter] = None,
                 search_limit: int = DEFAULT_SEARCH_LIMIT):
        self._limiter = limiter or NoopLimiter()
        self._search_limit = search_limit
        try:
            self._client = YTMusic(auth_file)
        except Exception as e:
            raise translate_ytmusic_error(e, "authentication") from e

    def country_code(self) -> Optional[str]:
        # The API exposes no account country.
        return None

    def _request(self, operation: str, call: Callable[[], Any]) -> Any:
        self._limiter.acquire()
        try:
            return call()
        except Exception as e:
            raise translate_ytmusic_error(e, operation) from e

    def _to_track(self, item: Dict[str, Any], isrc: Optional[str] = None) -> Track:
        album = item.get("album") or {}
        duration = item.get("duration_seconds")
        return Track(
            id=item.get("videoId") or "",
            title=item.get("title") or "",
            artists=tuple(a["name"] for a in item.get("artists") or [] if a.get("name")),
            album=album.get("name") if isinstance(album, dict) else None,
            duration_ms=int(duration * 1000) if duration else None,
            isrc=isrc,
            platform=self.platform,
        )

    def _tracks(self, items: Optional[List[Dict[str, Any]]]) -> List[Track]:
        return [self._to_track(item) for item in items or [] if item and item.get("videoId")]

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        items = self._request("get_library_playlists", lambda: self._client.get_library_playlists(limit=None))
        playlists = []
        for item in items or []:
            playlist_id = item.get("playlistId")
            if not playlist_id or playlist_id in GENERATED_PLAYLIST_IDS:
                continue
            count = item.get("count")
            try:
                track_count = int(str(count).replace(",", "")) if count is not None else None
            except ValueError:
                track_count = None
            playlist = Playlist(
                id=playlist_id,
                name=item.get("title") or "",
                platform=self.platform,
                track_count=track_count,
            )
            # Library listings carry no owner, so any owner filter excludes them.
            if owner_filter and playlist.owner_id != owner_filter:
                continue
            playlists.append(playlist)
        logger.info(f"Found {len(playlists)} YouTube Music playlists")
        return playlists

    def get_or_create_playlist(self, name: str) -> Playlist:
        for playlist in self.list_playlists():
            if playlist.name == name:
                return playlist

        logger.info(f"Creating YouTube Music playlist '{name}'")
        playlist_id = self._request(
            "create_playlist",
            lambda: self._client.create_playlist(title=name, description="Synced by tunesync"),
        )
        if not isinstance(playlist_id, str):
            raise TemporaryFailure(f"YouTube Music did not return a playlist id for '{name}': {playlist_id}")
        return Playlist(id=playlist_id, name=name, platform=self.platform, track_count=0)

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        data = self._request("get_playlist", lambda: self._client.get_playlist(playlist.id, limit=None))
        return self._tracks((data or {}).get("tracks"))

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        if not tracks:
            return AddResult(added=0, duplicates=0)

        existing = {t.id for t in self.list_tracks(playlist)}
        video_ids = []
        duplicates = 0
        for track in tracks:
            if track.id in existing:
                duplicates += 1
                continue
            existing.add(track.id)
            video_ids.append(track.id)

        for i in range(0, len(video_ids), ADD_BATCH_SIZE):
            batch = video_ids[i:i + ADD_BATCH_SIZE]
            result = self._request(
                "add_playlist_items",
                lambda: self._client.add_playlist_items(playlist.id, batch, duplicates=False),
            )
            status = result.get("status") if isinstance(result, dict) else None
            if status is not None and status != "STATUS_SUCCEEDED":
                raise TemporaryFailure(f"YouTube Music rejected tracks for playlist {playlist.id}: {status}")
            logger.debug(f"Added {len(batch)} tracks to YouTube Music playlist {playlist.id}")

        return AddResult(added=len(video_ids), duplicates=duplicates)

    def _search_songs(self, query: str) -> List[Dict[str, Any]]:
        logger.debug(f"Searching YouTube Music: {query}")
        results = self._request(
            "search",
            lambda: self._client.search(query, filter="songs", limit=self._search_limit),
        )
        return [r for r in results or [] if r.get("videoId")]

    def search(self, track: Track) -> List[Track]:
        if track.isrc:
            found = self._search_songs(f'"{track.isrc}"')
            if found:
                return [self._to_track(found[0], isrc=track.isrc)]

        for query in track.build_queries():
            candidates: List[Track] = []
            seen = set()
            for item in self._search_songs(query):
                if item["videoId"] in seen:
                    continue
                seen.add(item["videoId"])
                candidates.append(self._to_track(item))
            if candidates:
                return candidates[:self._search_limit]
        return []

    def get_likes(self) -> List[Track]:
        data = self._request("get_liked_songs", lambda: self._client.get_liked_songs(limit=None))
        return self._tracks((data or {}).get("tracks"))

    def add_like(self, track: Track) -> None:
        self._request("rate_song", lambda: self._client.rate_song(track.id, "LIKE"))
