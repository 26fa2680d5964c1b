import logging
from typing import Any, Callable, List, Optional, Sequence

import requests
import tidalapi
from tidalapi.exceptions import AuthenticationError

from tunesync.crosscutting.ratelimit import NoopLimiter
from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.domain.ports import RateLimiter


logger = logging.getLogger(__name__)

PAGE_SIZE = 100
ADD_BATCH_SIZE = 100
DEFAULT_SEARCH_LIMIT = 10


def _retry_after_ms(value: Any) -> Optional[int]:
    try:
        return int(float(value) * 1000) if value is not None else None
    except (TypeError, ValueError):
        return None


def translate_tidal_error(error: Exception, operation: str) -> Exception:
    """Map a tidalapi or requests exception onto the domain error taxonomy."""
    message = f"Tidal {operation} failed: {error}"
    if isinstance(error, AuthenticationError):
        return Unauthorized(message, platform="tidal")

    name = type(error).__name__
    if name == "ObjectNotFound":
        return NotFound(message)
    if name == "TooManyRequests":
        return RateLimited(retry_after_ms=_retry_after_ms(getattr(error, "retry_after", None)), message=message)
    if name in ("InvalidISRC", "InvalidUPC"):
        return PermanentFailure(message)

    if isinstance(error, requests.HTTPError) and error.response is not None:
        status = error.response.status_code
        if status == 401:
            return Unauthorized(message, platform="tidal")
        if status == 429:
            return RateLimited(retry_after_ms=_retry_after_ms(error.response.headers.get("Retry-After")),
                               message=message)
        if status == 404:
            return NotFound(message)
        if 400 <= status < 500:
            return PermanentFailure(message)
    return TemporaryFailure(message)


class TidalProvider:
    """Tidal adapter built on a tidalapi session restored from stored OAuth tokens."""

    platform = "tidal"

    def __init__(self,
                 access_token: str,
                 refresh_token: Optional[str] = None,
                 token_type: str = "Bearer",
                 limiter: Optional[RateLimiter] = None,
                 search_limit: int = DEFAULT_SEARCH_LIMIT):
        self._limiter = limiter or NoopLimiter()
        self._search_limit = search_limit
        self.session = tidalapi.Session()

        self._limiter.acquire()
        try:
            self.session.load_oauth_session(token_type, access_token, refresh_token)
            logged_in = self.session.check_login()
        except Exception as e:
            raise translate_tidal_error(e, "login") from e
        if not logged_in:
            raise Unauthorized("Tidal session is not logged in", platform=self.platform)
        logger.info("Authenticated with Tidal")

    def country_code(self) -> Optional[str]:
        code = getattr(self.session, "country_code", None)
        return str(code) if code else None

    def _request(self, operation: str, call: Callable[[], Any]) -> Any:
        self._limiter.acquire()
        try:
            return call()
        except Exception as e:
            raise translate_tidal_error(e, operation) from e

    def _to_track(self, track: Any) -> Track:
        album = getattr(track, "album", None)
        duration = getattr(track, "duration", None)
        return Track(
            id=str(track.id),
            title=getattr(track, "name", None) or "",
            artists=tuple(a.name for a in (getattr(track, "artists", None) or []) if getattr(a, "name", None)),
            album=getattr(album, "name", None) if album is not None else None,
            duration_ms=int(duration * 1000) if duration else None,
            isrc=getattr(track, "isrc", None),
            platform=self.platform,
        )

    def _to_playlist(self, playlist: Any) -> Playlist:
        creator = getattr(playlist, "creator", None)
        creator_id = getattr(creator, "id", None) if creator is not None else None
        return Playlist(
            id=str(playlist.id),
            name=playlist.name or "",
            owner_id=str(creator_id) if creator_id is not None else None,
            platform=self.platform,
            track_count=getattr(playlist, "num_tracks", None),
        )

    def _paged(self, operation: str, fetch: Callable[[int, int], List[Any]]) -> List[Track]:
        tracks = []
        offset = 0
        while True:
            page = self._request(operation, lambda: fetch(PAGE_SIZE, offset)) or []
            tracks.extend(self._to_track(t) for t in page if getattr(t, "id", None) is not None)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return tracks

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        items = self._request("user.playlists", self.session.user.playlists) or []
        playlists = []
        seen = set()
        for item in items:
            playlist = self._to_playlist(item)
            if playlist.id in seen:
                logger.warning(f"Duplicate Tidal playlist '{playlist.name}' ({playlist.id}) ignored")
                continue
            seen.add(playlist.id)
            if owner_filter and playlist.owner_id != owner_filter:
                continue
            playlists.append(playlist)
        logger.info(f"Found {len(playlists)} Tidal playlists")
        return playlists

    def get_or_create_playlist(self, name: str) -> Playlist:
        user_id = str(self.session.user.id)
        for playlist in self.list_playlists(owner_filter=user_id):
            if playlist.name == name:
                return playlist

        logger.info(f"Creating Tidal playlist '{name}'")
        created = self._request(
            "user.create_playlist",
            lambda: self.session.user.create_playlist(name, "Synced by tunesync"),
        )
        playlist = self._to_playlist(created)
        return Playlist(id=playlist.id, name=playlist.name or name, owner_id=playlist.owner_id or user_id,
                        platform=self.platform, track_count=0)

    def _load_playlist(self, playlist: Playlist) -> Any:
        return self._request("playlist", lambda: self.session.playlist(playlist.id))

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        remote = self._load_playlist(playlist)
        return self._paged("playlist.tracks", lambda limit, offset: remote.tracks(limit=limit, offset=offset))

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        if not tracks:
            return AddResult(added=0, duplicates=0)

        remote = self._load_playlist(playlist)
        existing = {t.id for t in self._paged(
            "playlist.tracks", lambda limit, offset: remote.tracks(limit=limit, offset=offset))}
        ids = []
        duplicates = 0
        for track in tracks:
            if track.id in existing:
                duplicates += 1
                continue
            existing.add(track.id)
            ids.append(track.id)

        for i in range(0, len(ids), ADD_BATCH_SIZE):
            batch = ids[i:i + ADD_BATCH_SIZE]
            self._request("playlist.add", lambda: remote.add(batch))
            logger.debug(f"Added {len(batch)} tracks to Tidal playlist {playlist.id}")

        return AddResult(added=len(ids), duplicates=duplicates)

    def _search_by_isrc(self, isrc: str) -> List[Track]:
        try:
            found = self._request("get_tracks_by_isrc", lambda: self.session.get_tracks_by_isrc(isrc))
        except (NotFound, PermanentFailure):
            return []
        return [self._to_track(t) for t in found or []]

    def search(self, track: Track) -> List[Track]:
        if track.isrc:
            by_isrc = self._search_by_isrc(track.isrc)
            if by_isrc:
                return by_isrc[:self._search_limit]

        for query in track.build_queries():
            logger.debug(f"Searching Tidal: {query}")
            results = self._request(
                "search",
                lambda: self.session.search(query, models=[tidalapi.media.Track], limit=self._search_limit),
            )
            candidates: List[Track] = []
            seen = set()
            for item in (results or {}).get("tracks") or []:
                candidate = self._to_track(item)
                if candidate.id in seen:
                    continue
                seen.add(candidate.id)
                candidates.append(candidate)
            if candidates:
                return candidates[:self._search_limit]
        return []

    def get_likes(self) -> List[Track]:
        favorites = self.session.user.favorites
        return self._paged("favorites.tracks", lambda limit, offset: favorites.tracks(limit=limit, offset=offset))

    def add_like(self, track: Track) -> None:
        self._request("favorites.add_track", lambda: self.session.user.favorites.add_track(track.id))
