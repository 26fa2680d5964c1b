import logging
from typing import Any, Callable, List, Optional, Sequence

from tunesync.crosscutting.ratelimit import NoopLimiter
from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.domain.ports import RateLimiter


logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10


def translate_yandex_error(error: Exception, operation: str) -> Exception:
    """Map a yandex-music exception onto the domain error taxonomy.

    The library raises a small hierarchy whose classes carry the HTTP meaning
    in their names; rate limiting only shows up in the message.
    """
    name = type(error).__name__
    text = str(error)
    message = f"Yandex Music {operation} failed: {text}"
    if name == "UnauthorizedError" or "401" in text:
        return Unauthorized(message, platform="yandex")
    if "429" in text or "Too many requests" in text:
        return RateLimited(retry_after_ms=1000, message=message)
    if name == "NotFoundError" or "404" in text or "not found" in text.lower():
        return NotFound(message)
    if name == "BadRequestError" or "400" in text:
        return PermanentFailure(message)
    return TemporaryFailure(message)


class YandexMusicProvider:
    """Yandex Music adapter implementing the MusicProvider capability set.

    Playlists are addressed by their ``kind`` within the account. A track's
    write handle is ``"<track id>:<album id>"`` because inserting into a
    playlist needs both.
    """

    platform = "yandex"

    def __init__(self, oauth_token: str, limiter: Optional[RateLimiter] = None,
                 search_limit: int = DEFAULT_SEARCH_LIMIT):
        """Initialize the provider with OAuth token.

        Args:
            oauth_token: Yandex Music OAuth token
            limiter: Throttle shared by every request of this session
            search_limit: Maximum number of candidates returned by ``search``
        """
        from yandex_music import Client

        self._limiter = limiter or NoopLimiter()
        self._search_limit = search_limit
        self._uid: Optional[str] = None
        self._limiter.acquire()
        try:
            self._client = Client(oauth_token).init()
        except Exception as e:
            raise translate_yandex_error(e, "client init") from e

    def country_code(self) -> Optional[str]:
        # Accounts carry a numeric region id, not an ISO country.
        return None

    def _request(self, operation: str, call: Callable[[], Any]) -> Any:
        self._limiter.acquire()
        try:
            return call()
        except Exception as e:
            raise translate_yandex_error(e, operation) from e

    def _current_uid(self) -> str:
        if self._uid is None:
            me = self._client.me
            if me is None or me.account is None or me.account.uid is None:
                raise Unauthorized("Yandex Music token is not bound to an account", platform=self.platform)
            self._uid = str(me.account.uid)
        return self._uid

    def _to_track(self, track: Any) -> Track:
        artists = tuple(a.name for a in (getattr(track, "artists", None) or []) if getattr(a, "name", None))
        albums = getattr(track, "albums", None) or []
        album = albums[0] if albums else None
        track_id = str(track.id)
        album_id = getattr(album, "id", None) if album is not None else None
        return Track(
            id=track_id,
            title=getattr(track, "title", None) or "",
            artists=artists,
            album=getattr(album, "title", None) if album is not None else None,
            duration_ms=getattr(track, "duration_ms", None),
            isrc=getattr(track, "isrc", None),
            uri=f"{track_id}:{album_id}" if album_id is not None else None,
            platform=self.platform,
        )

    def _unwrap(self, items: Sequence[Any]) -> List[Track]:
        """Convert a fetched track list; playlist entries wrap the track in ``TrackShort``."""
        tracks = []
        for item in items or []:
            track = getattr(item, "track", None) or item
            if getattr(track, "id", None) is None or not getattr(track, "available", True):
                continue
            tracks.append(self._to_track(track))
        return tracks

    def _to_playlist(self, playlist: Any) -> Playlist:
        owner = getattr(playlist, "owner", None)
        owner_uid = getattr(owner, "uid", None) if owner is not None else None
        return Playlist(
            id=str(playlist.kind),
            name=playlist.title or "",
            owner_id=str(owner_uid) if owner_uid is not None else None,
            platform=self.platform,
            track_count=getattr(playlist, "track_count", None),
        )

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        uid = self._current_uid()
        items = self._request("users_playlists_list", lambda: self._client.users_playlists_list(user_id=uid))
        playlists = []
        for item in items or []:
            playlist = self._to_playlist(item)
            if owner_filter and playlist.owner_id != owner_filter:
                continue
            playlists.append(playlist)
        logger.info(f"Found {len(playlists)} Yandex Music playlists")
        return playlists

    def get_or_create_playlist(self, name: str) -> Playlist:
        uid = self._current_uid()
        for playlist in self.list_playlists(owner_filter=uid):
            if playlist.name == name:
                return playlist

        logger.info(f"Creating Yandex Music playlist '{name}'")
        created = self._request(
            "users_playlists_create",
            lambda: self._client.users_playlists_create(title=name, visibility="private"),
        )
        if created is None:
            raise TemporaryFailure(f"Yandex Music returned no playlist for '{name}'")
        return self._to_playlist(created)

    def _fetch_playlist(self, playlist: Playlist) -> Any:
        uid = self._current_uid()
        fetched = self._request(
            "users_playlists",
            lambda: self._client.users_playlists(playlist.id, user_id=uid),
        )
        if fetched is None:
            raise NotFound(f"Yandex Music playlist {playlist.id} not found")
        return fetched

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        fetched = self._fetch_playlist(playlist)
        items = self._request("fetch_tracks", fetched.fetch_tracks)
        return self._unwrap(items)

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        if not tracks:
            return AddResult(added=0, duplicates=0)

        fetched = self._fetch_playlist(playlist)
        existing_tracks = self._unwrap(self._request("fetch_tracks", fetched.fetch_tracks))
        existing = {t.id for t in existing_tracks}
        revision = fetched.revision
        position = len(existing_tracks)
        added = duplicates = 0
        rejected: List[str] = []

        for track in tracks:
            if track.id in existing:
                duplicates += 1
                continue
            track_id, _, album_id = (track.uri or "").partition(":")
            if not album_id:
                logger.warning(f"Cannot insert {track.describe()} into Yandex playlist: album id unknown")
                rejected.append(track.id)
                continue
            updated = self._request(
                "users_playlists_insert_track",
                lambda: self._client.users_playlists_insert_track(
                    playlist.id, track_id, album_id, at=position, revision=revision),
            )
            if updated is not None:
                revision = updated.revision
            existing.add(track.id)
            position += 1
            added += 1

        return AddResult(added=added, duplicates=duplicates, errors=len(rejected), failed_ids=tuple(rejected))

    def search(self, track: Track) -> List[Track]:
        for query in track.build_queries():
            logger.debug(f"Searching Yandex Music: {query}")
            result = self._request("search", lambda: self._client.search(query, type_="track"))
            found = getattr(getattr(result, "tracks", None), "results", None) or []
            candidates: List[Track] = []
            seen = set()
            for item in self._unwrap(found):
                if item.id in seen:
                    continue
                seen.add(item.id)
                candidates.append(item)
            if candidates:
                return candidates[:self._search_limit]
        return []

    def get_likes(self) -> List[Track]:
        likes = self._request("users_likes_tracks", self._client.users_likes_tracks)
        if likes is None:
            return []
        return self._unwrap(self._request("fetch_tracks", likes.fetch_tracks))

    def add_like(self, track: Track) -> None:
        self._request("users_likes_tracks_add", lambda: self._client.users_likes_tracks_add(track.id))
