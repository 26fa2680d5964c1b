import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
import spotipy
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError
from urllib3.exceptions import ReadTimeoutError

from tunesync.domain.entities import AddResult, Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.domain.ports import RateLimiter
from tunesync.crosscutting.ratelimit import NoopLimiter


logger = logging.getLogger(__name__)

PLAYLIST_PAGE_SIZE = 50
TRACK_PAGE_SIZE = 100
ADD_BATCH_SIZE = 100
DEFAULT_SEARCH_LIMIT = 10
SCOPES = ("playlist-read-private playlist-modify-public playlist-modify-private "
          "user-library-read user-library-modify user-read-private")


def translate_spotify_error(error: Exception, operation: str) -> Exception:
    """Map a spotipy or transport exception onto the domain error taxonomy."""
    if isinstance(error, spotipy.SpotifyException):
        status = error.http_status
        message = f"Spotify {operation} failed ({status}): {error.msg}"
        if status == 401:
            return Unauthorized(message, platform="spotify")
        if status == 429:
            headers = error.headers or {}
            retry_after = headers.get("Retry-After") or headers.get("retry-after")
            try:
                retry_after_ms = int(float(retry_after) * 1000) if retry_after is not None else None
            except ValueError:
                retry_after_ms = None
            return RateLimited(retry_after_ms=retry_after_ms, message=message)
        if status == 404:
            return NotFound(message)
        if status is not None and 400 <= status < 500:
            return PermanentFailure(message)
        return TemporaryFailure(message)
    if isinstance(error, (requests.exceptions.RequestException, ReadTimeoutError)):
        return TemporaryFailure(f"Spotify {operation} transport error: {error}")
    return error


class SpotifyProvider:
    """Spotify catalog adapter on top of spotipy.

    spotipy's own retries are switched off; the caller's retry policy decides
    when to try again. An expired access token is refreshed once when client
    credentials and a refresh token are available.
    """

    platform = "spotify"

    def __init__(self,
                 access_token: str,
                 refresh_token: Optional[str] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 redirect_uri: str = "http://localhost:8080/callback",
                 market: Optional[str] = None,
                 search_limit: int = DEFAULT_SEARCH_LIMIT,
                 limiter: Optional[RateLimiter] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._market = market
        self._search_limit = search_limit
        self._limiter = limiter or NoopLimiter()
        self._client = self._build_client(access_token)
        self._user: Optional[Dict[str, Any]] = None
        self._refreshed = False

    @staticmethod
    def _build_client(access_token: str) -> spotipy.Spotify:
        return spotipy.Spotify(auth=access_token, requests_timeout=15, retries=0, status_retries=0)

    def _can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret) and not self._refreshed

    def _refresh_access_token(self) -> None:
        logger.info("Refreshing Spotify access token...")
        oauth_manager = SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=SCOPES,
        )
        token_info = oauth_manager.refresh_access_token(self.refresh_token)
        if not token_info or "access_token" not in token_info:
            raise Unauthorized("Spotify token refresh returned no access token", platform=self.platform)

        self.access_token = token_info["access_token"]
        if token_info.get("refresh_token"):
            self.refresh_token = token_info["refresh_token"]
        self._client = self._build_client(self.access_token)
        logger.info("Spotify access token refreshed successfully")

    def _request(self, operation: str, call: Callable[[spotipy.Spotify], Any]) -> Any:
        self._limiter.acquire()
        try:
            return call(self._client)
        except (spotipy.SpotifyException, requests.exceptions.RequestException, ReadTimeoutError) as e:
            error = translate_spotify_error(e, operation)

        if isinstance(error, Unauthorized) and self._can_refresh():
            logger.warning(f"Spotify token rejected during {operation}, attempting refresh")
            self._refreshed = True
            try:
                self._refresh_access_token()
            except SpotifyOauthError as e:
                raise Unauthorized(f"Spotify token refresh failed: {e}", platform=self.platform) from e
            self._limiter.acquire()
            try:
                return call(self._client)
            except (spotipy.SpotifyException, requests.exceptions.RequestException, ReadTimeoutError) as e:
                raise translate_spotify_error(e, operation) from e
        raise error

    def _me(self) -> Dict[str, Any]:
        if self._user is None:
            self._user = self._request("current_user", lambda sp: sp.current_user()) or {}
        return self._user

    def _current_user_id(self) -> str:
        return self._me()["id"]

    def country_code(self) -> Optional[str]:
        """Account country; Spotify returns it only with the user-read-private scope."""
        return self._me().get("country") or None

    def _to_track(self, item: Dict[str, Any]) -> Track:
        album = item.get("album") or {}
        external_ids = item.get("external_ids") or {}
        track_id = item.get("id") or ""
        return Track(
            id=track_id,
            title=item.get("name") or "",
            artists=tuple(a["name"] for a in item.get("artists") or [] if a.get("name")),
            album=album.get("name"),
            duration_ms=item.get("duration_ms"),
            isrc=external_ids.get("isrc"),
            uri=item.get("uri") or (f"spotify:track:{track_id}" if track_id else None),
            platform=self.platform,
        )

    def _to_playlist(self, item: Dict[str, Any]) -> Playlist:
        owner = item.get("owner") or {}
        tracks = item.get("tracks") or {}
        return Playlist(
            id=item["id"],
            name=item.get("name") or "",
            owner_id=owner.get("id"),
            platform=self.platform,
            track_count=tracks.get("total"),
        )

    def _track_items(self, page: Optional[Dict[str, Any]]) -> List[Track]:
        tracks = []
        for item in (page or {}).get("items") or []:
            data = item.get("track")
            if not data or item.get("is_local") or data.get("is_local") or not data.get("id"):
                continue
            if data.get("type", "track") != "track":
                continue
            tracks.append(self._to_track(data))
        return tracks

    def list_playlists(self, owner_filter: Optional[str] = None) -> List[Playlist]:
        playlists = []
        offset = 0
        while True:
            page = self._request(
                "current_user_playlists",
                lambda sp: sp.current_user_playlists(limit=PLAYLIST_PAGE_SIZE, offset=offset),
            )
            items = (page or {}).get("items") or []
            for item in items:
                if not item:
                    continue
                playlist = self._to_playlist(item)
                if owner_filter and playlist.owner_id != owner_filter:
                    continue
                playlists.append(playlist)
            if not (page or {}).get("next") or len(items) < PLAYLIST_PAGE_SIZE:
                break
            offset += PLAYLIST_PAGE_SIZE

        logger.info(f"Found {len(playlists)} Spotify playlists")
        return playlists

    def get_or_create_playlist(self, name: str) -> Playlist:
        user_id = self._current_user_id()
        for playlist in self.list_playlists(owner_filter=user_id):
            if playlist.name == name:
                logger.debug(f"Found existing Spotify playlist '{name}' ({playlist.id})")
                return playlist

        logger.info(f"Creating Spotify playlist '{name}'")
        created = self._request(
            "user_playlist_create",
            lambda sp: sp.user_playlist_create(user_id, name, public=False, description="Synced by tunesync"),
        )
        return Playlist(
            id=created["id"],
            name=created.get("name") or name,
            owner_id=(created.get("owner") or {}).get("id", user_id),
            platform=self.platform,
            track_count=0,
        )

    def list_tracks(self, playlist: Playlist) -> List[Track]:
        tracks = []
        offset = 0
        while True:
            page = self._request(
                "playlist_items",
                lambda sp: sp.playlist_items(playlist.id, limit=TRACK_PAGE_SIZE, offset=offset,
                                             additional_types=("track",)),
            )
            tracks.extend(self._track_items(page))
            items = (page or {}).get("items") or []
            if not (page or {}).get("next") or len(items) < TRACK_PAGE_SIZE:
                break
            offset += TRACK_PAGE_SIZE
        return tracks

    def add_tracks(self, playlist: Playlist, tracks: Sequence[Track]) -> AddResult:
        if not tracks:
            return AddResult(added=0, duplicates=0)

        existing = {t.id for t in self.list_tracks(playlist)}
        uris = []
        duplicates = 0
        for track in tracks:
            if track.id in existing:
                duplicates += 1
                continue
            existing.add(track.id)
            uris.append(track.uri or f"spotify:track:{track.id}")

        for i in range(0, len(uris), ADD_BATCH_SIZE):
            batch = uris[i:i + ADD_BATCH_SIZE]
            self._request("playlist_add_items", lambda sp: sp.playlist_add_items(playlist.id, batch))
            logger.debug(f"Added {len(batch)} tracks to Spotify playlist {playlist.id}")

        return AddResult(added=len(uris), duplicates=duplicates)

    def _search_queries(self, track: Track) -> List[str]:
        queries = []
        if track.isrc:
            queries.append(f"isrc:{track.isrc}")
        if track.title and track.artists:
            queries.append(f'track:"{track.title}" artist:"{track.artists[0]}"')
        queries.extend(track.build_queries())
        return queries

    def search(self, track: Track) -> List[Track]:
        for query in self._search_queries(track):
            logger.debug(f"Searching Spotify: {query}")
            results = self._request(
                "search",
                lambda sp: sp.search(q=query, type="track", limit=self._search_limit, market=self._market),
            )
            items = ((results or {}).get("tracks") or {}).get("items") or []
            candidates: List[Track] = []
            seen = set()
            for item in items:
                if not item or not item.get("id") or item["id"] in seen:
                    continue
                seen.add(item["id"])
                candidates.append(self._to_track(item))
            if candidates:
                return candidates[:self._search_limit]
        return []

    def get_likes(self) -> List[Track]:
        tracks = []
        offset = 0
        while True:
            page = self._request(
                "current_user_saved_tracks",
                lambda sp: sp.current_user_saved_tracks(limit=PLAYLIST_PAGE_SIZE, offset=offset),
            )
            tracks.extend(self._track_items(page))
            items = (page or {}).get("items") or []
            if not (page or {}).get("next") or len(items) < PLAYLIST_PAGE_SIZE:
                break
            offset += PLAYLIST_PAGE_SIZE
        return tracks

    def add_like(self, track: Track) -> None:
        self._request("current_user_saved_tracks_add", lambda sp: sp.current_user_saved_tracks_add([track.id]))
